#!/usr/bin/env python3
"""Style sanitizer web application."""

from __future__ import annotations

import dataclasses
import os
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import style_sanitizer


def parse_asset_roots(value: str) -> Dict[str, str]:
    """Parse whitespace-separated ``PREFIX=DIR`` pairs, as given to ``--asset-root``."""
    return dict(style_sanitizer.parse_asset_root(pair) for pair in value.split())


app = Flask(__name__)
app.config.from_mapping(
    STYLE_BASE_URL=os.environ.get("STYLE_SANITIZER_BASE_URL", ""),
    # URL prefix -> directory holding the stylesheets served under it.
    STYLE_ASSET_ROOTS=parse_asset_roots(os.environ.get("STYLE_SANITIZER_ASSET_ROOTS", "")),
)


def read_field(payload: Dict[str, Any], name: str) -> Optional[Any]:
    value = payload.get(name)
    if value is None:
        value = request.form.get(name)
    if value is None:
        value = request.args.get(name)
    return value


def parse_max_bytes(value: Optional[Any]) -> Optional[int]:
    if value is None or value == "":
        return None
    # bool is an int subclass.
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise TypeError(f"max_bytes must be an integer, got {type(value).__name__}")
    max_bytes = int(value)
    if max_bytes < 0:
        raise ValueError("max_bytes must not be negative")
    return max_bytes


@app.route("/api/sanitize", methods=["GET", "POST"])
def sanitize():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    html = read_field(payload, "html") or ""

    if not isinstance(html, str) or not html.strip():
        return jsonify({"error": "Send the HTML document to sanitize in the 'html' field."}), 400

    try:
        max_bytes = parse_max_bytes(read_field(payload, "max_bytes"))
    except (TypeError, ValueError):
        return jsonify({"error": "max_bytes must be a non-negative integer."}), 400

    limits = style_sanitizer.SizeLimits.from_catalog()
    if max_bytes is not None:
        limits = dataclasses.replace(limits, custom_max_bytes=max_bytes)
    resolver = style_sanitizer.AssetResolver(app.config["STYLE_BASE_URL"], app.config["STYLE_ASSET_ROOTS"])

    try:
        output, sanitizer = style_sanitizer.sanitize_document(html, size_limits=limits, asset_resolver=resolver)
    except OSError as exc:
        app.logger.exception("Failed to read a linked stylesheet")
        return jsonify({"error": f"Could not read a linked stylesheet: {exc}"}), 502

    return jsonify(
        {
            "html": output,
            "skipped": sanitizer.skipped,
            "errors": [error.to_dict() for error in sanitizer.errors],
            "total_bytes": sanitizer.total_bytes,
        }
    )


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8000, debug=False)
