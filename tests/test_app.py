"""Tests for the sanitizer web API."""

import argparse

import pytest

from app import app as flask_app, parse_asset_roots


@pytest.fixture
def client(tmp_path):
    (tmp_path / "site.css").write_text("h1{font-size:2em}", encoding="utf-8")
    flask_app.config.update(
        TESTING=True,
        STYLE_BASE_URL="https://example.com/",
        STYLE_ASSET_ROOTS={"https://example.com/assets": tmp_path},
    )
    with flask_app.test_client() as client:
        yield client


def test_sanitize_json_payload(client):
    html = (
        '<html><head><link rel="stylesheet" href="/assets/site.css"></head>'
        '<body><p style="color:red">x</p></body></html>'
    )
    res = client.post("/api/sanitize", json={"html": html})
    assert res.status_code == 200
    body = res.get_json()
    assert "<style amp-custom" in body["html"]
    assert "h1{font-size:2em}" in body["html"]
    assert 'style="color:red"' not in body["html"]
    assert body["skipped"] == []
    assert body["errors"] == []
    assert body["total_bytes"] > 0


def test_sanitize_reports_skips_and_errors(client):
    html = (
        "<html><head><style>a{color:red}</style>"
        '<link rel="stylesheet" href="/assets/missing.css"></head></html>'
    )
    res = client.post("/api/sanitize", data={"html": html, "max_bytes": "3"})
    assert res.status_code == 200
    body = res.get_json()
    assert len(body["skipped"]) == 1
    assert [e["code"] for e in body["errors"]] == ["amp_css_path_not_found"]


def test_sanitize_accepts_query_args(client):
    res = client.get("/api/sanitize", query_string={"html": "<p style='color:blue'>x</p>"})
    assert res.status_code == 200
    assert "amp-wp-inline-" in res.get_json()["html"]


def test_missing_html_is_rejected(client):
    res = client.post("/api/sanitize", json={})
    assert res.status_code == 400
    assert "error" in res.get_json()


@pytest.mark.parametrize("max_bytes", ["lots", "-1"])
def test_bad_max_bytes_is_rejected(client, max_bytes):
    res = client.post("/api/sanitize", json={"html": "<p>x</p>", "max_bytes": max_bytes})
    assert res.status_code == 400


@pytest.mark.parametrize("max_bytes", [True, 1.9, [100]])
def test_non_integer_max_bytes_is_rejected(client, max_bytes):
    res = client.post("/api/sanitize", json={"html": "<p>x</p>", "max_bytes": max_bytes})
    assert res.status_code == 400
    assert res.get_json()["error"] == "max_bytes must be a non-negative integer."


def test_non_utf8_stylesheet_is_sanitized(client, tmp_path):
    (tmp_path / "legacy.css").write_bytes(b"/* \xa9 2018 */ p{color:red}")
    html = (
        '<html><head><link rel="stylesheet" href="/assets/legacy.css"><style>a{color:green}</style></head>'
        '<body><p style="color:blue">x</p></body></html>'
    )
    res = client.post("/api/sanitize", json={"html": html})
    assert res.status_code == 200
    body = res.get_json()
    assert body["errors"] == []
    assert "p{color:red}" in body["html"]
    assert "a{color:green}" in body["html"]


def test_parse_asset_roots():
    value = " https://example.com/assets=/srv/assets\n  https://example.com/themes=/srv/themes "
    assert parse_asset_roots(value) == {
        "https://example.com/assets": "/srv/assets",
        "https://example.com/themes": "/srv/themes",
    }
    assert parse_asset_roots("") == {}


def test_parse_asset_roots_rejects_bad_pairs():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_asset_roots("https://example.com/assets")
