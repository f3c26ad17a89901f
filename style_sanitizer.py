#!/usr/bin/env python3
"""Style sanitizer: collect page CSS into one size-bounded amp-custom stylesheet."""

from __future__ import annotations

import argparse
import dataclasses
import enum
import hashlib
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union
from urllib.parse import urljoin

from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

logger = logging.getLogger(__name__)

INLINE_CLASS_PREFIX = "amp-wp-inline-"
CUSTOM_SPEC_NAME = "style amp-custom"
KEYFRAMES_SPEC_NAME = "style[amp-keyframes]"

# CDATA byte limits from the AMP validator rules, keyed by spec name.
SIZE_LIMIT_CATALOG: Dict[str, int] = {
    CUSTOM_SPEC_NAME: 50000,
    KEYFRAMES_SPEC_NAME: 500000,
}

# href value_regex of the AMP validator rule for "link rel=stylesheet for fonts".
ALLOWED_FONT_SRC_REGEX = re.compile(
    r"https://cloud\.typography\.com/\d{7}/\d{7}/css/fonts\.css"
    r"|https://fast\.fonts\.net/.*"
    r"|https://fonts\.googleapis\.com/css2?\?.*"
    r"|https://maxcdn\.bootstrapcdn\.com/font-awesome/([0-9]+\.?)+/css/font-awesome\.min\.css(\?.*)?"
    r"|https://use\.fontawesome\.com/releases/v([0-9]+\.?)+/css/[0-9a-zA-Z-]+\.css"
    r"|https://use\.typekit\.net/[\w-]+\.css"
)

SAFE_STYLE_PROPERTIES = frozenset(
    (
        "background",
        "background-color",
        "border",
        "border-width",
        "border-color",
        "border-style",
        "border-right",
        "border-right-color",
        "border-right-style",
        "border-right-width",
        "border-bottom",
        "border-bottom-color",
        "border-bottom-style",
        "border-bottom-width",
        "border-left",
        "border-left-color",
        "border-left-style",
        "border-left-width",
        "border-top",
        "border-top-color",
        "border-top-style",
        "border-top-width",
        "border-spacing",
        "border-collapse",
        "caption-side",
        "color",
        "font",
        "font-family",
        "font-size",
        "font-style",
        "font-variant",
        "font-weight",
        "letter-spacing",
        "line-height",
        "text-decoration",
        "text-indent",
        "text-align",
        "height",
        "min-height",
        "max-height",
        "width",
        "min-width",
        "max-width",
        "margin",
        "margin-right",
        "margin-bottom",
        "margin-left",
        "margin-top",
        "padding",
        "padding-right",
        "padding-bottom",
        "padding-left",
        "padding-top",
        "clear",
        "cursor",
        "direction",
        "float",
        "overflow",
        "vertical-align",
        "list-style-type",
    )
)

IMPORTANT_RE = re.compile(r"\s*!important")
OVERFLOW_RE = re.compile(r"overflow\s*:\s*(?:auto|scroll)\s*;?", re.I)
DECLARATION_IMPORTANT_RE = re.compile(r"\s*!\s*important$")
OVERFLOW_PROPERTY_RE = re.compile(r"^overflow", re.I)
OVERFLOW_VALUE_RE = re.compile(r"^(?:auto|scroll)$", re.I)
STYLESHEET_EXT_RE = re.compile(r"\.(?:css|less|scss|sass)$", re.I)
ABSOLUTE_URL_RE = re.compile(r"^(?:https?:)?//")

CSSFilter = Callable[[str], str]
DropHook = Callable[[str], None]

_safe_css = CSSSanitizer(allowed_css_properties=SAFE_STYLE_PROPERTIES, allowed_svg_properties=frozenset())


class StylesheetError(Exception):
    """A stylesheet source that was rejected, with a machine-readable code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class Declaration:
    prop: str
    value: str

    def __str__(self) -> str:
        return f"{self.prop}:{self.value}"


@dataclass(frozen=True)
class StylesheetEntry:
    key: str
    css: str


@dataclass
class PackResult:
    css: str = ""
    total_bytes: int = 0
    skipped: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SizeLimits:
    custom_max_bytes: int
    keyframes_max_bytes: int = 0

    @classmethod
    def from_catalog(cls, catalog: Optional[Dict[str, int]] = None) -> "SizeLimits":
        rules = SIZE_LIMIT_CATALOG if catalog is None else catalog
        return cls(
            custom_max_bytes=rules[CUSTOM_SPEC_NAME],
            keyframes_max_bytes=rules.get(KEYFRAMES_SPEC_NAME, 0),
        )


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def safe_css_filter(style: str) -> str:
    return _safe_css.sanitize_css(style)


def remove_illegal_css(stylesheet: str) -> str:
    """Strip `!important` and scrolling overflow from raw stylesheet text.

    This is a textual rewrite, so matches inside comments are removed too.
    A removal can splice a new match together, so both substitutions run
    until the text is stable.
    """
    previous = None
    while stylesheet != previous:
        previous = stylesheet
        stylesheet = IMPORTANT_RE.sub("", stylesheet)
        stylesheet = OVERFLOW_RE.sub("", stylesheet)
    return stylesheet


def split_declarations(css: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(css):
        if ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
        elif ch == ";" and depth == 0:
            parts.append(css[start:i])
            start = i + 1
    parts.append(css[start:])
    return parts


def filter_style(prop: str, value: str) -> Tuple[str, str]:
    """Rewrite one declaration, or return an empty pair to drop it.

    - overflow with an `auto` or `scroll` value is dropped
    - `width` becomes `max-width`
    - a trailing `!important` is removed
    """
    if OVERFLOW_PROPERTY_RE.match(prop) and OVERFLOW_VALUE_RE.match(value):
        return "", ""

    if prop == "width":
        prop = "max-width"

    if "important" in value:
        value = DECLARATION_IMPORTANT_RE.sub("", value)

    return prop, value


def process_style(
    style: str,
    css_filter: CSSFilter = safe_css_filter,
    on_drop: Optional[DropHook] = None,
) -> List[Declaration]:
    filtered = css_filter(style)
    if not filtered:
        return []

    # Sort the raw candidates so the result does not depend on the order the filter emits.
    candidates = sorted(part.strip() for part in split_declarations(filtered))

    declarations: List[Declaration] = []
    for candidate in candidates:
        if ":" not in candidate:
            if candidate and on_drop is not None:
                on_drop(candidate)
            continue
        prop, value = candidate.split(":", 1)
        prop, value = filter_style(prop.strip().lower(), value.strip())
        if not prop or not value:
            if on_drop is not None:
                on_drop(candidate)
            continue
        declarations.append(Declaration(prop, value))
    return declarations


def serialize_declarations(declarations: Iterable[Declaration]) -> str:
    return ";".join(str(d) for d in declarations)


def generate_class_name(declarations: Iterable[Declaration]) -> str:
    return INLINE_CLASS_PREFIX + md5_hex(serialize_declarations(declarations))


class StylesheetCollector:
    """Insertion-ordered stylesheets keyed by hash, href or selector.

    Re-inserting a key replaces its CSS but keeps its original position.
    """

    def __init__(self) -> None:
        self._sheets: Dict[str, str] = {}

    def put(self, key: str, css: str) -> None:
        self._sheets[key] = css

    def as_dict(self) -> Dict[str, str]:
        return dict(self._sheets)

    def __len__(self) -> int:
        return len(self._sheets)

    def __iter__(self) -> Iterator[StylesheetEntry]:
        for key, css in self._sheets.items():
            yield StylesheetEntry(key, css)


def pack_stylesheets(entries: Iterable[StylesheetEntry], max_bytes: int) -> PackResult:
    """Concatenate stylesheets in order, skipping any that would overflow `max_bytes`.

    Included sheets are joined with a single space, and that space counts
    against the budget.
    """
    result = PackResult()
    parts: List[str] = []
    for entry in entries:
        size = byte_length(entry.css)
        separator = 1 if parts else 0
        if result.total_bytes + separator + size > max_bytes:
            result.skipped.append(entry.key)
            continue
        parts.append(entry.css)
        result.total_bytes += separator + size
    result.css = " ".join(parts)
    return result


class AssetResolver:
    """Map stylesheet URLs onto files under known asset directories."""

    def __init__(self, base_url: str = "", roots: Optional[Dict[str, Union[str, Path]]] = None) -> None:
        self.base_url = base_url
        self.roots: List[Tuple[str, Path]] = []
        for prefix, directory in (roots or {}).items():
            if not prefix.endswith("/"):
                prefix += "/"
            self.roots.append((prefix, Path(directory)))

    def get_validated_css_file_path(self, src: str) -> Path:
        needs_base_url = not ABSOLUTE_URL_RE.match(src) and not any(src.startswith(p) for p, _ in self.roots)
        if needs_base_url:
            src = urljoin(self.base_url, src)

        src = re.sub(r"[?#].*$", "", src)

        if not STYLESHEET_EXT_RE.search(src):
            raise StylesheetError(
                "amp_css_bad_file_extension",
                f"Skipped stylesheet which does not have recognized CSS file extension ({src}).",
            )

        not_found = StylesheetError(
            "amp_css_path_not_found",
            f"Unable to locate filesystem path for stylesheet {src}.",
        )
        for prefix, directory in self.roots:
            if not src.startswith(prefix):
                continue
            segments = [s for s in src[len(prefix) :].split("/") if s]
            if not segments or ".." in segments:
                raise not_found
            css_path = directory.joinpath(*segments)
            try:
                css_path.resolve().relative_to(directory.resolve())
            except ValueError:
                raise not_found from None
            if not css_path.is_file():
                raise not_found
            return css_path
        raise not_found


def attr_text(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return value


def class_list(tag: Tag) -> List[str]:
    value = tag.get("class")
    if not value:
        return []
    if isinstance(value, str):
        return value.split()
    return list(value)


def element_text(tag: Tag) -> str:
    return "".join(str(c) for c in tag.contents if isinstance(c, NavigableString) and not isinstance(c, Comment))


def is_style_source(tag: Tag) -> bool:
    if tag.name == "style":
        if tag.has_attr("amp-boilerplate"):
            return False
        return not tag.has_attr("type") or attr_text(tag, "type").lower() == "text/css"
    if tag.name == "link":
        return tag.has_attr("href") and attr_text(tag, "rel").lower() == "stylesheet"
    return False


def has_inline_style(tag: Tag) -> bool:
    return bool(attr_text(tag, "style"))


class SanitizerState(enum.Enum):
    PENDING = "pending"
    SOURCES_HARVESTED = "sources_harvested"
    INLINES_HARVESTED = "inlines_harvested"
    PACKED = "packed"


class StyleSanitizer:
    """Moves every style source of one document into a single amp-custom style.

    Instances are single-use: build a new one for each document.
    """

    def __init__(
        self,
        soup: BeautifulSoup,
        *,
        size_limits: Optional[SizeLimits] = None,
        css_filter: Optional[CSSFilter] = None,
        asset_resolver: Optional[AssetResolver] = None,
        use_document_element: bool = True,
        allowed_font_src_regex: Optional[re.Pattern[str]] = ALLOWED_FONT_SRC_REGEX,
        on_drop: Optional[DropHook] = None,
    ) -> None:
        self.soup = soup
        self.limits = size_limits or SizeLimits.from_catalog()
        self.css_filter = css_filter or safe_css_filter
        self.asset_resolver = asset_resolver or AssetResolver()
        self.use_document_element = use_document_element
        self.allowed_font_src_regex = allowed_font_src_regex
        self.on_drop = on_drop

        self.state = SanitizerState.PENDING
        self.stylesheets = StylesheetCollector()
        self.styles: Dict[str, List[Declaration]] = {}
        self.errors: List[StylesheetError] = []
        self.skipped: List[str] = []
        self.total_bytes = 0
        self.amp_custom_style_element: Optional[Tag] = None

    def get_styles(self) -> Dict[str, List[str]]:
        if self.state in (SanitizerState.PENDING, SanitizerState.SOURCES_HARVESTED):
            return {}
        return {selector: [str(d) for d in decls] for selector, decls in self.styles.items()}

    def get_stylesheets(self) -> Dict[str, str]:
        return self.stylesheets.as_dict()

    def sanitize(self) -> None:
        if self.state is not SanitizerState.PENDING:
            raise RuntimeError("StyleSanitizer has already run; create a new instance per document")

        # find_all returns a list, so removing nodes while iterating is safe.
        for element in self.soup.find_all(is_style_source):
            if element.name == "style":
                self.process_style_element(element)
            else:
                self.process_link_element(element)
        self.state = SanitizerState.SOURCES_HARVESTED

        for element in self.soup.find_all(has_inline_style):
            self.collect_inline_styles(element)
        self.state = SanitizerState.INLINES_HARVESTED

        if self.use_document_element:
            self.output_custom_style()
        self.state = SanitizerState.PACKED

    def process_style_element(self, element: Tag) -> None:
        parent = element.parent
        if parent is not None and parent.name == "body" and element.has_attr("amp-keyframes"):
            try:
                self.validate_amp_keyframe(element)
            except StylesheetError as error:
                self.remove_invalid(element, error)
            return

        rules = remove_illegal_css(element_text(element).strip())
        if rules:
            key = md5_hex(rules)
            self.stylesheets.put(key, rules)
            logger.debug("Collected style element as %s (%d bytes)", key, byte_length(rules))

        if element.has_attr("amp-custom") and self.amp_custom_style_element is None:
            self.amp_custom_style_element = element
        else:
            # Only one amp-custom style may remain; its content is rebuilt when packing.
            element.decompose()

    def process_link_element(self, element: Tag) -> None:
        href = attr_text(element, "href")

        if self.allowed_font_src_regex is not None and self.allowed_font_src_regex.fullmatch(href):
            return

        try:
            css_file_path = self.asset_resolver.get_validated_css_file_path(href)
        except StylesheetError as error:
            self.remove_invalid(element, error)
            return

        # Theme files are not always UTF-8; undecodable bytes must not abort the pass.
        css = f"\n/* {href} */\n" + css_file_path.read_bytes().decode("utf-8", errors="replace")
        css = remove_illegal_css(css)

        media = attr_text(element, "media")
        if media and media != "all":
            css = f"@media {media} {{ {css} }}"

        self.stylesheets.put(href, css)
        logger.debug("Collected stylesheet %s from %s", href, css_file_path)
        element.decompose()

    def validate_amp_keyframe(self, element: Tag) -> None:
        size = byte_length(element_text(element))
        limit = self.limits.keyframes_max_bytes
        if limit and size > limit:
            raise StylesheetError("max_bytes", f"amp-keyframes style is {size} bytes, over the {limit} byte limit.")

        if any(isinstance(sibling, Tag) for sibling in element.next_siblings):
            raise StylesheetError("mandatory_last_child", "amp-keyframes style must be the last child of body.")

    def remove_invalid(self, element: Tag, error: StylesheetError) -> None:
        self.errors.append(error)
        logger.warning("Removed <%s>: %s", element.name, error.message)
        element.decompose()

    def collect_inline_styles(self, element: Tag) -> None:
        style = attr_text(element, "style")
        if not style:
            return

        declarations = process_style(style, self.css_filter, self.on_drop)
        if declarations:
            class_name = generate_class_name(declarations)
            classes = class_list(element)
            if class_name not in classes:
                classes.append(class_name)
            element["class"] = classes

            selector = "." + class_name
            self.styles[selector] = declarations
            self.stylesheets.put(selector, f"{selector}{{{serialize_declarations(declarations)}}}")
        del element["style"]

    def document_head(self) -> Tag:
        head = self.soup.head
        if head is None:
            head = self.soup.new_tag("head")
            root = self.soup.html or self.soup
            root.insert(0, head)
        return head

    def output_custom_style(self) -> None:
        style = self.amp_custom_style_element
        if style is None:
            style = self.soup.new_tag("style")
            style["amp-custom"] = ""
            self.document_head().append(style)
            self.amp_custom_style_element = style

        result = pack_stylesheets(self.stylesheets, self.limits.custom_max_bytes)
        self.skipped = result.skipped
        self.total_bytes = result.total_bytes
        style.string = result.css

        for key in reversed(result.skipped):
            logger.warning("Skipped stylesheet %s: over the %d byte budget", key, self.limits.custom_max_bytes)
            style.insert_after(self.soup.new_string(f"Skipped including {key} stylesheet since too large.", Comment))


def sanitize_document(html_text: str, *, parser: str = "html.parser", **options) -> Tuple[str, StyleSanitizer]:
    soup = BeautifulSoup(html_text, parser)
    sanitizer = StyleSanitizer(soup, **options)
    sanitizer.sanitize()
    return str(soup), sanitizer


def sanitize_html(html_text: str, **options) -> str:
    return sanitize_document(html_text, **options)[0]


def parse_asset_root(value: str) -> Tuple[str, str]:
    prefix, sep, directory = value.partition("=")
    if not sep or not prefix or not directory:
        raise argparse.ArgumentTypeError(f"expected PREFIX=DIR, got {value!r}")
    return prefix, directory


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Move page CSS into a single size-bounded amp-custom stylesheet")
    ap.add_argument("input", help="HTML file to sanitize, or - for stdin")
    ap.add_argument("-o", "--output", help="Output HTML file path (default: stdout)")
    ap.add_argument("--base-url", default="", help="Site URL that relative stylesheet hrefs resolve against")
    ap.add_argument(
        "--asset-root",
        action="append",
        default=[],
        type=parse_asset_root,
        metavar="PREFIX=DIR",
        help="Serve stylesheet URLs under PREFIX from DIR (repeatable)",
    )
    ap.add_argument("--max-bytes", type=int, help="Byte budget for the amp-custom stylesheet")
    ap.add_argument("--keyframes-max-bytes", type=int, help="Byte limit for a single amp-keyframes style")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log every collected stylesheet")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        html_text = sys.stdin.read() if args.input == "-" else Path(args.input).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Could not read {args.input}: {exc}", file=sys.stderr)
        return 1

    limits = SizeLimits.from_catalog()
    if args.max_bytes is not None:
        limits = dataclasses.replace(limits, custom_max_bytes=args.max_bytes)
    if args.keyframes_max_bytes is not None:
        limits = dataclasses.replace(limits, keyframes_max_bytes=args.keyframes_max_bytes)

    output, sanitizer = sanitize_document(
        html_text,
        size_limits=limits,
        asset_resolver=AssetResolver(args.base_url, dict(args.asset_root)),
    )

    for error in sanitizer.errors:
        print(f"Removed ({error.code}): {error.message}", file=sys.stderr)
    for key in sanitizer.skipped:
        print(f"Skipped stylesheet {key}: over budget", file=sys.stderr)

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Sanitized HTML written to {args.output} ({sanitizer.total_bytes} bytes of CSS)")
    else:
        sys.stdout.write(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
