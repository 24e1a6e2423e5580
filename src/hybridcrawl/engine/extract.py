"""
BeautifulSoup-based page extraction shared by the static and hybrid paths.

Everything here degrades instead of failing: a selector that matches nothing
gives empty strings, missing tags give empty collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import soupsieve
from bs4 import BeautifulSoup, Tag

from hybridcrawl.errors import ValidationError
from hybridcrawl.protocols import DEFAULT_SELECTOR

PARSER = "html.parser"

# MIME types browsers execute as classic or module scripts
JS_SCRIPT_TYPES = {
    "",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
    "text/ecmascript",
    "module",
}


@dataclass
class PageParts:
    """Title, meta tags and resource references found in a document."""

    title: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    links: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, PARSER)


def validate_selector(selector: str) -> None:
    """Raise ``ValidationError`` for CSS that soupsieve cannot compile."""
    if not selector or selector == DEFAULT_SELECTOR:
        return
    try:
        soupsieve.compile(selector)
    except soupsieve.SelectorSyntaxError as e:
        raise ValidationError(f"invalid CSS selector: {selector!r}", details={"selector": selector}) from e


def extract_content(doc: Optional[BeautifulSoup], selector: str = "") -> Tuple[str, str]:
    """
    Text and HTML for ``selector``.

    The default selector (empty or ``body``) yields the body text and the whole
    document. A non-default selector yields the matched elements only, or two
    empty strings when it matches nothing.
    """
    if doc is None:
        return "", ""

    if selector and selector != DEFAULT_SELECTOR:
        matches = doc.select(selector)
        if not matches:
            return "", ""
        text = "\n".join(m.get_text().strip() for m in matches).strip()
        html = "\n".join(str(m) for m in matches)
        return text, html

    body = doc.body
    text = body.get_text().strip() if body is not None else doc.get_text().strip()
    return text, str(doc)


def extract_page(doc: Optional[BeautifulSoup]) -> PageParts:
    """Title, ``name``/``property`` meta tags, anchors, images and external scripts."""
    parts = PageParts()
    if doc is None:
        return parts

    title = doc.find("title")
    if title is not None:
        parts.title = title.get_text().strip()

    for meta in doc.find_all("meta"):
        content = meta.get("content", "")
        name = meta.get("name")
        if name:
            parts.metadata[name] = content
        prop = meta.get("property")
        if prop:
            parts.metadata[prop] = content

    parts.links = _attr_values(doc, "a[href]", "href")
    parts.images = _attr_values(doc, "img[src]", "src")
    parts.scripts = _attr_values(doc, "script[src]", "src")
    return parts


def extract_fields(doc: Optional[BeautifulSoup], fields: Dict[str, str]) -> Dict[str, str]:
    """
    Resolve ``name -> selector`` pairs against ``doc``.

    A selector may end in ``@attr`` to read an attribute of the first match
    instead of its text. Unmatched fields map to an empty string.
    """
    values: Dict[str, str] = {}
    if doc is None:
        return {name: "" for name in fields}
    for name, expr in fields.items():
        selector, attr = split_field_selector(expr)
        try:
            element = doc.select_one(selector) if selector else None
        except soupsieve.SelectorSyntaxError:
            element = None
        if element is None:
            values[name] = ""
        elif attr:
            value = element.get(attr, "")
            values[name] = " ".join(value) if isinstance(value, list) else str(value)
        else:
            values[name] = element.get_text().strip()
    return values


def split_field_selector(expr: str) -> Tuple[str, str]:
    selector, sep, attr = expr.rpartition("@")
    if sep and attr and "]" not in attr and " " not in attr:
        return selector.strip(), attr.strip()
    return expr.strip(), ""


def count_scripts(doc: Optional[BeautifulSoup]) -> int:
    """All ``<script>`` elements, inline or external."""
    if doc is None:
        return 0
    return len(doc.find_all("script"))


def inline_scripts(doc: Optional[BeautifulSoup]) -> List[str]:
    """Source of every inline JavaScript block, in document order."""
    if doc is None:
        return []
    sources: List[str] = []
    for script in doc.find_all("script"):
        if not isinstance(script, Tag) or script.get("src"):
            continue
        if script.get("type", "").strip().lower() not in JS_SCRIPT_TYPES:
            continue
        source = script.string
        if source and source.strip():
            sources.append(str(source))
    return sources


def _attr_values(doc: BeautifulSoup, selector: str, attr: str) -> List[str]:
    values: List[str] = []
    for element in doc.select(selector):
        value = element.get(attr)
        if value:
            values.append(str(value))
    return values
