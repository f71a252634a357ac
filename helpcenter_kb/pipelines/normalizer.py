"""Article body normalization: help-center HTML to structured plain text."""

import re
from typing import Any

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

STRIP_TAGS = ["script", "style", "noscript", "iframe"]
LIST_TAGS = {"ul", "ol"}
BLOCK_TAGS = {
    "p", "div", "section", "article", "blockquote", "header", "footer",
    "h1", "h2", "h3", "h4", "h5", "h6", "pre", "figure", "dl",
}
BULLET = "•"


def _inline_text(node: NavigableString) -> str:
    # Source newlines inside a text node are layout, not structure.
    return re.sub(r"\s+", " ", str(node))


def _children_text(element: Tag) -> str:
    parts = []
    for child in element.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString):
            parts.append(_inline_text(child))
        elif isinstance(child, Tag):
            parts.append(_extract(child))
    return "".join(parts)


def _extract(element: Tag) -> str:
    name = (element.name or "").lower()

    if name in LIST_TAGS:
        items = []
        for li in element.find_all("li", recursive=False):
            text = _extract(li).strip()
            if text:
                items.append(f"{BULLET} {text}")
        return "\n".join(items) + "\n" if items else ""

    if name == "li":
        parts = []
        for child in element.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                parts.append(_inline_text(child))
            elif isinstance(child, Tag) and child.name in LIST_TAGS:
                nested = _extract(child).rstrip("\n")
                if nested:
                    parts.append("\n" + nested)
            elif isinstance(child, Tag):
                parts.append(_extract(child))
        return "".join(parts).strip()

    if name == "br":
        return "\n"

    if name == "table":
        return re.sub(r"\s+", " ", element.get_text(" ")).strip() + "\n\n"

    if name == "pre":
        text = element.get_text().strip("\n")
        return text + "\n\n" if text.strip() else ""

    if name in BLOCK_TAGS:
        text = _children_text(element).strip()
        return text + "\n\n" if text else ""

    return _children_text(element)


def _clean_whitespace(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html: Any) -> str:
    """Convert article HTML into clean text, keeping lists and paragraphs readable.

    Lists become one bullet line per item (nested lists included), paragraph-like
    containers are followed by a blank line, ``<br>`` becomes a newline and tables
    are flattened to their text. Anything that is not a non-empty string yields
    an empty string.
    """
    if not html or not isinstance(html, str):
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    root = soup.body if soup.body is not None else soup
    return _clean_whitespace(_children_text(root))
