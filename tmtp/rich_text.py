"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Conversion of notes, descriptions and step texts into rich documents.

TestPlanIt stores rich text as a ProseMirror-style JSON tree::

    {"type": "doc", "content": [{"type": "paragraph", "content": [...]}]}

Export values arrive as such documents, as JSON text holding one, as HTML or
as plain text. ``RichTextNormalizer.normalize`` turns any of them into a
document, or ``None`` when there is nothing to keep.
"""

import json
import re
from html.parser import HTMLParser
from typing import Any

DEFAULT_CACHE_SIZE = 100

MAX_HEADING_LEVEL = 4

INLINE_CONTAINERS = frozenset({"paragraph", "heading", "codeBlock"})
LIST_NODES = frozenset({"bulletList", "orderedList"})

# Tags that only separate blocks and produce no node of their own
BOUNDARY_TAGS = frozenset(
    {
        "div",
        "section",
        "article",
        "header",
        "footer",
        "main",
        "table",
        "thead",
        "tbody",
        "tr",
        "td",
        "th",
        "body",
        "html",
    }
)

MARK_TAGS = {
    "b": "bold",
    "strong": "bold",
    "i": "italic",
    "em": "italic",
    "s": "strike",
    "strike": "strike",
    "del": "strike",
    "code": "code",
    "u": "underline",
}

IGNORED_CONTENT_TAGS = frozenset({"script", "style", "head", "title"})

_TAG_PATTERN = re.compile(r"<(?:[a-zA-Z][a-zA-Z0-9]*|/[a-zA-Z][a-zA-Z0-9]*|!--)[^>]*>")
_WHITESPACE = re.compile(r"\s+")
_BLANK_LINE = re.compile(r"\n\s*\n")


def empty_document() -> dict[str, Any]:
    return {"type": "doc", "content": []}


def is_document(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "doc"


def _has_content(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    node_type = node.get("type")
    if node_type == "text":
        return bool(str(node.get("text", "")).strip())
    if node_type == "horizontalRule":
        return True
    return any(_has_content(child) for child in node.get("content") or [])


def is_empty_document(document: dict[str, Any]) -> bool:
    """A document is empty when it holds no visible text and no rule."""
    return not _has_content(document)


def text_node(text: str, marks: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    node: dict[str, Any] = {"type": "text", "text": text}
    if marks:
        node["marks"] = [dict(mark) for mark in marks]
    return node


def paragraph(*content: dict[str, Any]) -> dict[str, Any]:
    node: dict[str, Any] = {"type": "paragraph"}
    if content:
        node["content"] = list(content)
    return node


def document_from_text(text: str) -> dict[str, Any] | None:
    """
    Build a document from plain text.

    Blank lines separate paragraphs; single newlines become hard breaks.
    """
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
    if not normalized:
        return None
    blocks = []
    for block in _BLANK_LINE.split(normalized):
        content: list[dict[str, Any]] = []
        for index, line in enumerate(block.split("\n")):
            if index > 0:
                content.append({"type": "hardBreak"})
            if line:
                content.append(text_node(line))
        blocks.append(paragraph(*content))
    return {"type": "doc", "content": blocks}


def link_paragraph(name: str, url: str, note: str | None = None) -> dict[str, Any]:
    """A paragraph holding one link, with an optional note after it."""
    content = [text_node(name, [{"type": "link", "attrs": {"href": url, "target": "_blank"}}])]
    if note:
        content.append(text_node(f" ({note})"))
    return paragraph(*content)


def append_blocks(document: Any, blocks: list[dict[str, Any]]) -> dict[str, Any]:
    """Append blocks to an existing document, starting one when there is none."""
    base = document if is_document(document) else empty_document()
    return {**base, "content": list(base.get("content") or []) + blocks}


class _Frame:
    __slots__ = ("node", "tag", "implicit")

    def __init__(self, node: dict[str, Any], tag: str | None, implicit: bool = False):
        self.node = node
        self.tag = tag
        self.implicit = implicit


class DocumentBuilder(HTMLParser):
    """Builds a document tree out of an HTML fragment."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = empty_document()
        self.stack = [_Frame(self.root, None)]
        self.marks: list[tuple[str, dict[str, Any]]] = []
        self.ignored_depth = 0

    @property
    def top(self) -> _Frame:
        return self.stack[-1]

    def _append(self, node: dict[str, Any]) -> None:
        self.top.node.setdefault("content", []).append(node)

    def _push(self, node: dict[str, Any], tag: str | None, implicit: bool = False) -> None:
        self._append(node)
        self.stack.append(_Frame(node, tag, implicit))

    def _pop(self) -> None:
        frame = self.stack.pop()
        if frame.node["type"] in ("paragraph", "heading"):
            _trim_inline(frame.node)

    def _close_inline(self) -> None:
        """Close an open paragraph or heading before a new block starts."""
        while len(self.stack) > 1 and (
            self.top.implicit or self.top.node["type"] in INLINE_CONTAINERS
        ):
            self._pop()

    def _ensure_inline(self) -> dict[str, Any]:
        if self.top.node["type"] in INLINE_CONTAINERS:
            return self.top.node
        if self.top.node["type"] in LIST_NODES:
            self._push({"type": "listItem"}, None, implicit=True)
        self._push({"type": "paragraph"}, None, implicit=True)
        return self.top.node

    def _in_code_block(self) -> bool:
        return any(frame.node["type"] == "codeBlock" for frame in self.stack)

    def handle_starttag(self, tag, attrs):
        if tag in IGNORED_CONTENT_TAGS:
            self.ignored_depth += 1
            return
        attributes = dict(attrs)

        if tag in MARK_TAGS:
            if tag == "code" and self._in_code_block():
                return
            self.marks.append((tag, {"type": MARK_TAGS[tag]}))
        elif tag == "a":
            link_attrs = {"href": attributes.get("href") or ""}
            if attributes.get("target"):
                link_attrs["target"] = attributes["target"]
            self.marks.append((tag, {"type": "link", "attrs": link_attrs}))
        elif tag == "br":
            if self._in_code_block():
                self._ensure_inline().setdefault("content", []).append(text_node("\n"))
            else:
                self._ensure_inline().setdefault("content", []).append({"type": "hardBreak"})
        elif tag == "hr":
            self._close_inline()
            self._append({"type": "horizontalRule"})
        elif tag == "p":
            self._close_inline()
            self._push({"type": "paragraph"}, tag)
        elif re.fullmatch(r"h[1-6]", tag):
            self._close_inline()
            level = min(int(tag[1]), MAX_HEADING_LEVEL)
            self._push({"type": "heading", "attrs": {"level": level}}, tag)
        elif tag in ("ul", "ol"):
            self._close_inline()
            self._push({"type": "bulletList" if tag == "ul" else "orderedList"}, tag)
        elif tag == "li":
            while len(self.stack) > 1 and (
                self.top.node["type"] in INLINE_CONTAINERS or self.top.node["type"] == "listItem"
            ):
                self._pop()
            if self.top.node["type"] not in LIST_NODES:
                self._push({"type": "bulletList"}, None, implicit=True)
            self._push({"type": "listItem"}, tag)
        elif tag == "blockquote":
            self._close_inline()
            self._push({"type": "blockquote"}, tag)
        elif tag == "pre":
            self._close_inline()
            self._push({"type": "codeBlock"}, tag)
        elif tag in BOUNDARY_TAGS:
            self._close_inline()

    def handle_startendtag(self, tag, attrs):
        if tag in ("br", "hr"):
            self.handle_starttag(tag, attrs)

    def handle_endtag(self, tag):
        if tag in IGNORED_CONTENT_TAGS:
            self.ignored_depth = max(0, self.ignored_depth - 1)
            return
        if tag in MARK_TAGS or tag == "a":
            for index in range(len(self.marks) - 1, -1, -1):
                if self.marks[index][0] == tag:
                    del self.marks[index]
                    break
            return
        if tag in BOUNDARY_TAGS:
            self._close_inline()
            return
        for index in range(len(self.stack) - 1, 0, -1):
            if self.stack[index].tag == tag:
                while len(self.stack) > index:
                    self._pop()
                return

    def handle_data(self, data):
        if self.ignored_depth:
            return
        if self._in_code_block():
            if data:
                self._ensure_inline().setdefault("content", []).append(text_node(data))
            return

        text = _WHITESPACE.sub(" ", data)
        if not text.strip() and self.top.node["type"] not in INLINE_CONTAINERS:
            return
        container = self._ensure_inline()
        content = container.setdefault("content", [])
        if not content or content[-1].get("type") == "hardBreak":
            text = text.lstrip()
        if text:
            content.append(text_node(text, [mark for _, mark in self.marks]))

    def build(self) -> dict[str, Any]:
        while len(self.stack) > 1:
            self._pop()
        return _prune(self.root)


def _trim_inline(node: dict[str, Any]) -> None:
    content = node.get("content") or []
    while content and content[-1].get("type") == "text":
        stripped = content[-1]["text"].rstrip()
        if stripped:
            content[-1]["text"] = stripped
            break
        content.pop()
    if not content:
        node.pop("content", None)


def _prune(node: dict[str, Any]) -> dict[str, Any]:
    """Drop empty content lists and containers left without children."""
    children = node.get("content")
    if children is None:
        return node
    pruned = []
    for child in children:
        child = _prune(child)
        if child.get("type") in LIST_NODES | {"listItem", "blockquote"} and not child.get(
            "content"
        ):
            continue
        pruned.append(child)
    if pruned:
        node["content"] = pruned
    elif node.get("type") != "doc":
        node.pop("content", None)
    else:
        node["content"] = []
    return node


def html_to_document(markup: str) -> dict[str, Any]:
    builder = DocumentBuilder()
    builder.feed(markup)
    builder.close()
    return builder.build()


def looks_like_html(text: str) -> bool:
    return bool(_TAG_PATTERN.search(text))


class RichTextNormalizer:
    """
    Converts export values to documents, caching by input text.

    The cache belongs to one import run and is cleared wholesale when full.
    """

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE):
        self.cache_size = cache_size
        self._cache: dict[str, dict[str, Any] | None] = {}

    def normalize(self, value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        if is_document(value):
            return None if is_empty_document(value) else value
        if isinstance(value, (dict, list)):
            return self._from_text(json.dumps(value))
        if isinstance(value, bool):
            return self._from_text(str(value).lower())
        return self._from_text(str(value))

    def _from_text(self, text: str) -> dict[str, Any] | None:
        if not text.strip():
            return None
        if text in self._cache:
            return self._cache[text]

        document = self._convert(text)

        if len(self._cache) >= self.cache_size:
            self._cache.clear()
        self._cache[text] = document
        return document

    def _convert(self, text: str) -> dict[str, Any] | None:
        stripped = text.strip()
        if stripped.startswith("{"):
            try:
                parsed = json.loads(stripped)
            except ValueError:
                parsed = None
            if is_document(parsed):
                return None if is_empty_document(parsed) else parsed

        if looks_like_html(stripped):
            document = html_to_document(stripped)
        else:
            document = document_from_text(stripped)
        if document is None or is_empty_document(document):
            return None
        return document

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
