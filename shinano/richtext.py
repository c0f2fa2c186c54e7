"""
Rich-document → HTML.

The editor stores every article/thought body as a nested JSON tree
(``{"content": [{"type": "paragraph", "content": [...]}, ...]}``).
This module turns that tree into markup in two flavours:

• page  – class names only, styled by ``page_stylesheet()``
• feed  – every style inlined, for RSS readers that drop stylesheets

Both flavours go through the *same* dispatcher; only the ``Decorator``
differs, so the two outputs cannot drift apart structurally.
"""

from __future__ import annotations

import html
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

log = logging.getLogger(__name__)

################################################################################
# Constants
################################################################################

MAX_DEPTH = 64
PLACEHOLDER = "<p>No content</p>"
IMAGE_TRANSFORM = "cdn-cgi/image/format=auto,width=960"

STYLE_MAP = MappingProxyType(
    {
        "article": "font-family:'PingFang SC','Hiragino Sans','Microsoft YaHei',sans-serif;margin:0;padding:0;color:#0f172a;line-height:1.75;font-size:16px;background-color:#ffffff;",
        "p": "margin:0 0 1.25rem;color:#0f172a;line-height:1.8;",
        "h1": "margin:2.5rem 0 1.25rem;font-size:2.5rem;line-height:1.2;font-weight:700;color:#0f172a;",
        "h2": "margin:2.25rem 0 1rem;font-size:2rem;line-height:1.25;font-weight:700;color:#0f172a;",
        "h3": "margin:2rem 0 0.85rem;font-size:1.75rem;line-height:1.3;font-weight:600;color:#0f172a;",
        "h4": "margin:1.5rem 0 0.75rem;font-size:1.5rem;line-height:1.35;font-weight:600;color:#0f172a;",
        "h5": "margin:1.25rem 0 0.65rem;font-size:1.35rem;line-height:1.3;font-weight:600;color:#0f172a;",
        "h6": "margin:1rem 0 0.5rem;font-size:1.1rem;line-height:1.3;font-weight:600;color:#0f172a;text-transform:uppercase;letter-spacing:0.04em;",
        "blockquote": "margin:1.75rem 0;padding:0.75rem 1rem;border-left:4px solid #c4b5fd;background-color:#f5f3ff;color:#4c1d95;font-style:italic;",
        "ul": "margin:0 0 1.25rem;padding-left:1.5rem;color:#0f172a;list-style-type:disc;",
        "ol": "margin:0 0 1.25rem;padding-left:1.5rem;color:#0f172a;list-style-type:decimal;",
        "li": "margin:0.35rem 0;line-height:1.7;color:#0f172a;",
        "pre": "margin:1.75rem 0;padding:1rem;border-radius:0.85rem;background-color:#0f172a;color:#f8fafc;font-size:0.9rem;line-height:1.6;overflow:auto;",
        "code:block": "font-family:'SFMono-Regular','Consolas','Menlo',monospace;color:#f8fafc;white-space:pre-wrap;word-wrap:break-word;",
        "code": "font-family:'SFMono-Regular','Consolas','Menlo',monospace;background-color:rgba(15,23,42,0.08);padding:0.15rem 0.4rem;border-radius:0.35rem;color:#0f172a;",
        "hr": "margin:2.5rem 0;border:none;border-bottom:1px solid #e4e4e7;",
        "figure": "margin:1.5rem 0;",
        "img": "max-width:100%;height:auto;border-radius:0.375rem;",
        "figcaption": "margin-top:0.5rem;text-align:center;font-size:0.875rem;color:#6b7280;",
        "table": "width:100%;border-collapse:collapse;margin:2rem 0;font-size:0.95rem;color:#0f172a;border:1px solid #d1d5db;",
        "tr": "border-bottom:1px solid #e4e4e7;",
        "tr:even": "border-bottom:1px solid #e4e4e7;background-color:#ffffff;",
        "tr:odd": "border-bottom:1px solid #e4e4e7;background-color:#f9fafb;",
        "th": "text-align:left;padding:0.75rem;background-color:#eef2ff;font-weight:600;color:#312e81;",
        "td": "padding:0.75rem;vertical-align:top;color:#0f172a;",
        "a": "color:#4f46e5;text-decoration:none;border-bottom:1px solid rgba(79,70,229,0.5);",
        "strong": "font-weight:700;color:#111827;",
        "em": "font-style:italic;color:#1f2937;",
        "del": "color:#94a3b8;text-decoration:line-through;",
        "mark": "background-color:#fef08a;color:#78350f;padding:0 0.2em;border-radius:0.2em;",
        "sup": "font-size:0.75em;line-height:0;",
        "br": "line-height:1.6;",
        "embed": "margin:1.5rem 0;",
    }
)

MARK_TAGS = MappingProxyType(
    {
        "bold": "strong",
        "italic": "em",
        "strike": "del",
        "code": "code",
        "highlight": "mark",
        "superscript": "sup",
    }
)

CODE_KINDS = frozenset({"codeBlock", "customCodeBlock"})
CELL_KINDS = frozenset({"tableHeader", "tableCell"})

_UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:")
_CONTROL_RE = re.compile(r"[\x00-\x20\x7f]+")
_WS_RE = re.compile(r"\s+")


class StyleMode(str, Enum):
    PAGE = "page"
    FEED = "feed"


class DocumentError(ValueError):
    """The stored value is not a rich document at all."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


################################################################################
# Parsed tree
################################################################################


@dataclass(frozen=True)
class Mark:
    type: str
    href: str | None = None
    target: str | None = None
    rel: str | None = None


@dataclass(frozen=True)
class Attrs:
    level: int | float | None = None
    id: str | int | None = None
    start: int | float | None = None
    language: str | None = None
    alt: str | None = None
    caption: str | None = None
    storage_key: str | None = None
    prefix: str | None = None
    width: int | float | None = None
    height: int | float | None = None
    code: str | None = None


EMPTY_ATTRS = Attrs()


@dataclass(frozen=True)
class Node:
    type: str
    content: tuple[Node, ...] = ()
    text: str | None = None
    marks: tuple[Mark, ...] = ()
    attrs: Attrs = EMPTY_ATTRS


@dataclass(frozen=True)
class Document:
    content: tuple[Node, ...] = ()


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _string(value):
    return value if isinstance(value, str) else None


def _ident(value):
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return value


def _parse_attrs(raw) -> Attrs:
    if not isinstance(raw, Mapping) or not raw:
        return EMPTY_ATTRS
    return Attrs(
        level=_number(raw.get("level")),
        id=_ident(raw.get("id")),
        start=_number(raw.get("start")),
        language=_string(raw.get("language")),
        alt=_string(raw.get("alt")),
        caption=_string(raw.get("caption")),
        storage_key=_string(raw.get("storage_key")),
        prefix=_string(raw.get("prefix")),
        width=_number(raw.get("width")),
        height=_number(raw.get("height")),
        code=_string(raw.get("code")),
    )


def _parse_marks(raw) -> tuple[Mark, ...]:
    if not isinstance(raw, list):
        return ()
    marks = []
    for m in raw:
        if not isinstance(m, Mapping) or not isinstance(m.get("type"), str):
            continue
        attrs = m.get("attrs")
        attrs = attrs if isinstance(attrs, Mapping) else {}
        marks.append(
            Mark(
                type=m["type"],
                href=_string(attrs.get("href")),
                target=_string(attrs.get("target")),
                rel=_string(attrs.get("rel")),
            )
        )
    return tuple(marks)


def parse_node(raw, depth: int = 0) -> Node | None:
    """
    Coerce one raw JSON node into a ``Node``.
    Returns ``None`` for values that are not nodes at all (no string type).
    """
    if isinstance(raw, Node):
        return raw
    if not isinstance(raw, Mapping) or not isinstance(raw.get("type"), str):
        return None
    return Node(
        type=raw["type"],
        content=parse_nodes(raw.get("content"), depth + 1),
        text=_string(raw.get("text")),
        marks=_parse_marks(raw.get("marks")),
        attrs=_parse_attrs(raw.get("attrs")),
    )


def parse_nodes(raw, depth: int = 0) -> tuple[Node, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        return ()
    if depth >= MAX_DEPTH:
        log.warning("rich document nested deeper than %d levels, truncated", MAX_DEPTH)
        return ()
    nodes = (parse_node(item, depth) for item in raw)
    return tuple(n for n in nodes if n is not None)


def parse_document(raw) -> Document:
    """
    Validate the stored value once, at the boundary.

    Raises ``DocumentError`` when *raw* is not a mapping or its
    ``content`` is not a list. Malformed entries *inside* the tree are
    dropped instead, so a single bad node never sinks the whole page.
    """
    if isinstance(raw, Document):
        return raw
    if not isinstance(raw, Mapping):
        raise DocumentError(f"expected an object, got {type(raw).__name__}")
    content = raw.get("content")
    if not isinstance(content, list):
        raise DocumentError("document has no content list")
    return Document(content=parse_nodes(content))


################################################################################
# Small helpers
################################################################################


def escape(text) -> str:
    """HTML-escape ``& < > " '`` – safe for text *and* attribute values."""
    if text is None:
        return ""
    return html.escape(str(text), quote=True)


def safe_href(href: str | None) -> str:
    """
    Neutralise script-capable URLs.

    • missing / blank href      → ``#``
    • javascript:, vbscript:, data: (any case, with embedded
      whitespace or control chars)  → ``#``
    • anything else is returned stripped; the caller still escapes it.
    """
    if not href or not href.strip():
        return "#"
    probe = _CONTROL_RE.sub("", href).lower()
    if probe.startswith(_UNSAFE_SCHEMES):
        return "#"
    return href.strip()


def heading_level(level) -> int:
    """Round half-up, then clamp: below 1 (or missing) → 2, above 6 → 6."""
    if level is None or not math.isfinite(level):
        return 2
    n = math.floor(level + 0.5)
    if n < 1:
        return 2
    return min(n, 6)


def style_for(key: str) -> str:
    """Inline CSS for a tag (or ``tag:variant``); empty when unknown."""
    return STYLE_MAP.get(key, "")


def class_for(key: str) -> str:
    """Stable page-mode class name for a style key (``tr:odd`` → ``rt-tr--odd``)."""
    if key not in STYLE_MAP:
        return ""
    return "rt-" + key.replace(":", "--")


def page_stylesheet() -> str:
    """The CSS that makes page-mode markup look like the inlined feed markup."""
    return "\n".join(f".{class_for(k)}{{{v}}}" for k, v in STYLE_MAP.items())


################################################################################
# Decorators
################################################################################


class Decorator:
    """
    Builds tags. Subclasses decide how a style key turns into attributes.
    Author-supplied attribute values are escaped here, never by callers.
    """

    container = "article"

    def decoration(self, key: str) -> list[tuple[str, str]]:
        return []

    def _attrs(self, key, attrs, classes) -> str:
        parts = []
        deco = dict(self.decoration(key))
        extra_classes = " ".join(escape(c) for c in classes if c)
        if extra_classes:
            deco["class"] = (
                f"{deco['class']} {extra_classes}" if deco.get("class") else extra_classes
            )
        for name, value in deco.items():
            parts.append(f' {name}="{value}"')
        for name, value in attrs or ():
            if value is None:
                continue
            parts.append(f' {name}="{escape(value)}"')
        return "".join(parts)

    def open(self, tag: str, *, key: str | None = None, attrs=None, classes=()) -> str:
        return f"<{tag}{self._attrs(key or tag, attrs, classes)}>"

    def wrap(
        self, tag: str, inner: str, *, key: str | None = None, attrs=None, classes=()
    ) -> str:
        return f"{self.open(tag, key=key, attrs=attrs, classes=classes)}{inner}</{tag}>"

    def void(self, tag: str, *, key: str | None = None, attrs=None) -> str:
        return f"<{tag}{self._attrs(key or tag, attrs, ())} />"


class ClassDecorator(Decorator):
    """Page mode: ``class="rt-…"``, styled by ``page_stylesheet()``."""

    def decoration(self, key: str) -> list[tuple[str, str]]:
        name = class_for(key)
        return [("class", name)] if name else []


class InlineStyleDecorator(Decorator):
    """Feed mode: ``style="…"`` on every element."""

    container = "div"

    def decoration(self, key: str) -> list[tuple[str, str]]:
        style = style_for(key)
        return [("style", style)] if style else []


_DECORATORS = MappingProxyType(
    {StyleMode.PAGE: ClassDecorator(), StyleMode.FEED: InlineStyleDecorator()}
)


################################################################################
# Renderer
################################################################################


class Renderer:
    """One dispatcher for every style mode."""

    def __init__(
        self,
        mode: StyleMode | str = StyleMode.PAGE,
        *,
        image_prefix: str | None = None,
        max_depth: int = MAX_DEPTH * 2,  # parsed trees are already cut at MAX_DEPTH
    ):
        self.mode = StyleMode(mode)
        self.deco = _DECORATORS[self.mode]
        self.image_prefix = image_prefix
        self.max_depth = max_depth
        self._rules = {
            "paragraph": self._paragraph,
            "heading": self._heading,
            "blockquote": self._blockquote,
            "codeBlock": self._code_block,
            "customCodeBlock": self._code_block,
            "horizontalRule": self._horizontal_rule,
            "image": self._image,
            "table": self._table,
            "tableRow": self._table_row,
            "tableHeader": self._table_cell,
            "tableCell": self._table_cell,
            "bulletList": self._bullet_list,
            "orderedList": self._ordered_list,
            "listItem": self._list_item,
            "embed": self._embed,
            "text": self._text,
            "hardBreak": self._hard_break,
        }

    # -- document ---------------------------------------------------------
    def render(self, document) -> str:
        try:
            doc = parse_document(document)
        except DocumentError:
            return PLACEHOLDER
        return self.deco.wrap(self.deco.container, self.render_body(doc), key="article")

    def render_body(self, document) -> str:
        doc = parse_document(document)
        return self.render_children(doc.content)

    # -- dispatch -------------------------------------------------------
    def render_node(self, node: Node, depth: int = 0) -> str:
        if depth > self.max_depth:
            return ""
        rule = self._rules.get(node.type)
        if rule is None:
            return self.render_children(node.content, depth)
        return rule(node, depth)

    def render_children(self, nodes, depth: int = 0) -> str:
        if not nodes:
            return ""
        return "".join(self.render_node(n, depth + 1) for n in nodes)

    def apply_marks(self, text: str, marks) -> str:
        """
        Wrap already-escaped *text* in its marks.

        Marks are applied in reverse authoring order, so the first mark
        the author set ends up as the outermost element:
        ``[link, bold]`` → ``<a><strong>text</strong></a>``.
        """
        if not text or not marks:
            return text
        for mark in reversed(marks):
            if mark.type == "link":
                attrs = [
                    ("href", safe_href(mark.href)),
                    ("target", mark.target),
                    ("rel", mark.rel),
                ]
                text = self.deco.wrap("a", text, attrs=attrs)
                continue
            tag = MARK_TAGS.get(mark.type)
            if tag:
                text = self.deco.wrap(tag, text)
        return text

    # -- rules --------------------------------------------------------------
    def _paragraph(self, node, depth):
        return self.deco.wrap("p", self.render_children(node.content, depth))

    def _heading(self, node, depth):
        tag = f"h{heading_level(node.attrs.level)}"
        attrs = [("id", node.attrs.id)]
        return self.deco.wrap(tag, self.render_children(node.content, depth), attrs=attrs)

    def _blockquote(self, node, depth):
        return self.deco.wrap("blockquote", self.render_children(node.content, depth))

    def _code_block(self, node, depth):
        first = node.content[0] if node.content else None
        code = escape(first.text if first is not None else "")
        language = (node.attrs.language or "").strip()
        classes = (f"language-{language}",) if language else ()
        inner = self.deco.wrap("code", code, key="code:block", classes=classes)
        return self.deco.wrap("pre", inner)

    def _horizontal_rule(self, node, depth):
        return self.deco.void("hr")

    def _image(self, node, depth):
        a = node.attrs
        prefix = a.prefix if a.prefix else self.image_prefix
        if not a.storage_key or a.id is None or not prefix:
            return ""
        src = f"{prefix.rstrip('/')}/{IMAGE_TRANSFORM}/{a.storage_key}"
        attrs = [("src", src), ("alt", a.alt or "")]
        if a.width is not None and a.height is not None:
            attrs += [("width", int(a.width)), ("height", int(a.height))]
        attrs.append(("loading", "lazy"))
        inner = self.deco.void("img", attrs=attrs)
        if a.caption:
            inner += self.deco.wrap("figcaption", escape(a.caption))
        return self.deco.wrap("figure", inner)

    def _cells(self, row, tag, depth):
        out = []
        for cell in row.content:
            if cell.type in CELL_KINDS:
                inner = self.render_children(cell.content, depth + 1)
            else:
                inner = self.render_node(cell, depth + 2)
            out.append(self.deco.wrap(tag, inner))
        return "".join(out)

    def _table(self, node, depth):
        if not node.content:
            return ""
        head, *body = node.content
        out = self.deco.wrap("thead", self.deco.wrap("tr", self._cells(head, "th", depth)))
        if body:
            rows = "".join(
                self.deco.wrap(
                    "tr",
                    self._cells(row, "td", depth),
                    key="tr:odd" if i % 2 else "tr:even",
                )
                for i, row in enumerate(body)
            )
            out += self.deco.wrap("tbody", rows)
        return self.deco.wrap("table", out)

    def _table_row(self, node, depth):
        return self.deco.wrap("tr", self._cells(node, "td", depth))

    def _table_cell(self, node, depth):
        tag = "th" if node.type == "tableHeader" else "td"
        return self.deco.wrap(tag, self.render_children(node.content, depth))

    def _items(self, node, depth):
        out = []
        for item in node.content:
            if item.type == "listItem":
                out.append(self._list_item(item, depth + 1))
            else:
                out.append(self.deco.wrap("li", self.render_node(item, depth + 2)))
        return "".join(out)

    def _bullet_list(self, node, depth):
        return self.deco.wrap("ul", self._items(node, depth))

    def _ordered_list(self, node, depth):
        start = int(node.attrs.start) if node.attrs.start is not None else 1
        attrs = [("start", start)] if start > 1 else None
        return self.deco.wrap("ol", self._items(node, depth), attrs=attrs)

    def _list_item(self, node, depth):
        return self.deco.wrap("li", self.render_children(node.content, depth))

    def _embed(self, node, depth):
        # trusted publisher markup: the only value emitted without escaping
        code = node.attrs.code
        if not code:
            return ""
        return self.deco.wrap("div", code, key="embed", classes=("iframe-container",))

    def _text(self, node, depth):
        return self.apply_marks(escape(node.text), node.marks)

    def _hard_break(self, node, depth):
        return self.deco.void("br")


def render(document, mode: StyleMode | str = StyleMode.PAGE, *, image_prefix=None) -> str:
    """Render a stored document; the fixed ``PLACEHOLDER`` if it is not one."""
    return Renderer(mode, image_prefix=image_prefix).render(document)


def render_body(document, mode: StyleMode | str = StyleMode.PAGE, *, image_prefix=None) -> str:
    """Like ``render`` without the outer container. Raises ``DocumentError``."""
    return Renderer(mode, image_prefix=image_prefix).render_body(document)


################################################################################
# Plain text
################################################################################


def _as_nodes(value) -> tuple[Node, ...]:
    if isinstance(value, Document):
        return value.content
    if isinstance(value, Node):
        return (value,)
    if isinstance(value, Mapping):
        if isinstance(value.get("type"), str):
            node = parse_node(value)
            return (node,) if node else ()
        return parse_nodes(value.get("content"))
    return parse_nodes(value)


def _plain(node: Node, depth: int) -> str:
    if node.type == "text":
        return node.text or ""
    if node.type == "hardBreak":
        return "\n"
    if depth > MAX_DEPTH:
        return ""
    return "".join(_plain(child, depth + 1) for child in node.content)


def extract_text(nodes) -> str:
    """
    Concatenate every text run, one newline per hard break.
    Accepts a Document, a Node, a list of nodes or raw JSON; never raises.
    """
    return "".join(_plain(n, 0) for n in _as_nodes(nodes))


def excerpt(value, limit: int = 160) -> str:
    """Single-line summary of a document, cut at *limit* characters."""
    clean = _WS_RE.sub(" ", extract_text(value)).strip()
    if len(clean) <= limit:
        return clean
    return clean[:limit].rstrip() + "…"
