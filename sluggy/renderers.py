"""Content body renderers for Sluggy.

Turns the body of a content file into HTML. Markdown goes through mistune
with Pygments highlighting and heading ids; HTML passes through. Jinja bodies
are rendered later by the template layer because they need the page context.

Key classes:
- Heading: One heading collected for the table of contents.
- MarkdownRenderer: Renders Markdown to HTML.
- HTMLRenderer: Passes through HTML content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import mistune
from markupsafe import Markup
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .html_utils import escape_html

MARKDOWN_PLUGINS = ["strikethrough", "footnotes", "table", "url"]


@dataclass(frozen=True)
class Heading:
    """A heading extracted from markdown content for TOC generation.

    Attributes:
        id: Anchor ID for the heading (URL-friendly slug).
        text: The text content of the heading.
        level: Heading level (1-6).
    """

    id: str
    text: str
    level: int


def _generate_heading_id(text: str) -> str:
    """Generate a URL-friendly ID from heading text."""
    slug = re.sub(r"<[^>]+>", "", text).lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-")


class _HighlightRenderer(mistune.HTMLRenderer):
    """Markdown renderer with heading anchors and syntax highlighting.

    Attributes:
        headings: Headings collected during rendering, in document order.
    """

    def __init__(self):
        super().__init__(escape=False)
        self.headings: list[Heading] = []
        self._heading_id_counts: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        base_id = _generate_heading_id(text)
        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id

        self.headings.append(Heading(id=heading_id, text=text, level=level))
        return f'<h{level} id="{heading_id}">{text}</h{level}>\n'

    def block_code(self, code: str, info: str | None = None) -> str:
        """Render a code block with Pygments syntax highlighting.

        Unknown languages fall back to an escaped <pre><code> block.
        """
        if info:
            lang = info.split()[0]
            try:
                lexer = get_lexer_by_name(lang, stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                formatter = HtmlFormatter(nowrap=False, cssclass="highlight")
                return highlight(code, lexer, formatter)
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        lang_class = f' class="language-{escape_html(info.split()[0])}"' if info else ""
        return f"<pre><code{lang_class}>{escaped}</code></pre>\n"


class MarkdownRenderer:
    """Renders Markdown content to HTML."""

    source_type = "markdown"

    def render(self, content: str) -> tuple[str, list[Heading]]:
        """Render Markdown content to HTML.

        A fresh mistune instance is created per call so renders running on
        different worker threads share no parser state.

        Args:
            content: Markdown source content.

        Returns:
            Tuple of (rendered HTML, list of Heading objects).
        """
        renderer = _HighlightRenderer()
        markdown = mistune.create_markdown(renderer=renderer, plugins=MARKDOWN_PLUGINS)
        html = markdown(content)
        return html, renderer.headings


class HTMLRenderer:
    """Passes through HTML content unchanged."""

    source_type = "html"

    def render(self, content: str) -> tuple[str, list[Heading]]:
        return content, []


def render_toc(headings: list[Heading]) -> Markup:
    """Render headings as a nested ``<ul>`` table of contents.

    Args:
        headings: Headings in document order.

    Returns:
        Markup-safe HTML, or empty Markup if there are no headings.
    """
    if not headings:
        return Markup("")

    html_parts: list[str] = []
    level_stack: list[int] = []
    for heading in headings:
        level = heading.level
        while level_stack and level_stack[-1] > level:
            level_stack.pop()
            html_parts.append("</li></ul>")
        if level_stack and level_stack[-1] == level:
            html_parts.append("</li>")
        else:
            html_parts.append("<ul>")
            level_stack.append(level)
        html_parts.append(
            f'<li><a href="#{escape_html(heading.id)}">{escape_html(heading.text)}</a>'
        )
    while level_stack:
        level_stack.pop()
        html_parts.append("</li></ul>")
    return Markup("".join(html_parts))


def pygments_css(selector: str = ".highlight") -> str:
    """Return Pygments CSS rules for highlighted code blocks."""
    return HtmlFormatter().get_style_defs(selector)


BODY_RENDERERS = {
    "markdown": MarkdownRenderer(),
    "html": HTMLRenderer(),
}
