"""HTML utility functions for Sluggy.

This module provides HTML and CSS string manipulation: escaping, joining the
configured base URL onto paths, and rewriting site-relative ``@/`` references.

Functions:
    escape_html: Escape special HTML characters in a string.
    join_root_url: Join a base URL with a path.
    rewrite_site_urls: Rewrite ``@/`` href/src attributes against the base URL.
    rewrite_css_urls: Rewrite ``url(@/...)`` references in stylesheets.
"""

from __future__ import annotations

import re

# href/src attributes pointing at "@/..." site-relative paths
_SITE_ATTR_RE = re.compile(
    r'(?P<prefix>\b(?:href|src)=(?P<quote>["\']))@/(?P<path>[^"\']*)(?P=quote)'
)

_CSS_URL_RE = re.compile(r"""url\(\s*(?P<quote>["']?)@/(?P<path>[^"')]*)(?P=quote)\s*\)""")


def escape_html(text: str) -> str:
    """Escape special HTML characters in a string.

    Examples:
        >>> escape_html('<script>alert("XSS")</script>')
        '&lt;script&gt;alert(&quot;XSS&quot;)&lt;/script&gt;'

        >>> escape_html('Tom & Jerry')
        'Tom &amp; Jerry'
    """
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def join_root_url(root_url: str, path: str) -> str:
    """Safely join a root URL and a path, avoiding double slashes.

    Examples:
        >>> join_root_url('https://example.com', '/about')
        'https://example.com/about'

        >>> join_root_url('https://example.com/', 'about')
        'https://example.com/about'
    """
    if not root_url:
        return path
    base = root_url.rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    return f"{base}{suffix}"


def rewrite_site_urls(html: str, base_url: str) -> str:
    """Rewrite ``@/`` references in href and src attributes.

    Examples:
        >>> rewrite_site_urls('<a href="@/about/">About</a>', 'https://example.com/')
        '<a href="https://example.com/about/">About</a>'
    """

    def repl(match: re.Match) -> str:
        quote = match.group("quote")
        target = join_root_url(base_url, match.group("path"))
        return f"{match.group('prefix')}{target}{quote}"

    return _SITE_ATTR_RE.sub(repl, html)


def rewrite_css_urls(css: str, base_url: str) -> str:
    """Rewrite ``url(@/...)`` references in a stylesheet.

    Examples:
        >>> rewrite_css_urls('a{background:url("@/img/bg.png")}', '/')
        'a{background:url("/img/bg.png")}'
    """

    def repl(match: re.Match) -> str:
        target = join_root_url(base_url, match.group("path"))
        return f'url("{target}")'

    return _CSS_URL_RE.sub(repl, css)
