"""Utility functions for Sluggy.

This module contains small helpers used throughout the build engine:
string processing, path classification, hashing and content-type detection.

Key functions:
    slugify: Convert filenames to URL slugs.
    titleize: Convert filenames to human-readable titles.
    extract_date_from_name: Extract date from filename prefix.
    hash_bytes: Stable content hash used for SourceFile and artifacts.
    guess_content_type: Content type for an output route.
    can_compress: Whether an artifact benefits from compressed variants.
    ensure_clean_dir: Ensure a directory exists and is empty.
"""

from __future__ import annotations

import hashlib
import mimetypes
import re
import shutil
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

MARKDOWN_SUFFIXES = (".md", ".markdown")

# Editor droppings and temp files that are never part of a site.
TEMP_SUFFIXES = ("~", ".swp", ".swx", ".tmp", ".part")

_EXTRA_TYPES = {
    ".webmanifest": "application/manifest+json",
    ".woff2": "font/woff2",
    ".xml": "application/xml",
}


def slugify(name: str) -> str:
    """Convert filename (without extension) to slug, dropping date prefix.

    Args:
        name: Filename stem.

    Returns:
        URL-friendly slug.
    """
    cleaned = name
    if "-" in cleaned:
        parts = cleaned.split("-")
        if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
            cleaned = "-".join(parts[3:])
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "-", cleaned)
    cleaned = cleaned.strip("-").lower()
    return cleaned or "index"


def titleize(filename: str) -> str:
    """Convert a filename to a human-readable title.

    Examples:
        >>> titleize("2024-01-15-hello-world.md")
        'Hello World'

        >>> titleize("getting-started.md")
        'Getting Started'
    """
    base = Path(filename).name.split(".")[0]
    if "-" in base:
        parts = base.split("-")
        if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
            base = "-".join(parts[3:])
    words = re.split(r"[\s\-_]+", base)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def extract_date_from_name(name: str) -> datetime | None:
    """Extract a date from a filename with YYYY-MM-DD prefix.

    Args:
        name: Filename stem (without extension).

    Returns:
        datetime object if a valid date prefix is found, None otherwise.
    """
    parts = name.split("-")
    if len(parts) >= 3 and all(p.isdigit() for p in parts[:3]):
        try:
            return datetime(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError:
            return None
    return None


def first_paragraph(text: str, limit: int = 160) -> str:
    """Extract and clean the first paragraph from text.

    Strips leading # (headers), HTML tags, and Jinja syntax.
    Collapses whitespace and truncates to the specified limit.
    """
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    for para in paragraphs:
        if para.startswith("#"):
            continue
        para = re.sub(r"<[^>]+>", "", para)
        para = re.sub(r"\{[%#{].*?[%#}]\}", "", para)
        collapsed = " ".join(para.split())
        if collapsed:
            return collapsed[:limit]
    return ""


def hash_bytes(data: bytes) -> str:
    """Return the sha256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def combine_hashes(parts: Iterable[str]) -> str:
    """Fold an ordered sequence of strings into one sha256 digest."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def is_markdown(path: Path) -> bool:
    """Check if a path is a Markdown file."""
    return path.suffix.lower() in MARKDOWN_SUFFIXES


def is_template(path: Path) -> bool:
    """Check if a path is a Jinja template file.

    Matches both .jinja and .html.jinja extensions.
    """
    return path.suffix.lower() == ".jinja"


def is_html(path: Path) -> bool:
    """Check if a path is a plain HTML file (not a Jinja template)."""
    return path.suffix.lower() in (".html", ".htm") and not is_template(path)


def is_hidden_or_temp(path: Path) -> bool:
    """Check if a file is hidden or an editor temp file."""
    name = path.name
    return name.startswith(".") or name.startswith("#") or name.endswith(TEMP_SUFFIXES)


def guess_content_type(route: str) -> str:
    """Return the content type for an output route.

    Routes ending in '/' are pages and always serve HTML.

    Examples:
        >>> guess_content_type("/posts/hello/")
        'text/html; charset=utf-8'

        >>> guess_content_type("/css/main.css")
        'text/css; charset=utf-8'
    """
    if route.endswith("/"):
        return "text/html; charset=utf-8"
    suffix = Path(route).suffix.lower()
    guessed = _EXTRA_TYPES.get(suffix) or mimetypes.guess_type(route)[0]
    if guessed is None:
        return "application/octet-stream"
    if guessed.startswith("text/") or guessed in (
        "application/javascript",
        "application/json",
        "application/xml",
        "image/svg+xml",
    ):
        return f"{guessed}; charset=utf-8"
    return guessed


def can_compress(content_type: str) -> bool:
    """Whether compressed variants are worth producing for a content type.

    Raster images and fonts are already compressed; SVG is text.
    """
    mime = content_type.split(";")[0].strip()
    if mime == "image/svg+xml":
        return True
    return not mime.startswith(("image/", "font/", "audio/", "video/")) and mime not in (
        "application/zip",
        "application/gzip",
        "application/pdf",
    )


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path))
    path.mkdir(parents=True, exist_ok=True)
