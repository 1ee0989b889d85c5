"""Metadata extractors for Sluggy.

Each extractor pulls one kind of metadata out of a content file's text. They
only ever see the bytes the scanner hashed, never the file system, so the
metadata of a page is a pure function of its SourceFile.

Key classes:
- FrontmatterExtractor: Splits the YAML front matter block from the body.
- TitleExtractor: Title from front matter, first heading or filename.
- DateExtractor: Date from front matter or a YYYY-MM-DD filename prefix.
- DescriptionExtractor: Description from front matter or first paragraph.
- CompositeMetadataExtractor: Runs several extractors and merges results.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from pathlib import PurePosixPath
from typing import Any

import yaml

from .errors import FrontMatterError
from .utils import extract_date_from_name, first_paragraph, titleize

FRONTMATTER_MARKER = "---"
FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE
)


def extract_frontmatter(text: str, entity_id: str = "<string>") -> tuple[dict[str, Any], str]:
    """Extract YAML front matter from content.

    Args:
        text: Raw file content.
        entity_id: Id the error is attributed to when parsing fails.

    Returns:
        Tuple of (front matter dict, remaining content).

    Raises:
        FrontMatterError: If the block is unterminated, is not valid YAML or
            does not hold a mapping.
    """
    first_line = text.split("\n", 1)[0].rstrip("\r").strip()
    if first_line != FRONTMATTER_MARKER:
        return {}, text
    match = FRONTMATTER_RE.match(text)
    if not match:
        raise FrontMatterError(entity_id, "front matter block is not terminated by '---'")
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise FrontMatterError(entity_id, f"invalid YAML front matter: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrontMatterError(
            entity_id, f"front matter must be a mapping, got {type(data).__name__}"
        )
    return data, text[match.end() :]


class FrontmatterExtractor:
    """Splits YAML front matter (between --- markers) from the body."""

    def extract(self, content: str, file_id: str, frontmatter: dict[str, Any]) -> dict[str, Any]:
        parsed, body = extract_frontmatter(content, file_id)
        return {"frontmatter": parsed, "body": body}


class TitleExtractor:
    """Extracts title from front matter, content or filename.

    Looks for a ``title`` key, then a level-1 heading (# Title) in the body,
    falling back to titleizing the filename.
    """

    def extract(self, content: str, file_id: str, frontmatter: dict[str, Any]) -> dict[str, Any]:
        """Extract title.

        Args:
            content: Body text with front matter removed.
            file_id: Id of the source file.
            frontmatter: Parsed front matter.

        Returns:
            Dictionary with 'title' key.
        """
        if frontmatter.get("title"):
            return {"title": str(frontmatter["title"])}
        for line in content.splitlines():
            stripped = line.strip()
            if stripped.startswith("# "):
                return {"title": stripped.lstrip("# ").strip()}
        return {"title": titleize(PurePosixPath(file_id).name)}


class DateExtractor:
    """Extracts date from front matter or a YYYY-MM-DD filename prefix.

    Unlike a modification time, both sources are part of the hashed input.
    """

    def extract(self, content: str, file_id: str, frontmatter: dict[str, Any]) -> dict[str, Any]:
        value = frontmatter.get("date")
        if isinstance(value, datetime):
            return {"date": value}
        if isinstance(value, date):
            return {"date": datetime(value.year, value.month, value.day)}
        if isinstance(value, str):
            try:
                return {"date": datetime.fromisoformat(value)}
            except ValueError as exc:
                raise FrontMatterError(file_id, f"invalid date {value!r}") from exc
        stem = PurePosixPath(file_id).name.split(".")[0]
        return {"date": extract_date_from_name(stem)}


class DescriptionExtractor:
    """Extracts a description, preferring the front matter value."""

    def extract(self, content: str, file_id: str, frontmatter: dict[str, Any]) -> dict[str, Any]:
        if frontmatter.get("description"):
            return {"description": str(frontmatter["description"])}
        return {"description": first_paragraph(content)}


class CompositeMetadataExtractor:
    """Combines multiple metadata extractors.

    The front matter extractor always runs first; the remaining extractors
    see the body and the parsed front matter and their results are merged in
    order, later extractors overriding earlier ones.
    """

    def __init__(self, extractors: list | None = None):
        """Initialize with a list of extractors.

        Args:
            extractors: Extractors to run after front matter parsing. If None,
                uses the title, date and description extractors.
        """
        self._frontmatter = FrontmatterExtractor()
        if extractors is None:
            self._extractors = [TitleExtractor(), DateExtractor(), DescriptionExtractor()]
        else:
            self._extractors = list(extractors)

    def extract(self, content: str, file_id: str) -> dict[str, Any]:
        """Extract all metadata from content.

        Args:
            content: Raw source text.
            file_id: Id of the source file.

        Returns:
            Dictionary with 'frontmatter', 'body' and every extracted key.

        Raises:
            FrontMatterError: If the front matter cannot be parsed.
        """
        result = self._frontmatter.extract(content, file_id, {})
        for extractor in self._extractors:
            result.update(extractor.extract(result["body"], file_id, result["frontmatter"]))
        return result


default_metadata_extractor = CompositeMetadataExtractor()
