"""Content sections for Sluggy.

A directory under the content dir becomes a section when it holds a
``section.yaml`` manifest. The manifest names the section and may choose the
template of the section's index page and a slug pattern for the routes of
its entries. Entries are the content files directly inside the directory;
the index page (``index.md``, ``index.html``, ...) lists them and is not an
entry itself. Subdirectories are sections only if they carry a manifest of
their own.

Templates reach sections through the ``sections()`` function and the
``entry`` filter; a section's index page also sees its own section as
``section``.

Key classes:
- SectionManifest: Parsed manifest of one section.
- Section: A manifest plus the entries of the current build.
- SectionLookup: The ``sections()`` function handed to templates.

Key functions:
- load_manifest: Parse manifest bytes into a SectionManifest.
- manifest_for: Manifest id governing a content file, if any.
- slug_route_segments: Route segments of an entry under a slug pattern.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

import yaml

from .errors import SourceError
from .scanner import SECTION_MANIFESTS, SourceFile
from .utils import slugify

logger = logging.getLogger(__name__)

MANIFEST_NAMES = SECTION_MANIFESTS
MANIFEST_FIELDS = ("title", "description", "link_text", "index_template", "slug_pattern")
SLUG_GROUP = "slug"

# Date-prefixed file names, e.g. 2024-01-15-hello.md -> /posts/2024/01/15/hello/
DATE_SLUG_PATTERN = r"^(\d{4})-(\d{2})-(\d{2})-(?P<slug>.*)"


@dataclass(frozen=True)
class SectionManifest:
    """Contents of a ``section.yaml``.

    Attributes:
        id: Id of the manifest file.
        handle: Directory of the section relative to the content dir, e.g.
            "posts" or "docs/guides"; "" for the content root.
        title: Section title.
        description: Section description.
        link_text: Text for navigation links to the section.
        index_template: Layout of the section's index page when its front
            matter does not choose one.
        slug_pattern: Regular expression with a ``slug`` group, matched
            against entry file names to derive their routes.
    """

    id: str
    handle: str
    title: str | None = None
    description: str | None = None
    link_text: str | None = None
    index_template: str | None = None
    slug_pattern: str | None = None

    @property
    def prefix(self) -> str:
        """Handle with a trailing slash, or "" for the root section."""
        return f"{self.handle}/" if self.handle else ""

    @property
    def route(self) -> str:
        return f"/{self.prefix}"


@dataclass(frozen=True)
class Section:
    """A section as templates see it.

    Attributes:
        handle: Section handle.
        title: Section title.
        description: Section description.
        link_text: Navigation link text; falls back to the title.
        prefix: Handle with a trailing slash.
        route: Route of the section's index page.
        entries: Ids of published entries, newest first.
        pages: Page mappings of ``entries``, in the same order.
    """

    handle: str
    title: str | None
    description: str | None
    link_text: str | None
    prefix: str
    route: str
    entries: tuple[str, ...] = ()
    pages: tuple[dict[str, Any], ...] = field(default=(), compare=False)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.pages)

    def __len__(self) -> int:
        return len(self.pages)

    def latest(self, count: int = 5) -> list[dict[str, Any]]:
        return list(self.pages[:count])

    def entry(self, entity_id: str) -> dict[str, Any] | None:
        for page in self.pages:
            if page["id"] == entity_id:
                return page
        return None


def is_manifest(entity_id: str) -> bool:
    return PurePosixPath(entity_id).name in MANIFEST_NAMES


def is_index(entity_id: str) -> bool:
    """Whether a content file is the index page of its directory.

    Examples:
        >>> is_index("content/posts/index.md")
        True

        >>> is_index("content/posts/indexing.md")
        False
    """
    return PurePosixPath(entity_id).name.split(".")[0] == "index"


def section_handle(manifest_id: str, content_dir: str) -> str:
    """Handle of the section a manifest defines.

    Examples:
        >>> section_handle("content/posts/section.yaml", "content")
        'posts'

        >>> section_handle("content/section.yaml", "content")
        ''
    """
    parent = PurePosixPath(manifest_id).parent.relative_to(content_dir).as_posix()
    return "" if parent == "." else parent


def manifest_candidates(handle: str, content_dir: str) -> tuple[str, ...]:
    """Ids that can define the section ``handle``."""
    base = PurePosixPath(content_dir, handle.strip("/")) if handle.strip("/") else PurePosixPath(content_dir)
    return tuple((base / name).as_posix() for name in MANIFEST_NAMES)


def manifest_for(entity_id: str, exists: Callable[[str], bool]) -> str | None:
    """Id of the manifest in the same directory as ``entity_id``, if any."""
    parent = PurePosixPath(entity_id).parent
    for name in MANIFEST_NAMES:
        candidate = (parent / name).as_posix()
        if candidate != entity_id and exists(candidate):
            return candidate
    return None


def same_directory(entity_id: str, manifest_id: str) -> bool:
    return PurePosixPath(entity_id).parent == PurePosixPath(manifest_id).parent


def load_manifest(source: SourceFile, content_dir: str) -> SectionManifest:
    """Parse a section manifest.

    Args:
        source: The manifest SourceFile.
        content_dir: Content directory the handle is relative to.

    Returns:
        The parsed SectionManifest. Unknown keys are ignored.

    Raises:
        SourceError: If the manifest is not a YAML mapping, a field is not a
            string, or the slug pattern is invalid.
    """
    try:
        loaded = yaml.safe_load(source.text)
    except UnicodeDecodeError as exc:
        raise SourceError(source.id, f"not valid UTF-8: {exc}") from exc
    except yaml.YAMLError as exc:
        raise SourceError(source.id, f"invalid section manifest: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise SourceError(source.id, "section manifest must be a mapping")

    values: dict[str, str | None] = {}
    for key in MANIFEST_FIELDS:
        value = loaded.get(key)
        if value is not None and not isinstance(value, str):
            raise SourceError(source.id, f"'{key}' must be a string")
        values[key] = value
    unknown = sorted(set(map(str, loaded)) - set(MANIFEST_FIELDS))
    if unknown:
        logger.debug("Ignoring unknown keys in %s: %s", source.id, ", ".join(unknown))

    pattern = values["slug_pattern"]
    if pattern is not None:
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise SourceError(source.id, f"invalid slug_pattern {pattern!r}: {exc}") from exc
        if SLUG_GROUP not in compiled.groupindex:
            raise SourceError(source.id, f"slug_pattern {pattern!r} has no (?P<{SLUG_GROUP}>...) group")

    return SectionManifest(id=source.id, handle=section_handle(source.id, content_dir), **values)


def slug_route_segments(pattern: str, stem: str) -> list[str] | None:
    """Route segments of an entry named ``stem`` under ``pattern``.

    Every group the pattern captures becomes a segment, in order; the ``slug``
    group is slugified.

    Args:
        pattern: Slug pattern with a ``slug`` group.
        stem: Entry file name without suffix.

    Returns:
        The segments, or None when the pattern does not match.

    Raises:
        ValueError: If the pattern matches but captures no slug.

    Examples:
        >>> slug_route_segments(DATE_SLUG_PATTERN, "2024-01-15-hello-world")
        ['2024', '01', '15', 'hello-world']

        >>> slug_route_segments(DATE_SLUG_PATTERN, "about") is None
        True
    """
    match = re.search(pattern, stem)
    if match is None:
        return None
    slug = match.group(SLUG_GROUP)
    if not slug:
        raise ValueError(f"{pattern} did not capture a {SLUG_GROUP!r} from {stem!r}")
    slug_index = match.re.groupindex[SLUG_GROUP]
    segments: list[str] = []
    for index, value in enumerate(match.groups(), start=1):
        if not value:
            continue
        segments.append(slugify(value) if index == slug_index else value)
    return segments


def _newest_first_key(page: Mapping[str, Any]) -> datetime:
    value = page.get("date")
    if not isinstance(value, datetime):
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def build_section(manifest: SectionManifest, pages: list[dict[str, Any]]) -> Section:
    """Assemble the template view of a section.

    Args:
        manifest: The section's manifest.
        pages: Page mappings of the published entries, in any order.

    Returns:
        Section with entries sorted newest first, then by id.
    """
    ordered = sorted(pages, key=lambda p: p["id"])
    ordered.sort(key=_newest_first_key, reverse=True)
    return Section(
        handle=manifest.handle,
        title=manifest.title,
        description=manifest.description,
        link_text=manifest.link_text or manifest.title,
        prefix=manifest.prefix,
        route=manifest.route,
        entries=tuple(p["id"] for p in ordered),
        pages=tuple(ordered),
    )


class SectionLookup:
    """The ``sections()`` template function.

    ``sections()`` lists every section visible to the page, sorted by handle;
    ``sections("posts")`` returns one section or None.
    """

    def __init__(self, visible: Mapping[str, Section], content_dir: str = ""):
        self._visible = dict(sorted(visible.items()))
        self.content_dir = content_dir

    def __call__(self, handle: str | None = None) -> list[Section] | Section | None:
        if handle is None:
            return list(self._visible.values())
        return self.get(handle)

    def __iter__(self) -> Iterator[Section]:
        return iter(self._visible.values())

    def get(self, handle: str) -> Section | None:
        return self._visible.get(handle.strip("/"))

    def entries(self) -> dict[str, dict[str, Any]]:
        """Page mapping of every visible entry, keyed by entry id."""
        return {page["id"]: page for section in self._visible.values() for page in section.pages}

    def find(self, path: str) -> dict[str, Any] | None:
        """Entry at ``path``, given as an id or relative to the content dir."""
        entries = self.entries()
        candidates = [path]
        if self.content_dir:
            candidates.append(f"{self.content_dir}/{path.lstrip('/')}")
        for candidate in candidates:
            if candidate in entries:
                return entries[candidate]
        return None
