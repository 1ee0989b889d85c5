"""Content model for Sluggy.

Turns a content SourceFile into a ContentNode: front matter and metadata are
extracted, the output route is derived and the layout template is selected.
Nothing here renders; rendering happens once the node's dependencies are known.

Key classes:
- ContentNode: Parsed, immutable view of one content file.
- UrlDeriver: Derives output routes from paths relative to the content dir.
- ContentParser: Builds ContentNode instances from SourceFiles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any

from .config import BuildConfig
from .errors import FrontMatterError
from .extractors import CompositeMetadataExtractor, default_metadata_extractor
from .scanner import SourceFile
from .sections import SectionManifest, is_index, slug_route_segments
from .utils import slugify

# Template names that switch the layout off entirely.
NO_LAYOUT = ("none", "")

PAGE_SUFFIXES = ("", ".html", ".htm")


@dataclass(frozen=True)
class ContentNode:
    """A parsed content file.

    Attributes:
        id: Id of the source file.
        route: Output route; pages end with '/'.
        title: Human-readable title.
        template: Name of the layout template, or None to render standalone.
        template_explicit: Whether the front matter chose the template.
        draft: Whether the page is a draft.
        publish: False when front matter sets ``publish: false``.
        date: Publication date, if any.
        description: Short description, often from the first paragraph.
        frontmatter: The full front matter mapping.
        body: Raw body text with front matter removed.
        source_type: "markdown", "html" or "jinja".
        section: Handle of the section the file belongs to, if any.
    """

    id: str
    route: str
    title: str
    template: str | None
    template_explicit: bool
    draft: bool
    publish: bool
    date: datetime | None
    description: str
    body: str
    source_type: str
    frontmatter: dict[str, Any] = field(default_factory=dict, compare=False)
    section: str | None = None

    @property
    def is_page(self) -> bool:
        """Whether the node renders to ``<route>/index.html``."""
        return self.route.endswith("/")

    def is_published(self, include_drafts: bool = False) -> bool:
        """Whether the node produces an artifact under the given settings."""
        return self.publish and (include_drafts or not self.draft)

    def as_context(self) -> dict[str, Any]:
        """Mapping exposed to templates as ``page``."""
        context = dict(self.frontmatter)
        context.update(
            {
                "id": self.id,
                "url": self.route,
                "route": self.route,
                "title": self.title,
                "date": self.date,
                "description": self.description,
                "draft": self.draft,
                "source_type": self.source_type,
                "section": self.section,
            }
        )
        return context


class UrlDeriver:
    """Derives routes for content files."""

    def derive(self, rel: PurePosixPath) -> str:
        """Derive the route of a content file.

        Args:
            rel: Path relative to the content directory.

        Returns:
            Route for the file. Pages end with '/'; Jinja files whose inner
            suffix is not HTML (``feed.xml.jinja``) keep that file name.

        Examples:
            >>> UrlDeriver().derive(PurePosixPath("posts/2024-01-15-hello.md"))
            '/posts/hello/'

            >>> UrlDeriver().derive(PurePosixPath("index.md"))
            '/'

            >>> UrlDeriver().derive(PurePosixPath("feed.xml.jinja"))
            '/feed.xml'
        """
        segments = [p for p in rel.parent.parts if p not in ("", ".")]
        inner = _inner_name(rel)
        inner_suffix = PurePosixPath(inner).suffix.lower()
        if inner_suffix not in PAGE_SUFFIXES:
            return "/" + "/".join(segments + [inner])

        slug = slugify(inner.split(".")[0])
        url_parts = segments if slug == "index" else segments + [slug]
        path = "/".join(url_parts)
        return f"/{path}/" if path else "/"


def normalize_route(route: str) -> str:
    """Normalise a route given in front matter.

    Examples:
        >>> normalize_route("about")
        '/about/'

        >>> normalize_route("/feeds/atom.xml")
        '/feeds/atom.xml'
    """
    cleaned = "/" + route.strip().strip("/")
    if cleaned == "/":
        return "/"
    last = cleaned.rsplit("/", 1)[-1]
    if "." in last:
        return cleaned
    return f"{cleaned}/"


def source_type_for(rel: PurePosixPath) -> str:
    """Return the source type for a content file name."""
    suffix = rel.suffix.lower()
    if suffix in (".md", ".markdown"):
        return "markdown"
    if suffix == ".jinja":
        return "jinja"
    return "html"


def _inner_name(rel: PurePosixPath) -> str:
    name = rel.name
    if name.lower().endswith(".jinja"):
        return name[: -len(".jinja")]
    if rel.suffix.lower() in (".md", ".markdown"):
        return rel.stem
    return name


class ContentParser:
    """Builds ContentNode objects from content SourceFiles.

    Attributes:
        config: Build configuration.
        metadata_extractor: Composite metadata extractor.
        url_deriver: URL deriver instance.
    """

    def __init__(
        self,
        config: BuildConfig,
        metadata_extractor: CompositeMetadataExtractor | None = None,
    ):
        self.config = config
        self.metadata_extractor = metadata_extractor or default_metadata_extractor
        self.url_deriver = UrlDeriver()

    def parse(self, source: SourceFile, section: SectionManifest | None = None) -> ContentNode:
        """Parse a content file.

        Args:
            source: The content SourceFile.
            section: Manifest of the section the file sits in. Its slug
                pattern shapes entry routes and its index template is the
                index page's default layout.

        Returns:
            ContentNode for the file.

        Raises:
            FrontMatterError: If the front matter is malformed or has values
                of the wrong type.
        """
        try:
            text = source.text
        except UnicodeDecodeError as exc:
            raise FrontMatterError(source.id, f"content is not valid UTF-8: {exc}") from exc
        metadata = self.metadata_extractor.extract(text, source.id)
        frontmatter: dict[str, Any] = metadata["frontmatter"]

        rel = PurePosixPath(source.id).relative_to(self.config.content_dir)
        explicit_route = frontmatter.get("route") or frontmatter.get("url")
        if explicit_route is not None and not isinstance(explicit_route, str):
            raise FrontMatterError(source.id, "'route' must be a string")
        if explicit_route:
            route = normalize_route(explicit_route)
        else:
            route = self._section_route(source.id, rel, section) or self.url_deriver.derive(rel)
        if any(part in (".", "..") for part in route.split("/")):
            raise FrontMatterError(source.id, f"route {route!r} may not contain . or .. segments")

        template, explicit = self._select_template(source.id, frontmatter, route)
        if (
            section is not None
            and section.index_template
            and not explicit
            and route.endswith("/")
            and is_index(source.id)
        ):
            template = section.index_template
        draft = bool(frontmatter.get("draft", False)) or rel.name.startswith("_")
        publish = frontmatter.get("publish", True)
        if not isinstance(publish, bool):
            raise FrontMatterError(source.id, "'publish' must be true or false")

        return ContentNode(
            id=source.id,
            route=route,
            title=metadata.get("title", ""),
            template=template,
            template_explicit=explicit,
            draft=draft,
            publish=publish,
            date=metadata.get("date"),
            description=metadata.get("description", ""),
            body=metadata["body"],
            source_type=source_type_for(rel),
            frontmatter=frontmatter,
            section=section.handle if section is not None else None,
        )

    def _select_template(
        self, file_id: str, frontmatter: dict[str, Any], route: str
    ) -> tuple[str | None, bool]:
        chosen = frontmatter.get("template", frontmatter.get("layout"))
        if chosen is False or (isinstance(chosen, str) and chosen.strip().lower() in NO_LAYOUT):
            return None, True
        if chosen is not None:
            if not isinstance(chosen, str):
                raise FrontMatterError(file_id, "'template' must be a string")
            return chosen.strip(), True
        if not route.endswith("/"):
            # Non-HTML outputs such as feeds render standalone.
            return None, False
        return self.config.default_template, False

    def _section_route(
        self, file_id: str, rel: PurePosixPath, section: SectionManifest | None
    ) -> str | None:
        if section is None or not section.slug_pattern or is_index(file_id):
            return None
        inner = _inner_name(rel)
        if PurePosixPath(inner).suffix.lower() not in PAGE_SUFFIXES:
            return None
        try:
            segments = slug_route_segments(section.slug_pattern, inner.split(".")[0])
        except ValueError as exc:
            raise FrontMatterError(file_id, str(exc)) from exc
        if segments is None:
            return None
        parents = [p for p in rel.parent.parts if p not in ("", ".")]
        return "/" + "/".join(parents + segments) + "/"
