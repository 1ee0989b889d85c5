"""Per-kind transforms for Sluggy.

Every SourceKind maps to exactly one Adapter: a parse function that reads the
entity's bytes and declares what it references, and a render function that
turns the parsed entity plus its already-rendered dependencies into a value.
The mapping is closed; adding a kind means adding a row here.

Parse output only names references (candidate ids). Which candidate an edge
points at is decided against the current graph, so the result of a parse can
be cached on the entity's own bytes alone.

Key classes:
- Reference: A dependency declared by a parsed entity.
- ParsedEntity: Output of the parse stage.
- RenderedOutput: Routable output of the render stage.
- RenderContext: What a render may look at.
- Adapter: Parse and render functions of one kind.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any

import yaml
from jinja2 import TemplateError

from .config import BuildConfig
from .content import ContentNode, ContentParser
from .errors import SluggyError, SourceError, TransformError, format_error_message
from .graph import DependencyEdge, DependencyGraph, EdgeKind
from .html_utils import rewrite_css_urls, rewrite_site_urls
from .renderers import BODY_RENDERERS
from .scanner import SourceFile, SourceKind
from .sections import (
    Section,
    SectionLookup,
    SectionManifest,
    build_section,
    is_index,
    load_manifest,
    manifest_candidates,
    manifest_for,
    same_directory,
)
from .styles import bundle, find_imports
from .templates import (
    ALL_DATA,
    ALL_SECTIONS,
    CompiledTemplate,
    TemplateAnalysis,
    TemplateEngine,
    template_candidates,
)
from .utils import guess_content_type

logger = logging.getLogger(__name__)

DATA_SUFFIXES = (".yaml", ".yml", ".json")
SITE_DATA = "site"


@dataclass(frozen=True)
class Reference:
    """A dependency declared while parsing.

    Attributes:
        kind: Edge kind.
        candidates: Ids the reference may resolve to, in order of preference.
            The first one present in the graph wins; if none is present the
            edge points at the first one and is dangling.
        optional: Whether a missing target is acceptable.
    """

    kind: EdgeKind
    candidates: tuple[str, ...]
    optional: bool = False


@dataclass(frozen=True)
class ParsedEntity:
    """Result of the parse stage of one entity.

    Attributes:
        id: Entity id.
        kind: Entity kind.
        value: Kind-specific parse result (ContentNode, TemplateAnalysis,
            loaded data, ...).
        references: Declared dependencies.
        analysis: Template analysis of a Jinja content body.
    """

    id: str
    kind: SourceKind
    value: Any
    references: tuple[Reference, ...] = ()
    analysis: TemplateAnalysis | None = None


@dataclass(frozen=True)
class RenderedOutput:
    """Rendered bytes of an entity, before finishing.

    Attributes:
        entity_id: Id of the entity that produced the output.
        route: Output route, or None when the entity publishes nothing.
        content_type: Content type of ``body``.
        body: Rendered bytes.
    """

    entity_id: str
    route: str | None
    content_type: str
    body: bytes


@dataclass(frozen=True)
class ParseContext:
    """What a parse may look at.

    Attributes:
        config: Build configuration.
        engine: Session template engine.
        content_parser: Parser for content files.
        sources: Looks up other entities of the graph by id; content files
            read their section manifest through it.
    """

    config: BuildConfig
    engine: TemplateEngine
    content_parser: ContentParser
    sources: Callable[[str], SourceFile | None] = field(default=lambda _id: None, compare=False)


class RenderContext:
    """Read-only view a render function works against.

    Attributes:
        config: Build configuration.
        engine: Session template engine.
        graph: Dependency graph; not mutated while renders run.
        results: Render results of the current cycle, keyed by id.
        parsed: Parse results of every entity in the graph.
    """

    def __init__(
        self,
        config: BuildConfig,
        engine: TemplateEngine,
        graph: DependencyGraph,
        results: Mapping[str, Any],
        parsed: Mapping[str, ParsedEntity] | None = None,
    ):
        self.config = config
        self.engine = engine
        self.graph = graph
        self.results = results
        self.parsed = parsed if parsed is not None else {}

    def source(self, entity_id: str) -> SourceFile | None:
        return self.graph.get(entity_id)

    def resolve(self, candidates: tuple[str, ...]) -> str | None:
        """First candidate present in the graph."""
        for candidate in candidates:
            if candidate in self.graph:
                return candidate
        return None

    def compiled(self, entity_id: str) -> CompiledTemplate | None:
        value = self.results.get(entity_id)
        return value if isinstance(value, CompiledTemplate) else None

    def data_for(self, entity_id: str) -> dict[str, Any]:
        """Data files ``entity_id`` depends on, keyed by name.

        The site data file is merged in at the root; every other file sits
        under its path relative to the data directory, without suffix.
        """
        data: dict[str, Any] = {}
        named: list[tuple[str, Any]] = []
        for dep_id in sorted(self.graph.dependencies_of(entity_id)):
            node = self.graph.get(dep_id)
            if node is None or node.kind is not SourceKind.DATA or dep_id not in self.results:
                continue
            key = data_key(dep_id, self.config.data_dir)
            value = self.results[dep_id]
            if key == SITE_DATA and isinstance(value, dict):
                data.update(value)
            else:
                named.append((key, value))
        for key, value in named:
            data[key] = value
        return data

    def sections_for(self, entity_id: str) -> dict[str, Section]:
        """Sections ``entity_id`` depends on, keyed by handle."""
        visible: dict[str, Section] = {}
        for dep_id in sorted(self.graph.dependencies_of(entity_id)):
            value = self.results.get(dep_id)
            if isinstance(value, Section):
                visible[value.handle] = value
        return visible


@dataclass(frozen=True)
class Adapter:
    """Transforms of one SourceKind."""

    parse: Callable[[SourceFile, ParseContext], ParsedEntity]
    render: Callable[[ParsedEntity, RenderContext], Any]


def data_key(entity_id: str, data_dir: str) -> str:
    """Name a data file is exposed under.

    Examples:
        >>> data_key("data/nav.yaml", "data")
        'nav'

        >>> data_key("data/authors/jane.json", "data")
        'authors/jane'
    """
    rel = PurePosixPath(entity_id).relative_to(data_dir)
    return rel.with_suffix("").as_posix()


def data_candidates(key: str, data_dir: str) -> tuple[str, ...]:
    """Ids that can provide ``data.<key>``: the named file, then site data."""
    named = tuple(f"{data_dir}/{key}{suffix}" for suffix in DATA_SUFFIXES)
    site = tuple(f"{data_dir}/{SITE_DATA}{suffix}" for suffix in DATA_SUFFIXES)
    return named + site


def _analysis_references(analysis: TemplateAnalysis, config: BuildConfig) -> list[Reference]:
    refs = [
        Reference(EdgeKind.EXTENDS, template_candidates(name, config.templates_dir))
        for name in analysis.extends
    ]
    refs.extend(
        Reference(EdgeKind.INCLUDES, template_candidates(name, config.templates_dir))
        for name in analysis.includes
    )
    for key in analysis.data_bindings:
        if key == ALL_DATA:
            refs.append(Reference(EdgeKind.USES_DATA, (ALL_DATA,), optional=True))
        else:
            refs.append(
                Reference(EdgeKind.USES_DATA, data_candidates(key, config.data_dir), optional=True)
            )
    for handle in analysis.section_bindings:
        if handle == ALL_SECTIONS:
            refs.append(Reference(EdgeKind.USES_SECTION, (ALL_SECTIONS,), optional=True))
        else:
            refs.append(
                Reference(
                    EdgeKind.USES_SECTION,
                    manifest_candidates(handle, config.content_dir),
                    optional=True,
                )
            )
    return refs


def resolve_edges(
    parsed: ParsedEntity,
    graph: DependencyGraph,
    data_ids: list[str],
    section_ids: list[str] | tuple[str, ...] = (),
) -> list[DependencyEdge]:
    """Turn the references of a parsed entity into graph edges.

    A section manifest also gets a LISTS edge to every content file beside
    it except the index page.

    Args:
        parsed: Parse result.
        graph: Graph the references are resolved against.
        data_ids: Ids of every data entity, for whole-``data`` bindings.
        section_ids: Ids of every section manifest, for ``sections()``.

    Returns:
        Deduplicated, sorted edges.
    """
    edges: set[DependencyEdge] = set()
    for ref in parsed.references:
        if ref.kind is EdgeKind.USES_DATA and ref.candidates == (ALL_DATA,):
            edges.update(
                DependencyEdge(parsed.id, data_id, EdgeKind.USES_DATA, True) for data_id in data_ids
            )
            continue
        if ref.kind is EdgeKind.USES_SECTION and ref.candidates == (ALL_SECTIONS,):
            edges.update(
                DependencyEdge(parsed.id, section_id, EdgeKind.USES_SECTION, True)
                for section_id in section_ids
            )
            continue
        target = next((c for c in ref.candidates if c in graph), ref.candidates[0])
        edges.add(DependencyEdge(parsed.id, target, ref.kind, ref.optional))
    if parsed.kind is SourceKind.SECTION:
        edges.update(
            DependencyEdge(parsed.id, node.id, EdgeKind.LISTS)
            for node in graph.nodes()
            if node.kind is SourceKind.CONTENT
            and same_directory(node.id, parsed.id)
            and not is_index(node.id)
        )
    return sorted(edges)


def _decode(source: SourceFile) -> str:
    try:
        return source.text
    except UnicodeDecodeError as exc:
        raise SourceError(source.id, f"not valid UTF-8: {exc}") from exc


# Content


def _section_of(source: SourceFile, ctx: ParseContext) -> SectionManifest | None:
    def is_section(entity_id: str) -> bool:
        node = ctx.sources(entity_id)
        return node is not None and node.kind is SourceKind.SECTION

    manifest_id = manifest_for(source.id, is_section)
    if manifest_id is None:
        return None
    try:
        return load_manifest(ctx.sources(manifest_id), ctx.config.content_dir)
    except SourceError as exc:
        raise SourceError(source.id, f"section manifest {manifest_id}: {exc.message}") from exc


def parse_content(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    section = _section_of(source, ctx)
    node = ctx.content_parser.parse(source, section)
    refs: list[Reference] = []
    analysis = None
    if section is not None and is_index(source.id):
        refs.append(Reference(EdgeKind.USES_SECTION, (section.id,), optional=True))
    if node.source_type == "jinja":
        analysis = ctx.engine.parse(node.body, name=source.id, filename=source.id)
        refs.extend(_analysis_references(analysis, ctx.config))
        if analysis.extends and not node.template_explicit:
            node = replace(node, template=None)
    if node.template is not None:
        refs.append(
            Reference(
                EdgeKind.EXTENDS,
                template_candidates(node.template, ctx.config.templates_dir),
                optional=not node.template_explicit,
            )
        )
    return ParsedEntity(source.id, source.kind, node, tuple(refs), analysis)


def render_content(parsed: ParsedEntity, ctx: RenderContext) -> RenderedOutput:
    node: ContentNode = parsed.value
    if not node.is_published(ctx.config.include_drafts):
        return RenderedOutput(parsed.id, None, "", b"")

    engine = ctx.engine
    data = ctx.data_for(parsed.id)
    sections = SectionLookup(ctx.sections_for(parsed.id), ctx.config.content_dir)
    section = sections.get(node.section) if node.section is not None and is_index(parsed.id) else None
    page = node.as_context()
    context = engine.page_context(page, data, node.frontmatter, sections=sections, section=section)

    headings = []
    if node.source_type == "jinja":
        body_template = engine.compile(node.body, name=parsed.id, entity_id=parsed.id)
        body_html = body_template.render(context)
    else:
        body_html, headings = BODY_RENDERERS[node.source_type].render(node.body)

    layout = None
    if node.template is not None:
        layout_id = ctx.resolve(template_candidates(node.template, ctx.config.templates_dir))
        layout = ctx.compiled(layout_id) if layout_id else None

    if layout is not None:
        html = layout.render(
            engine.page_context(
                page, data, node.frontmatter, body_html, headings, sections=sections, section=section
            )
        )
    else:
        html = body_html

    html = rewrite_site_urls(html, ctx.config.base_url)
    return RenderedOutput(parsed.id, node.route, guess_content_type(node.route), html.encode("utf-8"))


# Templates and partials


def template_name(entity_id: str, templates_dir: str) -> str:
    return PurePosixPath(entity_id).relative_to(templates_dir).as_posix()


def parse_template(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    name = template_name(source.id, ctx.config.templates_dir)
    analysis = ctx.engine.parse(_decode(source), name=name, filename=source.id)
    refs = _analysis_references(analysis, ctx.config)
    return ParsedEntity(source.id, source.kind, analysis, tuple(refs), analysis)


def render_template(parsed: ParsedEntity, ctx: RenderContext) -> CompiledTemplate:
    source = ctx.source(parsed.id)
    name = template_name(parsed.id, ctx.config.templates_dir)
    return ctx.engine.compile(_decode(source), name=name, entity_id=parsed.id)


# Styles


def style_route(entity_id: str) -> str | None:
    """Route of a stylesheet; style partials (``_name.css``) publish nothing."""
    if PurePosixPath(entity_id).name.startswith("_"):
        return None
    return f"/{entity_id}"


def parse_style(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    imports = find_imports(source.id, _decode(source))
    refs = tuple(Reference(EdgeKind.BUNDLED_IN, (dep_id,)) for dep_id in imports)
    return ParsedEntity(source.id, source.kind, tuple(imports), refs)


def render_style(parsed: ParsedEntity, ctx: RenderContext) -> RenderedOutput:
    def read(entity_id: str) -> str | None:
        node = ctx.source(entity_id)
        return _decode(node) if node is not None else None

    css = rewrite_css_urls(bundle(parsed.id, read), ctx.config.base_url)
    return RenderedOutput(
        parsed.id, style_route(parsed.id), "text/css; charset=utf-8", css.encode("utf-8")
    )


# Data


def parse_data(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    text = _decode(source)
    try:
        if source.id.endswith(".json"):
            value = json.loads(text) if text.strip() else {}
        else:
            value = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise SourceError(source.id, f"invalid data file: {exc}") from exc
    return ParsedEntity(source.id, source.kind, {} if value is None else value)


def render_data(parsed: ParsedEntity, ctx: RenderContext) -> Any:
    return parsed.value


# Sections


def parse_section(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    return ParsedEntity(source.id, source.kind, load_manifest(source, ctx.config.content_dir))


def render_section(parsed: ParsedEntity, ctx: RenderContext) -> Section:
    """Collect the published entries a manifest lists.

    Entries are read from their parse results, so a section never waits for
    its entries to render. Entries that failed to parse are left out.
    """
    manifest: SectionManifest = parsed.value
    pages = []
    for edge in ctx.graph.edges_from(parsed.id):
        if edge.kind is not EdgeKind.LISTS:
            continue
        entry = ctx.parsed.get(edge.target)
        if entry is None or not isinstance(entry.value, ContentNode):
            continue
        if entry.value.is_published(ctx.config.include_drafts):
            pages.append(entry.value.as_context())
    return build_section(manifest, pages)


# Assets


def asset_route(entity_id: str, config: BuildConfig) -> str:
    """Route of an asset; files inside the content dir drop that prefix.

    Examples:
        >>> from pathlib import Path
        >>> cfg = BuildConfig(source_root=Path("/s"), output_root=Path("/s/out"))
        >>> asset_route("content/posts/diagram.png", cfg)
        '/posts/diagram.png'

        >>> asset_route("assets/js/app.js", cfg)
        '/assets/js/app.js'
    """
    path = PurePosixPath(entity_id)
    try:
        return "/" + path.relative_to(config.content_dir).as_posix()
    except ValueError:
        return f"/{entity_id}"


def parse_asset(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    return ParsedEntity(source.id, source.kind, None)


def render_asset(parsed: ParsedEntity, ctx: RenderContext) -> RenderedOutput:
    source = ctx.source(parsed.id)
    route = asset_route(parsed.id, ctx.config)
    return RenderedOutput(parsed.id, route, guess_content_type(route), source.data)


ADAPTERS: dict[SourceKind, Adapter] = {
    SourceKind.CONTENT: Adapter(parse_content, render_content),
    SourceKind.TEMPLATE: Adapter(parse_template, render_template),
    SourceKind.PARTIAL: Adapter(parse_template, render_template),
    SourceKind.STYLE: Adapter(parse_style, render_style),
    SourceKind.DATA: Adapter(parse_data, render_data),
    SourceKind.ASSET: Adapter(parse_asset, render_asset),
    SourceKind.SECTION: Adapter(parse_section, render_section),
}


def run_parse(source: SourceFile, ctx: ParseContext) -> ParsedEntity:
    """Parse ``source`` with its kind's adapter.

    Raises:
        SourceError: If the entity's input is malformed.
    """
    try:
        return ADAPTERS[source.kind].parse(source, ctx)
    except SluggyError:
        raise
    except TemplateError as exc:
        raise SourceError(source.id, format_error_message(exc)) from exc


def run_render(parsed: ParsedEntity, ctx: RenderContext) -> Any:
    """Render ``parsed`` with its kind's adapter.

    Jinja errors are attributed to the entity as SourceErrors; anything else
    a third-party transform raises becomes a TransformError.
    """
    try:
        return ADAPTERS[parsed.kind].render(parsed, ctx)
    except SluggyError:
        raise
    except TemplateError as exc:
        raise SourceError(parsed.id, format_error_message(exc)) from exc
    except Exception as exc:
        raise TransformError(parsed.id, format_error_message(exc), exc) from exc
