"""Template layer for Sluggy.

Templates are compiled with Jinja2, but their sources never come from disk:
the loader hands Jinja the templates compiled during the current build cycle,
so ``{% extends %}`` and ``{% include %}`` see exactly the versions the cache
keys were computed over. Each template is analysed once for the partials it
pulls in, the ``data`` entries it reads and the sections it lists; those
become graph edges.

Key classes:
- TemplateAnalysis: Includes, extends, data and section bindings of a source.
- CompiledTemplate: Analysis plus the compiled jinja2.Template.
- CycleLoader: Loader serving the compiled templates of the running cycle.
- TemplateEngine: Environment, globals, compilation and rendering.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from jinja2 import (
    BaseLoader,
    Environment,
    Template,
    TemplateNotFound,
    TemplateRuntimeError,
    nodes,
    pass_context,
    select_autoescape,
)
from markupsafe import Markup

from .html_utils import join_root_url
from .renderers import Heading, pygments_css, render_toc
from .sections import Section, SectionLookup

logger = logging.getLogger(__name__)

# Binding recorded when a template uses ``data`` as a whole.
ALL_DATA = "*"

# Binding recorded when a template may list any section.
ALL_SECTIONS = "*"

SUFFIXLESS_CANDIDATES = (".html", ".jinja", ".html.jinja")


@dataclass(frozen=True)
class TemplateAnalysis:
    """References found in a template source, in source order.

    Attributes:
        includes: Names pulled in with include, import or from-import.
        extends: Names of parent templates.
        data_bindings: Top-level ``data`` keys read, or ALL_DATA.
        section_bindings: Section handles passed to ``sections()``, or
            ALL_SECTIONS.
    """

    includes: tuple[str, ...] = ()
    extends: tuple[str, ...] = ()
    data_bindings: tuple[str, ...] = ()
    section_bindings: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompiledTemplate:
    """A compiled template shared by every page that selects it.

    Attributes:
        id: Id of the source file.
        name: Name the template is loaded by, relative to the templates dir.
        includes: Names of included templates.
        extends: Names of parent templates.
        data_bindings: ``data`` keys the template reads.
        section_bindings: Sections the template lists.
        template: The compiled jinja2 Template.
    """

    id: str
    name: str
    includes: tuple[str, ...]
    extends: tuple[str, ...]
    data_bindings: tuple[str, ...]
    section_bindings: tuple[str, ...]
    template: Template = field(repr=False, compare=False)

    def render(self, context: dict[str, Any]) -> str:
        return self.template.render(**context)


def template_candidates(name: str, templates_dir: str) -> tuple[str, ...]:
    """Ids a template name may refer to, in order of preference.

    Examples:
        >>> template_candidates("post.html", "templates")
        ('templates/post.html',)

        >>> template_candidates("post", "templates")
        ('templates/post.html', 'templates/post.jinja', 'templates/post.html.jinja')
    """
    cleaned = name.strip().lstrip("/")
    base = f"{templates_dir}/{cleaned}" if templates_dir else cleaned
    if PurePosixPath(cleaned).suffix:
        return (base,)
    return tuple(f"{base}{suffix}" for suffix in SUFFIXLESS_CANDIDATES)


def analyze(ast: nodes.Template, filename: str | None = None, warn: bool = True) -> TemplateAnalysis:
    """Collect includes, extends, data and section bindings from a parsed template.

    Only constant template names can be tracked. A dynamic include such as
    ``{% include page.sidebar %}`` gets no graph edge, so edits to the
    template it loads do not rebuild the pages using it; it is logged as a
    warning unless ``warn`` is False.
    """
    includes: list[str] = []
    extends: list[str] = []
    for node in ast.find_all((nodes.Extends, nodes.Include, nodes.Import, nodes.FromImport)):
        names = _constant_names(node.template)
        if not names and warn:
            logger.warning(
                "%s line %s: dynamic template name is not tracked; pages using it "
                "are not rebuilt when the loaded template changes",
                filename or "<template>",
                node.lineno,
            )
        target = extends if isinstance(node, nodes.Extends) else includes
        for name in names:
            if name not in target:
                target.append(name)
    return TemplateAnalysis(
        includes=tuple(includes),
        extends=tuple(extends),
        data_bindings=_data_bindings(ast),
        section_bindings=_section_bindings(ast),
    )


def _constant_names(expr: nodes.Expr) -> list[str]:
    if isinstance(expr, nodes.Const) and isinstance(expr.value, str):
        return [expr.value]
    if isinstance(expr, (nodes.List, nodes.Tuple)):
        return [
            item.value
            for item in expr.items
            if isinstance(item, nodes.Const) and isinstance(item.value, str)
        ]
    return []


def _data_bindings(ast: nodes.Template) -> tuple[str, ...]:
    keys: list[str] = []
    bound = 0
    wildcard = False
    for node in ast.find_all((nodes.Getattr, nodes.Getitem)):
        inner = node.node
        if not (isinstance(inner, nodes.Name) and inner.name == "data"):
            continue
        bound += 1
        if isinstance(node, nodes.Getattr):
            key = node.attr
        elif isinstance(node.arg, nodes.Const) and isinstance(node.arg.value, str):
            key = node.arg.value
        else:
            wildcard = True
            continue
        if key not in keys:
            keys.append(key)
    total = sum(
        1 for name in ast.find_all(nodes.Name) if name.name == "data" and name.ctx == "load"
    )
    if wildcard or total > bound:
        return (ALL_DATA,)
    return tuple(keys)


def _section_bindings(ast: nodes.Template) -> tuple[str, ...]:
    handles: list[str] = []
    called = 0
    wildcard = False
    for call in ast.find_all(nodes.Call):
        if not (isinstance(call.node, nodes.Name) and call.node.name == "sections"):
            continue
        called += 1
        args = list(call.args) + [kw.value for kw in call.kwargs if kw.key == "handle"]
        if args and isinstance(args[0], nodes.Const) and isinstance(args[0].value, str):
            handle = args[0].value.strip("/")
            if handle not in handles:
                handles.append(handle)
        else:
            wildcard = True
    total = sum(
        1 for name in ast.find_all(nodes.Name) if name.name == "sections" and name.ctx == "load"
    )
    # The entry filter looks entries up across every section.
    if any(f.name == "entry" for f in ast.find_all(nodes.Filter)):
        wildcard = True
    if wildcard or total > called:
        return (ALL_SECTIONS,)
    return tuple(handles)


@pass_context
def entry_filter(context, value):
    """Map an entry path, or a list of them, to the entry's page mapping.

    Paths are entity ids (``content/posts/a.md``) or relative to the content
    directory (``posts/a.md``).
    """
    lookup = context.get("sections")
    if not isinstance(lookup, SectionLookup):
        raise TemplateRuntimeError("entry filter used outside a page render")
    if isinstance(value, (list, tuple)):
        return [entry_filter(context, item) for item in value]
    if not isinstance(value, str):
        raise TemplateRuntimeError(f"entry expects a path or a list of paths, got {value!r}")
    found = lookup.find(value)
    if found is None:
        raise TemplateRuntimeError(f"no section entry at {value!r}")
    return found


class CycleLoader(BaseLoader):
    """Serves templates compiled in the running build cycle.

    The lookup is swapped by the orchestrator at the start of each cycle.
    """

    def __init__(self, templates_dir: str):
        self.templates_dir = templates_dir
        self.lookup: Callable[[str], CompiledTemplate | None] = lambda _id: None

    def load(self, environment, name, globals=None):
        for candidate in template_candidates(name, self.templates_dir):
            compiled = self.lookup(candidate)
            if compiled is not None:
                return compiled.template
        raise TemplateNotFound(name)


class TemplateEngine:
    """Jinja2 environment for one build session.

    Attributes:
        base_url: Base URL used by url_for.
        env: Jinja2 environment; its own template cache is disabled.
        loader: The CycleLoader installed in ``env``.
    """

    def __init__(self, templates_dir: str, base_url: str = "/"):
        self.base_url = base_url
        self.loader = CycleLoader(templates_dir)
        self.env = Environment(
            loader=self.loader,
            autoescape=select_autoescape(["html", "htm", "xml", "jinja"], default_for_string=True),
            cache_size=0,
            auto_reload=False,
        )
        self._install_globals()

    def _install_globals(self) -> None:
        self.env.globals["base_url"] = self.base_url
        self.env.globals["url_for"] = self.url_for
        self.env.globals["pygments_css"] = pygments_css
        self.env.globals["render_toc"] = render_toc
        self.env.filters["entry"] = entry_filter

    def set_lookup(self, lookup: Callable[[str], CompiledTemplate | None]) -> None:
        """Point the loader at the compiled templates of a build cycle."""
        self.loader.lookup = lookup

    def url_for(self, path: str) -> str:
        """Generate a URL for a path, applying the base URL.

        Examples:
            >>> TemplateEngine("templates", "https://example.com/").url_for("about/")
            'https://example.com/about/'
        """
        if path.startswith(("http://", "https://", "//")):
            return path
        return join_root_url(self.base_url, path if path.startswith("/") else f"/{path}")

    def parse(self, source: str, name: str, filename: str | None = None) -> TemplateAnalysis:
        """Parse a template source and analyse its references.

        Raises:
            jinja2.TemplateSyntaxError: If the source does not parse.
        """
        ast = self.env.parse(source, name=name, filename=filename)
        return analyze(ast, filename)

    def compile(self, source: str, name: str, entity_id: str) -> CompiledTemplate:
        """Compile a template source.

        Args:
            source: Template text.
            name: Name the template is loaded by.
            entity_id: Id of the source file, used in error messages.

        Returns:
            CompiledTemplate bound to this engine's environment.

        Raises:
            jinja2.TemplateSyntaxError: If the source does not parse.
        """
        analysis = analyze(self.env.parse(source, name=name, filename=entity_id), entity_id, warn=False)
        code = self.env.compile(source, name=name, filename=entity_id)
        template = self.env.template_class.from_code(
            self.env, code, self.env.make_globals(None), None
        )
        return CompiledTemplate(
            id=entity_id,
            name=name,
            includes=analysis.includes,
            extends=analysis.extends,
            data_bindings=analysis.data_bindings,
            section_bindings=analysis.section_bindings,
            template=template,
        )

    def page_context(
        self,
        page: dict[str, Any],
        data: dict[str, Any],
        frontmatter: dict[str, Any] | None = None,
        page_content: str = "",
        headings: list[Heading] | None = None,
        sections: SectionLookup | None = None,
        section: Section | None = None,
    ) -> dict[str, Any]:
        """Build the render context for a page.

        Args:
            page: The page mapping (see ContentNode.as_context).
            data: Data files visible to the page.
            frontmatter: The page's raw front matter.
            page_content: Rendered body HTML.
            headings: Headings collected from a Markdown body.
            sections: Sections visible to the page, exposed as ``sections()``.
            section: The section an index page lists.

        Returns:
            Context mapping passed to the template.
        """
        headings = headings or []
        return {
            "data": data,
            "page": page,
            "current_page": page,
            "frontmatter": frontmatter or {},
            "page_content": Markup(page_content),
            "headings": headings,
            "toc": render_toc(headings),
            "sections": sections if sections is not None else SectionLookup({}),
            "section": section,
        }
