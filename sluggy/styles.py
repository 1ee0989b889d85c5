"""Stylesheet resolution for Sluggy.

Local ``@import`` rules are bundled into the importing stylesheet so every
emitted stylesheet is a single file; each imported file becomes a BundledIn
dependency of the importer. Stylesheets are tokenised with tinycss2, so
imports inside comments or strings are never mistaken for rules.

Key functions:
- find_imports: Local files imported by a stylesheet.
- bundle: Inline local imports recursively.
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable
from dataclasses import dataclass

import tinycss2

from .errors import CycleError, SourceError

REMOTE_PREFIXES = ("http://", "https://", "//", "data:")


@dataclass(frozen=True)
class ImportRule:
    """One ``@import`` rule.

    Attributes:
        target: URL as written in the stylesheet.
        media: Trailing media query, if any.
    """

    target: str
    media: str = ""

    @property
    def is_local(self) -> bool:
        return not self.target.startswith(REMOTE_PREFIXES)


def _parse_import(rule) -> ImportRule | None:
    target = None
    rest = []
    for token in rule.prelude:
        if target is None:
            if token.type in ("whitespace", "comment"):
                continue
            if token.type in ("string", "url"):
                target = token.value
                continue
            if token.type == "function" and token.lower_name == "url":
                args = [a for a in token.arguments if a.type == "string"]
                if args:
                    target = args[0].value
                    continue
            return None
        rest.append(token)
    if target is None:
        return None
    media = tinycss2.serialize(rest).strip()
    return ImportRule(target=target, media=media)


def resolve_import(importer_id: str, target: str) -> str:
    """Resolve an import target to a source id.

    ``@/`` targets are relative to the source root; anything else is relative
    to the importing file.

    Raises:
        SourceError: If the target escapes the source root.

    Examples:
        >>> resolve_import("css/main.css", "_vars.css")
        'css/_vars.css'

        >>> resolve_import("css/pages/home.css", "../base/_reset.css")
        'css/base/_reset.css'
    """
    path = target.split("?", 1)[0].split("#", 1)[0]
    if path.startswith("@/"):
        resolved = posixpath.normpath(path[2:])
    else:
        resolved = posixpath.normpath(posixpath.join(posixpath.dirname(importer_id), path))
    if resolved.startswith("../") or resolved == ".." or resolved.startswith("/"):
        raise SourceError(importer_id, f"import {target!r} points outside the source tree")
    return resolved


def find_imports(entity_id: str, css: str) -> list[str]:
    """Ids of local stylesheets imported by ``css``, in source order."""
    found: list[str] = []
    for rule in tinycss2.parse_stylesheet(css, skip_comments=True, skip_whitespace=True):
        if rule.type != "at-rule" or rule.lower_at_keyword != "import":
            continue
        parsed = _parse_import(rule)
        if parsed is None or not parsed.is_local:
            continue
        dep_id = resolve_import(entity_id, parsed.target)
        if dep_id not in found:
            found.append(dep_id)
    return found


def bundle(entity_id: str, read: Callable[[str], str | None]) -> str:
    """Inline every local ``@import`` of a stylesheet.

    Remote imports are hoisted to the top so the bundle stays valid CSS.

    Args:
        entity_id: Id of the stylesheet to bundle.
        read: Returns the text of a stylesheet id, or None when it is missing.

    Returns:
        The bundled stylesheet text.

    Raises:
        SourceError: If an imported file is missing.
        CycleError: If stylesheets import each other in a loop.
    """
    remote: list[str] = []
    body = _bundle(entity_id, read, [entity_id], remote)
    if remote:
        return "\n".join(remote) + "\n" + body
    return body


def _bundle(entity_id: str, read: Callable[[str], str | None], stack: list[str], remote: list[str]) -> str:
    text = read(entity_id)
    if text is None:
        raise SourceError(stack[0], f"imported stylesheet {entity_id} does not exist")
    parts: list[str] = []
    for rule in tinycss2.parse_stylesheet(text, skip_comments=False, skip_whitespace=False):
        if rule.type == "at-rule" and rule.lower_at_keyword == "import":
            parsed = _parse_import(rule)
            if parsed is not None and parsed.is_local:
                dep_id = resolve_import(entity_id, parsed.target)
                if dep_id in stack:
                    cycle = stack[stack.index(dep_id) :] + [dep_id]
                    raise CycleError(stack[0], cycle)
                inner = _bundle(dep_id, read, stack + [dep_id], remote).strip()
                if parsed.media:
                    parts.append(f"@media {parsed.media} {{\n{inner}\n}}")
                else:
                    parts.append(inner)
                continue
            serialized = rule.serialize()
            if serialized not in remote:
                remote.append(serialized)
            continue
        parts.append(rule.serialize())
    return "".join(parts)
