"""Error taxonomy for Sluggy.

Per-entity errors (SourceError, TransformError) are collected into the
BuildReport and never abort a build cycle. CacheConsistencyError and BuildError
are fatal: they abort the cycle because they signal a bug or an I/O failure at
the store boundary rather than bad input.

Key classes:
- SourceError: Bad input attributed to one entity (front matter, syntax, cycles).
- TransformError: A renderer, minifier or compressor rejected well-formed input.
- CacheConsistencyError: A cache key collided with a differently shaped entry.
- BuildError: Fatal failure of a build cycle.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import BuildReport


class SluggyError(Exception):
    """Base class for all Sluggy errors."""


class SourceError(SluggyError):
    """Error in a source entity that isolates the fault to that entity.

    Attributes:
        entity_id: Id of the entity the error is attributed to.
        message: Human-readable error message.
    """

    kind = "SourceError"

    def __init__(self, entity_id: str, message: str):
        self.entity_id = entity_id
        self.message = message
        super().__init__(f"{entity_id}: {message}")


class FrontMatterError(SourceError):
    """Malformed front matter block at the head of a content file."""

    kind = "FrontMatterError"


class AmbiguousKindError(SourceError):
    """A file inside a source directory could not be classified."""

    kind = "AmbiguousKindError"


class DanglingReferenceError(SourceError):
    """An entity depends on one or more entities that do not exist.

    Attributes:
        missing: Ids of the referenced entities that are absent.
    """

    kind = "DanglingReferenceError"

    def __init__(self, entity_id: str, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__(
            entity_id, f"unresolved reference to {', '.join(self.missing)}"
        )


class CycleError(SourceError):
    """Includes/Extends edges form a loop.

    Attributes:
        cycle: Entity ids along the cycle; the first id is repeated at the end.
    """

    kind = "CycleError"

    def __init__(self, entity_id: str, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(entity_id, f"dependency cycle: {' -> '.join(self.cycle)}")


class TransformError(SluggyError):
    """A transform rejected otherwise well-formed input.

    Attributes:
        entity_id: Id of the entity being transformed.
        message: Human-readable error message.
        original_error: The exception raised by the transform, if any.
    """

    kind = "TransformError"

    def __init__(
        self,
        entity_id: str,
        message: str,
        original_error: Exception | None = None,
    ):
        self.entity_id = entity_id
        self.message = message
        self.original_error = original_error
        super().__init__(f"{entity_id}: {message}")


class CacheConsistencyError(SluggyError):
    """A computed cache key matched a stored entry of a different shape."""

    kind = "CacheConsistencyError"


class BuildError(SluggyError):
    """Fatal error that aborted a build cycle.

    Attributes:
        message: Human-readable error message.
        original_error: The exception that caused the abort.
        report: Report of the aborted cycle, when one was produced.
    """

    kind = "BuildError"

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        report: BuildReport | None = None,
    ):
        self.message = message
        self.original_error = original_error
        self.report = report
        super().__init__(message)


def format_error_message(exc: Exception) -> str:
    """Format an exception raised by a third-party transform.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    # Jinja2 errors carry a line number worth surfacing
    lineno = getattr(exc, "lineno", None)
    if error_type == "TemplateSyntaxError" and lineno:
        return f"Template syntax error on line {lineno}: {getattr(exc, 'message', error_msg)}"
    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TemplateNotFound":
        return f"Template not found: {error_msg}"

    return f"{error_type}: {error_msg}"
