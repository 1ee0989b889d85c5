"""Source scanning for Sluggy.

Walks the configured source directories, classifies every file into one of a
closed set of kinds and records a content hash for it. A scanner remembers
what it saw last, so targeted re-scans report only what actually changed.

Key classes:
- SourceKind: Closed set of file kinds.
- SourceFile: Immutable record of one classified file.
- ScanResult: Added, modified and removed ids plus per-file errors.
- Scanner: Full and targeted scans against a BuildConfig.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import BuildConfig
from .errors import AmbiguousKindError, SourceError
from .utils import hash_bytes, is_hidden_or_temp, is_html, is_markdown, is_template

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".html", ".htm", ".jinja", ".j2", ".xml", ".txt")
DATA_SUFFIXES = (".yaml", ".yml", ".json")
PARTIAL_DIRS = ("partials", "_partials")
SECTION_MANIFESTS = ("section.yaml", "section.yml")


class SourceKind(str, Enum):
    """Kind of a source file; each kind maps to exactly one transform."""

    CONTENT = "content"
    TEMPLATE = "template"
    PARTIAL = "partial"
    STYLE = "style"
    ASSET = "asset"
    DATA = "data"
    SECTION = "section"


@dataclass(frozen=True)
class SourceFile:
    """A classified source file.

    Instances are never mutated; a changed file produces a new record.

    Attributes:
        id: Stable id, the POSIX path relative to the source root.
        kind: Classified kind.
        path: Absolute path on disk.
        content_hash: sha256 of ``data``.
        mtime_ns: Modification stamp observed when the file was read.
        data: The exact bytes that were hashed.
    """

    id: str
    kind: SourceKind
    path: Path
    content_hash: str
    mtime_ns: int
    data: bytes = field(default=b"", repr=False, compare=False)

    @property
    def text(self) -> str:
        """File contents decoded as UTF-8."""
        return self.data.decode("utf-8")


@dataclass
class ScanResult:
    """Outcome of a full or targeted scan.

    Attributes:
        added: Ids that did not exist before.
        modified: Ids whose content hash or kind changed.
        removed: Ids that no longer exist.
        errors: Per-file classification or read errors.
        examined: Every id the scan looked at.
    """

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)
    examined: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[str]:
        """Every id touched by the scan, sorted."""
        return sorted(set(self.added) | set(self.modified) | set(self.removed))


class Scanner:
    """Classifies and hashes the files of a source tree.

    Attributes:
        config: Build configuration providing the directory layout.
        files: Records from the most recent scan, keyed by id.
    """

    def __init__(self, config: BuildConfig):
        self.config = config
        self.files: dict[str, SourceFile] = {}

    def scan(self) -> ScanResult:
        """Scan every source directory.

        Returns:
            ScanResult relative to the previous scan (everything is added on
            the first call).

        Raises:
            FileNotFoundError: If the source root does not exist.
        """
        root = self.config.source_root
        if not root.is_dir():
            raise FileNotFoundError(f"Expected source directory at {root}")

        seen: dict[str, SourceFile] = {}
        result = ScanResult()
        for path in self._walk():
            result.examined.append(self._id_for(path))
            record = self._load(path, result)
            if record is not None:
                seen[record.id] = record
            else:
                rel_id = self._id_for(path)
                if rel_id in self.files:
                    # Keep the last good record; its artifact stays served.
                    seen[rel_id] = self.files[rel_id]

        for file_id, record in sorted(seen.items()):
            previous = self.files.get(file_id)
            if previous is None:
                result.added.append(file_id)
            elif _differs(previous, record):
                result.modified.append(file_id)
        result.removed = sorted(set(self.files) - set(seen))
        result.examined = sorted(set(result.examined) | set(result.removed))
        self.files = dict(sorted(seen.items()))
        logger.debug(
            "Scanned %d files (%d added, %d modified, %d removed)",
            len(self.files),
            len(result.added),
            len(result.modified),
            len(result.removed),
        )
        return result

    def rescan(self, paths: list[Path]) -> ScanResult:
        """Re-examine only the given paths.

        Directories are expanded to every file beneath them, plus every known
        id beneath them so that a removed directory reports its files removed.

        Args:
            paths: Absolute or root-relative paths reported by the watcher.

        Returns:
            ScanResult with only changed, added and removed records.
        """
        result = ScanResult()
        candidates: set[str] = set()
        on_disk: dict[str, Path] = {}
        for raw in paths:
            path = raw if raw.is_absolute() else self.config.source_root / raw
            if not self._in_source_dir(path):
                continue
            # A deleted directory still removes every known file beneath it.
            prefix = self._id_for(path).rstrip("/") + "/"
            candidates.update(i for i in self.files if i.startswith(prefix))
            if path.is_dir():
                for child in self._walk_dir(path):
                    on_disk[self._id_for(child)] = child
            else:
                file_id = self._id_for(path)
                candidates.add(file_id)
                if path.is_file() and not is_hidden_or_temp(path):
                    on_disk[file_id] = path
        candidates.update(on_disk)
        result.examined = sorted(candidates)

        for file_id in sorted(candidates):
            path = on_disk.get(file_id)
            previous = self.files.get(file_id)
            if path is None:
                if previous is not None:
                    del self.files[file_id]
                    result.removed.append(file_id)
                continue
            record = self._load(path, result)
            if record is None:
                continue
            if previous is None:
                result.added.append(file_id)
            elif _differs(previous, record):
                result.modified.append(file_id)
            self.files[file_id] = record
        self.files = dict(sorted(self.files.items()))
        return result

    def classify(self, path: Path) -> SourceKind | None:
        """Classify a file by the source directory it lives in.

        Args:
            path: Absolute path of the file.

        Returns:
            The file's SourceKind, or None when the file is not part of the site.

        Raises:
            AmbiguousKindError: If the file sits in a source directory but
                matches no kind there.
        """
        role, rel = self._role_for(path)
        if role is None or rel is None:
            return None
        if role == "content":
            if path.name in SECTION_MANIFESTS:
                return SourceKind.SECTION
            if is_markdown(path) or is_html(path) or is_template(path):
                return SourceKind.CONTENT
            return SourceKind.ASSET
        if role == "templates":
            if path.suffix.lower() not in TEMPLATE_SUFFIXES:
                raise AmbiguousKindError(
                    self._id_for(path),
                    f"unsupported template suffix {path.suffix or '(none)'}",
                )
            if path.name.startswith("_") or any(
                part in PARTIAL_DIRS for part in rel.parts[:-1]
            ):
                return SourceKind.PARTIAL
            return SourceKind.TEMPLATE
        if role == "styles":
            if path.suffix.lower() == ".css":
                return SourceKind.STYLE
            return SourceKind.ASSET
        if role == "data":
            if path.suffix.lower() not in DATA_SUFFIXES:
                raise AmbiguousKindError(
                    self._id_for(path),
                    f"data files must be YAML or JSON, got {path.suffix or '(none)'}",
                )
            return SourceKind.DATA
        return SourceKind.ASSET

    def _load(self, path: Path, result: ScanResult) -> SourceFile | None:
        file_id = self._id_for(path)
        try:
            kind = self.classify(path)
        except SourceError as exc:
            logger.warning("Skipping %s: %s", file_id, exc.message)
            result.errors.append(exc)
            return None
        if kind is None:
            return None
        try:
            data = path.read_bytes()
            stat = path.stat()
        except OSError as exc:
            logger.warning("Unreadable source file %s: %s", file_id, exc)
            result.errors.append(SourceError(file_id, f"unreadable file: {exc}"))
            return None
        return SourceFile(
            id=file_id,
            kind=kind,
            path=path,
            content_hash=hash_bytes(data),
            mtime_ns=stat.st_mtime_ns,
            data=data,
        )

    def _walk(self) -> list[Path]:
        files: list[Path] = []
        for directory in self.config.source_dirs.values():
            if directory.is_dir():
                files.extend(self._walk_dir(directory))
        return sorted(set(files))

    def _walk_dir(self, directory: Path) -> list[Path]:
        found: list[Path] = []
        output_root = self.config.output_root
        for current, dirs, names in os.walk(directory):
            current_path = Path(current)
            dirs[:] = sorted(
                d
                for d in dirs
                if not d.startswith(".") and not _is_within(current_path / d, output_root)
            )
            for name in sorted(names):
                path = current_path / name
                if is_hidden_or_temp(path):
                    continue
                found.append(path)
        return found

    def _role_for(self, path: Path) -> tuple[str | None, Path | None]:
        if _is_within(path, self.config.output_root):
            return None, None
        for role, directory in self.config.source_dirs.items():
            if _is_within(path, directory):
                return role, path.relative_to(directory)
        return None, None

    def _in_source_dir(self, path: Path) -> bool:
        role, _ = self._role_for(path)
        return role is not None

    def _id_for(self, path: Path) -> str:
        try:
            return path.relative_to(self.config.source_root).as_posix()
        except ValueError:
            return path.as_posix()


def _differs(previous: SourceFile, current: SourceFile) -> bool:
    return previous.content_hash != current.content_hash or previous.kind != current.kind


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True
