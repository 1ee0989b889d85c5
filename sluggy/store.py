"""Artifact store and output writer for Sluggy.

The store is an immutable snapshot mapping route -> StoreEntry. A commit
builds a new snapshot and publishes it with a single reference assignment, so
a reader holding the old snapshot (or calling ``current`` during a commit)
sees either every old artifact or every new one.

Key classes:
- BuildArtifact: Finished bytes of one route plus compressed variants.
- StoreEntry: Artifact and the CacheKey that produced it.
- ArtifactStore: Atomically swapped snapshot.
- OutputWriter: Mirrors artifacts into the output tree.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from .cache import CacheKey

logger = logging.getLogger(__name__)

# File suffix of each compressed variant.
ENCODING_SUFFIXES = {"br": ".br", "gzip": ".gz", "deflate": ".zl"}


@dataclass(frozen=True)
class BuildArtifact:
    """Finished output of one route.

    Attributes:
        route: URL path the artifact is published under.
        content_type: Content type of ``body``.
        body: Finished, uncompressed bytes.
        variants: Read-only mapping of encoding name to compressed bytes.
        content_hash: sha256 of ``body``.
        entity_id: Id of the entity that produced the artifact.
    """

    route: str
    content_type: str
    body: bytes = field(repr=False)
    variants: Mapping[str, bytes] = field(default_factory=dict, repr=False)
    content_hash: str = ""
    entity_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "variants", MappingProxyType(dict(self.variants)))


@dataclass(frozen=True)
class StoreEntry:
    artifact: BuildArtifact
    cache_key: CacheKey


class ArtifactStore:
    """Committed mapping from route to current artifact.

    Reads take no lock: they dereference the current snapshot once. Writers
    (a single orchestrator) build a full new mapping and call ``swap``.
    """

    def __init__(self):
        self._snapshot: Mapping[str, StoreEntry] = MappingProxyType({})
        self.version = 0

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, route: object) -> bool:
        return route in self._snapshot

    def snapshot(self) -> Mapping[str, StoreEntry]:
        """The current immutable snapshot."""
        return self._snapshot

    def entry(self, route: str) -> StoreEntry | None:
        return self._snapshot.get(route)

    def current(self, route: str) -> BuildArtifact | None:
        """Current artifact for ``route``, or None."""
        entry = self._snapshot.get(route)
        return entry.artifact if entry is not None else None

    def routes(self) -> list[str]:
        return sorted(self._snapshot)

    def swap(self, entries: Mapping[str, StoreEntry]) -> Mapping[str, StoreEntry]:
        """Publish a new snapshot.

        Args:
            entries: Complete new route mapping; it is copied.

        Returns:
            The snapshot that was replaced.
        """
        previous = self._snapshot
        self._snapshot = MappingProxyType(dict(entries))
        self.version += 1
        return previous

    def clear(self) -> None:
        self.swap({})


class OutputWriter:
    """Writes artifacts into the output tree.

    Pages (routes ending in '/') are written to ``<route>/index.html``;
    everything else to its route path. Each compressed variant goes next to
    its file, or under ``compressed_dir`` when one is configured.

    Attributes:
        output_root: Root of the output tree.
        compressed_dir: Optional directory (relative to output_root) holding
            every compressed variant.
    """

    def __init__(self, output_root: Path, compressed_dir: str = ""):
        self.output_root = output_root
        self.compressed_dir = compressed_dir

    def relative_path(self, route: str) -> str:
        """Output path of ``route`` relative to the output root.

        Examples:
            >>> OutputWriter(Path("/out")).relative_path("/posts/hello/")
            'posts/hello/index.html'

            >>> OutputWriter(Path("/out")).relative_path("/css/main.css")
            'css/main.css'
        """
        rel = route.lstrip("/")
        if not rel or route.endswith("/"):
            rel = f"{rel}index.html"
        parts = rel.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"Refusing to write unsafe route {route!r}")
        return rel

    def path_for(self, route: str) -> Path:
        return self.output_root / self.relative_path(route)

    def variant_path_for(self, route: str, encoding: str) -> Path:
        rel = self.relative_path(route) + ENCODING_SUFFIXES[encoding]
        if self.compressed_dir:
            return self.output_root / self.compressed_dir / rel
        return self.output_root / rel

    def write(self, artifact: BuildArtifact) -> list[Path]:
        """Write an artifact and its variants; stale variants are removed.

        Raises:
            OSError: If a file cannot be written.
        """
        written = [self.path_for(artifact.route)]
        _atomic_write(written[0], artifact.body)
        for encoding in ENCODING_SUFFIXES:
            path = self.variant_path_for(artifact.route, encoding)
            if encoding in artifact.variants:
                _atomic_write(path, artifact.variants[encoding])
                written.append(path)
            elif path.exists():
                path.unlink()
        return written

    def remove(self, route: str) -> list[Path]:
        """Delete the files of ``route`` and prune empty directories.

        Raises:
            OSError: If an existing file cannot be removed.
        """
        removed: list[Path] = []
        paths = [self.path_for(route)] + [
            self.variant_path_for(route, encoding) for encoding in ENCODING_SUFFIXES
        ]
        for path in paths:
            if path.exists():
                path.unlink()
                removed.append(path)
                self._prune(path.parent)
        return removed

    def _prune(self, directory: Path) -> None:
        root = self.output_root
        while directory != root and root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
