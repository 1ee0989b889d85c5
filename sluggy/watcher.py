"""Filesystem change watching for Sluggy.

A watchdog Observer reports raw events on its own thread. Events pass the
ignore list, then feed a Debouncer that coalesces bursts into one
ChangeBatch per quiet period. Batches are handed over on a bounded queue.

Key classes:
- ChangeBatch: Deduplicated, sorted set of changed paths.
- Debouncer: Trailing-edge coalescing against an injectable clock.
- ChangeWatcher: Observer, ignore list, debouncer and batch queue.

Key functions:
- watch: Iterate over change batches of a source tree.
"""

from __future__ import annotations

import fnmatch
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import DEFAULT_IGNORES, BuildConfig, load_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeBatch:
    """Paths that changed during one quiet period.

    Attributes:
        paths: Absolute paths, deduplicated and sorted.
    """

    paths: tuple[Path, ...]

    @classmethod
    def from_paths(cls, paths: Iterable[Path]) -> ChangeBatch:
        return cls(tuple(sorted(set(paths))))

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths)


class Debouncer:
    """Coalesces events until ``window`` seconds pass without a new one.

    ``add`` and ``flush_due`` share one lock: an event arriving while a batch
    is being flushed lands either in that batch or in the next one.

    Attributes:
        window: Quiet period in seconds.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: set[Path] = set()
        self._deadline: float | None = None

    def add(self, path: Path) -> None:
        with self._lock:
            self._pending.add(path)
            self._deadline = self._clock() + self.window

    def flush_due(self) -> ChangeBatch | None:
        """Return the pending batch if its deadline has passed."""
        with self._lock:
            if not self._pending or self._deadline is None:
                return None
            if self._clock() < self._deadline:
                return None
            batch = ChangeBatch.from_paths(self._pending)
            self._pending = set()
            self._deadline = None
            return batch

    def time_until_due(self) -> float | None:
        """Seconds until the pending batch is due, or None when idle."""
        with self._lock:
            if self._deadline is None:
                return None
            return max(0.0, self._deadline - self._clock())


class _EventHandler(FileSystemEventHandler):
    def __init__(self, watcher: ChangeWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory and event.event_type in ("modified", "opened", "closed"):
            return
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        for raw in paths:
            self.watcher.record(Path(raw))


class ChangeWatcher:
    """Watches the source directories of a build configuration.

    Attributes:
        config: Build configuration; its source dirs are watched and its
            output dir is ignored.
        debouncer: Coalesces raw events.
        batches: Bounded queue of ready ChangeBatches.
    """

    def __init__(
        self,
        config: BuildConfig,
        debounce_window: float | None = None,
        max_batches: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        window = debounce_window if debounce_window is not None else config.debounce_ms / 1000
        self.debouncer = Debouncer(window, clock)
        self.batches: queue.Queue[ChangeBatch] = queue.Queue(maxsize=max_batches)
        self._observer: Observer | None = None
        self._stop = threading.Event()
        self._flusher: threading.Thread | None = None

    def is_ignored(self, path: Path) -> bool:
        """Whether events for ``path`` are dropped.

        The output directory, version-control and cache directories, and the
        configured ``ignore`` globs (matched against the root-relative path
        and the file name) are ignored.
        """
        output_root = self.config.output_root
        if path == output_root or output_root in path.parents:
            return True
        if any(part in DEFAULT_IGNORES for part in path.parts):
            return True
        try:
            rel = path.relative_to(self.config.source_root).as_posix()
        except ValueError:
            rel = path.as_posix()
        return any(
            fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(path.name, pattern)
            for pattern in self.config.ignore
        )

    def record(self, path: Path) -> None:
        if self.is_ignored(path):
            return
        logger.debug("Change event: %s", path)
        self.debouncer.add(path)

    def start(self) -> None:  # pragma: no cover - integration path
        observer = Observer()
        watched = 0
        for directory in self.config.source_dirs.values():
            if directory.is_dir():
                observer.schedule(_EventHandler(self), str(directory), recursive=True)
                watched += 1
        observer.start()
        self._observer = observer
        self._stop.clear()
        self._flusher = threading.Thread(
            target=self._flush_loop, name="sluggy-debounce", daemon=True
        )
        self._flusher.start()
        logger.info("Watching %d source directories", watched)

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        if self._flusher is not None:
            self._flusher.join()
            self._flusher = None

    def __enter__(self) -> ChangeWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def pump(self) -> ChangeBatch | None:
        """Move a due batch onto the queue; blocks while the queue is full."""
        batch = self.debouncer.flush_due()
        if batch is None:
            return None
        while not self._stop.is_set():
            try:
                self.batches.put(batch, timeout=0.1)
                return batch
            except queue.Full:
                continue
        return None

    def _flush_loop(self) -> None:
        window = self.debouncer.window
        while not self._stop.is_set():
            due = self.debouncer.time_until_due()
            self._stop.wait(window if due is None else max(due, 0.001))
            self.pump()


def watch(
    source_root: Path | str,
    debounce_window: float | None = None,
    config: BuildConfig | None = None,
) -> Iterator[ChangeBatch]:
    """Yield batches of changed paths under a source tree until closed.

    Args:
        source_root: Project root holding sluggy.yaml.
        debounce_window: Quiet period in seconds; defaults to the configured
            ``debounce_ms``.
        config: Optional resolved configuration.

    Yields:
        ChangeBatch for every quiet period that followed changes.
    """
    if config is None:
        root = Path(source_root)
        config = BuildConfig.from_mapping(load_config(root), root)
    watcher = ChangeWatcher(config, debounce_window)
    watcher.start()
    try:
        while True:
            try:
                yield watcher.batches.get(timeout=0.5)
            except queue.Empty:
                continue
    finally:
        watcher.stop()
