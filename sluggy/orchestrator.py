"""Incremental build orchestration for Sluggy.

A build cycle moves through a fixed sequence of states::

    IDLE -> SCANNING -> DIFFING -> SCHEDULING -> RENDERING -> FINISHING -> COMMITTED -> IDLE

Diffing applies the change-set to the graph and computes the affected set
(changed entities plus everything that depends on them). Scheduling removes
entities that cannot build (cycles, dangling references, failed upstreams)
and orders the rest. Rendering runs a ready-queue on a thread pool, consulting
the build cache so only entities whose key changed are recomputed. Finishing
minifies and compresses routable output whose finish key differs from the
store. Committing writes the output tree and swaps the store snapshot.

Changes notified while a cycle is in flight supersede its commit: the
cycle's results are dropped and it restarts at Diffing with the merged
change-set. Work already running is allowed to finish.

Key classes:
- BuildState: Cycle states.
- EntityError: Per-entity error entry of a report.
- BuildReport: Outcome of one cycle.
- BuildSession: Graph, cache, store and per-session services.
- Orchestrator: Runs cycles against a session.

Key functions:
- full_build: One-shot build of a source tree.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .adapters import ParseContext, ParsedEntity, RenderContext, RenderedOutput, resolve_edges, run_parse, run_render
from .cache import BuildCache, CacheKey, derive_key
from .config import BuildConfig, load_config
from .content import ContentParser
from .errors import (
    BuildError,
    CacheConsistencyError,
    CycleError,
    DanglingReferenceError,
    SourceError,
    TransformError,
)
from .finishing import FinishingPipeline
from .graph import ORDERING_KINDS, DependencyGraph
from .scanner import ScanResult, Scanner, SourceKind
from .sections import manifest_for, same_directory
from .store import ArtifactStore, BuildArtifact, OutputWriter, StoreEntry
from .templates import TemplateEngine
from .utils import ensure_clean_dir

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    SCHEDULING = "scheduling"
    RENDERING = "rendering"
    FINISHING = "finishing"
    COMMITTED = "committed"


@dataclass(frozen=True)
class EntityError:
    """An error attributed to one entity.

    Attributes:
        entity_id: Offending entity.
        kind: Error class name, e.g. "CycleError".
        message: Human-readable message.
    """

    entity_id: str
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: SourceError | TransformError) -> EntityError:
        return cls(exc.entity_id, exc.kind, exc.message)

    @classmethod
    def upstream(cls, entity_id: str, origin: str) -> EntityError:
        return cls(entity_id, SourceError.kind, f"depends on failed entity {origin}")


@dataclass
class BuildReport:
    """Outcome of a build cycle.

    Attributes:
        scanned: Number of source files examined.
        rebuilt: Ids whose render was recomputed.
        skipped: Ids that were affected but answered from the cache.
        written: Routes written to the output tree.
        removed: Routes deleted from the output tree.
        errors: Per-entity errors of this cycle.
        duration: Wall time in seconds.
        superseded: How often the cycle was restarted by new changes.
    """

    scanned: int = 0
    rebuilt: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[EntityError] = field(default_factory=list)
    duration: float = 0.0
    superseded: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def errors_for(self, entity_id: str) -> list[EntityError]:
        return [e for e in self.errors if e.entity_id == entity_id]

    def summary(self) -> str:
        return (
            f"{self.scanned} scanned, {len(self.rebuilt)} rebuilt, {len(self.skipped)} cached, "
            f"{len(self.written)} written, {len(self.removed)} removed, "
            f"{len(self.errors)} errors in {self.duration:.2f}s"
        )


class BuildSession:
    """Everything one site build owns; nothing is shared between sessions.

    Attributes:
        config: Build configuration.
        scanner: Source scanner holding the last known SourceFiles.
        graph: Dependency graph.
        cache: Build cache.
        store: Committed artifacts.
        writer: Output tree writer.
        engine: Template engine.
        pipeline: Finishing pipeline.
        parsed: Parse results of every entity in the graph.
        results: Committed render results.
        routes: Committed route of each routable entity.
        errors: Entities currently failing to build. Only the build thread
            touches it; other threads read current_errors().
        scan_errors: Files the scanner could not classify or read.
    """

    def __init__(self, config: BuildConfig):
        self.config = config
        self.scanner = Scanner(config)
        self.graph = DependencyGraph()
        self.cache = BuildCache()
        self.store = ArtifactStore()
        self.writer = OutputWriter(config.output_root, config.compressed_dir)
        self.engine = TemplateEngine(config.templates_dir, config.base_url)
        self.pipeline = FinishingPipeline(config)
        self.parse_context = ParseContext(config, self.engine, ContentParser(config), self.graph.get)
        self.fingerprint = config.fingerprint()
        self.parsed: dict[str, ParsedEntity] = {}
        self.results: dict[str, Any] = {}
        self.routes: dict[str, str] = {}
        self.errors: dict[str, EntityError] = {}
        self.scan_errors: dict[str, EntityError] = {}
        self._published_errors: tuple[EntityError, ...] = ()

    def key(self, entity_id: str, stage: str) -> CacheKey:
        return derive_key(
            self.graph, entity_id, stage, self.fingerprint, self._section_inputs(entity_id)
        )

    def _section_inputs(self, entity_id: str) -> tuple[str, ...]:
        """Id and hash of the manifest a content file is parsed against."""
        node = self.graph.get(entity_id)
        if node is None or node.kind is not SourceKind.CONTENT:
            return ()
        manifest_id = manifest_for(entity_id, self._is_section)
        if manifest_id is None:
            return ()
        return (manifest_id, self.graph.get(manifest_id).content_hash)

    def _is_section(self, entity_id: str) -> bool:
        node = self.graph.get(entity_id)
        return node is not None and node.kind is SourceKind.SECTION

    def publish_errors(self) -> None:
        """Freeze the standing errors for readers on other threads."""
        merged = dict(self.scan_errors)
        merged.update(self.errors)
        self._published_errors = tuple(merged[i] for i in sorted(merged))

    def current_errors(self) -> tuple[EntityError, ...]:
        """Errors standing at the last commit, sorted by entity id.

        Reads one reference, so it is safe while a cycle mutates the session.
        """
        return self._published_errors


@dataclass
class _Attempt:
    """Uncommitted state of one pass from Diffing to Committed."""

    affected: set[str] = field(default_factory=set)
    errors: dict[str, EntityError] = field(default_factory=dict)
    working: dict[str, Any] = field(default_factory=dict)
    rebuilt: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    new_routes: dict[str, str | None] = field(default_factory=dict)
    finished: dict[str, StoreEntry] = field(default_factory=dict)


class Orchestrator:
    """Runs build cycles for one BuildSession.

    Cycles are serialised; ``notify`` may be called from any thread.

    Attributes:
        session: The session being built.
    """

    def __init__(
        self,
        config: BuildConfig | BuildSession,
        on_state: Callable[[BuildState], None] | None = None,
    ):
        self.session = config if isinstance(config, BuildSession) else BuildSession(config)
        self._on_state = on_state
        self._state = BuildState.IDLE
        self._cycle_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: set[Path] = set()
        self._superseded = threading.Event()
        self._uncommitted: set[str] = set()
        self._initialized = False

    @property
    def state(self) -> BuildState:
        return self._state

    @property
    def config(self) -> BuildConfig:
        return self.session.config

    def notify(self, paths: Iterable[Path | str]) -> None:
        """Record changed paths; supersedes the in-flight cycle, if any."""
        with self._pending_lock:
            self._pending.update(Path(p) for p in paths)
        if self._state is not BuildState.IDLE:
            self._superseded.set()

    def has_pending(self) -> bool:
        with self._pending_lock:
            return bool(self._pending)

    def full_build(self, clean_output: bool = False) -> BuildReport:
        """Build every source file.

        Args:
            clean_output: Wipe the output directory first.

        Returns:
            BuildReport of the cycle.

        Raises:
            BuildError: On I/O failure at the scanner or store boundary, or a
                cache consistency violation.
        """
        if clean_output:
            self._clean_output()
        return self._cycle(full=True, paths=set())

    def incremental_build(self, change_set: Iterable[Path | str]) -> BuildReport:
        """Rebuild after the given paths changed.

        Args:
            change_set: Changed paths, or a ChangeBatch.

        Returns:
            BuildReport of the cycle. Runs a full build if none has run yet.

        Raises:
            BuildError: As for full_build.
        """
        paths = getattr(change_set, "paths", change_set)
        if not self._initialized:
            self.notify(paths)
            return self._cycle(full=True, paths=set())
        return self._cycle(full=False, paths={Path(p) for p in paths})

    def run_pending(self) -> BuildReport | None:
        """Build whatever was notified since the last cycle, if anything."""
        if not self.has_pending():
            return None
        return self.incremental_build([])

    def current_artifact(self, route: str) -> BuildArtifact | None:
        return self.session.store.current(route)

    def stale_routes(self) -> list[str]:
        """Routes whose stored CacheKey no longer matches the graph.

        Artifacts of entities that are currently failing are kept on purpose
        and not reported.
        """
        session = self.session
        stale: list[str] = []
        for route, entry in sorted(session.store.snapshot().items()):
            entity_id = entry.artifact.entity_id
            if entity_id in session.errors:
                continue
            if entity_id not in session.graph:
                stale.append(route)
            elif session.key(entity_id, "finish") != entry.cache_key:
                stale.append(route)
        return stale

    def _set_state(self, state: BuildState) -> None:
        self._state = state
        logger.debug("Build state: %s", state.value)
        if self._on_state is not None:
            self._on_state(state)

    def _take_pending(self) -> set[Path]:
        with self._pending_lock:
            pending, self._pending = self._pending, set()
        return pending

    def _clean_output(self) -> None:
        output_root = self.config.output_root
        source_root = self.config.source_root
        if output_root == source_root or output_root in source_root.parents:
            raise BuildError(f"Refusing to wipe {output_root}: it contains the source tree")
        for directory in self.config.source_dirs.values():
            if directory == output_root or output_root in directory.parents:
                raise BuildError(f"Refusing to wipe {output_root}: it contains {directory}")
        try:
            ensure_clean_dir(output_root)
        except OSError as exc:
            raise BuildError(f"Failed to clean {output_root}: {exc}", exc) from exc
        self.session.store.clear()

    def _cycle(self, full: bool, paths: set[Path]) -> BuildReport:
        with self._cycle_lock:
            started = time.perf_counter()
            report = BuildReport()
            try:
                self._set_state(BuildState.SCANNING)
                self._superseded.clear()
                paths = paths | self._take_pending()
                changed = self._scan(full, paths, report)
                while True:
                    self._uncommitted |= changed
                    attempt = self._attempt(set(self._uncommitted))
                    if attempt is not None:
                        self._commit(attempt, report)
                        break
                    report.superseded += 1
                    logger.info("Build superseded by new changes, restarting")
                    self._set_state(BuildState.SCANNING)
                    self._superseded.clear()
                    changed = self._scan(False, self._take_pending(), report)
                self._uncommitted.clear()
                self._initialized = True
            except (OSError, CacheConsistencyError) as exc:
                report.duration = time.perf_counter() - started
                logger.error("Build aborted: %s", exc)
                raise BuildError(f"Build aborted: {exc}", exc, report) from exc
            finally:
                self._set_state(BuildState.IDLE)
            report.duration = time.perf_counter() - started
            logger.info("Build finished: %s", report.summary())
            return report

    def _scan(self, full: bool, paths: set[Path], report: BuildReport) -> set[str]:
        session = self.session
        scanner = session.scanner
        result: ScanResult = scanner.scan() if full else scanner.rescan(sorted(paths))
        report.scanned += len(result.examined)
        if full:
            session.scan_errors.clear()
        for entity_id in result.examined:
            session.scan_errors.pop(entity_id, None)
        for exc in result.errors:
            session.scan_errors[exc.entity_id] = EntityError.from_exception(exc)
        changed = set(result.changed)
        if full:
            changed |= set(scanner.files) | set(session.graph.ids())
        return changed

    def _superseded_now(self) -> bool:
        return self._superseded.is_set()

    def _attempt(self, changed: set[str]) -> _Attempt | None:
        attempt = _Attempt()
        self._set_state(BuildState.DIFFING)
        attempt.affected = self._diff(changed, attempt)
        # A restarted attempt must revisit everything this one touched.
        self._uncommitted |= attempt.affected

        self._set_state(BuildState.SCHEDULING)
        order = self._schedule(attempt)
        if self._superseded_now():
            return None

        self._set_state(BuildState.RENDERING)
        self._render(order, attempt)
        if self._superseded_now():
            return None

        self._set_state(BuildState.FINISHING)
        self._finish(order, attempt)
        if self._superseded_now():
            return None
        return attempt

    def _diff(self, changed: set[str], attempt: _Attempt) -> set[str]:
        session = self.session
        graph = session.graph
        files = session.scanner.files
        before = set(graph.ids())

        upserts = sorted(i for i in changed if i in files)
        removals = sorted(i for i in changed if i not in files and i in graph)
        manifests = [
            i
            for i in upserts + removals
            if (files[i] if i in files else graph.get(i)).kind is SourceKind.SECTION
        ]
        for entity_id in upserts:
            graph.insert_or_replace(files[entity_id])
        for entity_id in removals:
            graph.remove(entity_id)
            session.parsed.pop(entity_id, None)

        # Content files are parsed against the manifest beside them.
        regrouped = {
            node.id
            for node in graph.nodes()
            if node.kind is SourceKind.CONTENT
            and any(same_directory(node.id, m) for m in manifests)
        } - set(upserts)
        if regrouped:
            changed = changed | regrouped
            upserts = sorted(set(upserts) | regrouped)

        for entity_id in upserts:
            source = files[entity_id]
            key = session.key(entity_id, "parse")
            try:
                parsed, _ = session.cache.get_or_compute(
                    key,
                    lambda source=source: run_parse(source, session.parse_context),
                    expect=ParsedEntity,
                )
            except SourceError as exc:
                attempt.errors[entity_id] = EntityError.from_exception(exc)
                session.parsed.pop(entity_id, None)
                continue
            session.parsed[entity_id] = parsed

        # Adds and removals can change what references resolve to everywhere.
        id_set_changed = set(graph.ids()) != before
        targets = graph.ids() if id_set_changed else upserts
        data_ids = [n.id for n in graph.nodes() if n.kind is SourceKind.DATA]
        section_ids = [n.id for n in graph.nodes() if n.kind is SourceKind.SECTION]
        rewired: set[str] = set()
        for entity_id in targets:
            parsed = session.parsed.get(entity_id)
            edges = (
                resolve_edges(parsed, graph, data_ids, section_ids) if parsed is not None else []
            )
            if edges != graph.edges_from(entity_id):
                graph.set_edges(entity_id, edges)
                rewired.add(entity_id)

        dirty = set(changed) | rewired
        affected = dirty | graph.dependents_of(dirty)
        logger.debug("%d changed, %d affected", len(dirty), len(affected))
        return affected

    def _schedule(self, attempt: _Attempt) -> list[str]:
        session = self.session
        graph = session.graph
        live = {i for i in attempt.affected if i in graph}
        errors = attempt.errors

        for cycle in graph.find_cycles(live):
            for member in cycle[:-1]:
                errors.setdefault(member, EntityError.from_exception(CycleError(member, cycle)))
        for entity_id in sorted(live - set(errors)):
            if entity_id not in session.parsed:
                errors[entity_id] = session.errors.get(entity_id) or EntityError(
                    entity_id, SourceError.kind, "entity could not be parsed"
                )
                continue
            missing = graph.missing_dependencies(entity_id)
            if missing:
                errors[entity_id] = EntityError.from_exception(
                    DanglingReferenceError(entity_id, missing)
                )

        standing = {i for i in session.errors if i in graph and i not in live}
        for origin in sorted(set(errors) | standing):
            for dependent in sorted(graph.dependents_of(origin, ORDERING_KINDS)):
                if dependent in live and dependent not in errors:
                    errors[dependent] = EntityError.upstream(dependent, origin)

        remaining = live - set(errors)
        order = graph.topological_order(remaining)
        logger.debug("Scheduled %d entities, %d halted", len(order), len(live) - len(order))
        return order

    def _render(self, order: list[str], attempt: _Attempt) -> None:
        session = self.session
        graph = session.graph
        working = dict(session.results)
        for entity_id in attempt.affected:
            if entity_id in attempt.errors or entity_id not in graph:
                working.pop(entity_id, None)
        attempt.working = working

        ctx = RenderContext(self.config, session.engine, graph, working, session.parsed)
        session.engine.set_lookup(ctx.compiled)

        scheduled = set(order)
        waiting = {
            i: {
                e.target
                for e in graph.edges_from(i)
                if e.target in scheduled and e.target != i and e.kind in ORDERING_KINDS
            }
            for i in order
        }
        children: dict[str, list[str]] = defaultdict(list)
        for entity_id, deps in waiting.items():
            for dep in deps:
                children[dep].append(entity_id)

        fatal: CacheConsistencyError | None = None
        with ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="sluggy-render"
        ) as pool:
            running: dict[Future, str] = {}

            def submit(entity_id: str) -> None:
                running[pool.submit(self._render_one, entity_id, ctx)] = entity_id

            for entity_id in order:
                if not waiting[entity_id]:
                    submit(entity_id)

            while running:
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: running[f]):
                    entity_id = running.pop(future)
                    try:
                        value, computed = future.result()
                    except (SourceError, TransformError) as exc:
                        logger.warning("Failed to render %s: %s", entity_id, exc.message)
                        attempt.errors[entity_id] = EntityError.from_exception(exc)
                        working.pop(entity_id, None)
                        for dependent in sorted(graph.dependents_of(entity_id, ORDERING_KINDS)):
                            if dependent in scheduled and dependent not in attempt.errors:
                                attempt.errors[dependent] = EntityError.upstream(dependent, entity_id)
                                working.pop(dependent, None)
                        continue
                    except CacheConsistencyError as exc:
                        fatal = fatal or exc
                        continue
                    working[entity_id] = value
                    (attempt.rebuilt if computed else attempt.skipped).append(entity_id)
                    if fatal is not None:
                        continue
                    for child in children[entity_id]:
                        waiting[child].discard(entity_id)
                        if not waiting[child] and child not in attempt.errors:
                            submit(child)
        if fatal is not None:
            raise fatal
        attempt.rebuilt.sort()
        attempt.skipped.sort()

    def _render_one(self, entity_id: str, ctx: RenderContext) -> tuple[Any, bool]:
        session = self.session
        parsed = session.parsed[entity_id]
        key = session.key(entity_id, "render")
        return session.cache.get_or_compute(key, lambda: run_render(parsed, ctx))

    def _finish(self, order: list[str], attempt: _Attempt) -> None:
        session = self.session
        claims = {route: owner for owner, route in session.routes.items()}
        built = [i for i in order if i not in attempt.errors and i in attempt.working]
        released = set(built) | {i for i in attempt.affected if i not in session.graph}
        for entity_id in released:
            route = session.routes.get(entity_id)
            if route is not None and claims.get(route) == entity_id:
                del claims[route]

        to_finish: list[tuple[str, RenderedOutput, CacheKey]] = []
        for entity_id in sorted(built):
            output = attempt.working[entity_id]
            route = output.route if isinstance(output, RenderedOutput) else None
            if route is None:
                attempt.new_routes[entity_id] = None
                continue
            owner = claims.get(route)
            if owner is not None and owner != entity_id:
                attempt.errors[entity_id] = EntityError(
                    entity_id, SourceError.kind, f"route {route} is already produced by {owner}"
                )
                continue
            claims[route] = entity_id
            attempt.new_routes[entity_id] = route
            key = session.key(entity_id, "finish")
            entry = session.store.entry(route)
            if entry is not None and entry.cache_key == key:
                continue
            to_finish.append((entity_id, output, key))

        if not to_finish:
            return
        with ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="sluggy-finish"
        ) as pool:
            futures = {
                entity_id: pool.submit(
                    session.cache.get_or_compute,
                    key,
                    lambda output=output: session.pipeline.finish(output),
                    BuildArtifact,
                )
                for entity_id, output, key in to_finish
            }
            for entity_id, output, key in to_finish:
                try:
                    artifact, _ = futures[entity_id].result()
                except TransformError as exc:
                    logger.warning("Failed to finish %s: %s", entity_id, exc.message)
                    attempt.errors[entity_id] = EntityError.from_exception(exc)
                    continue
                attempt.finished[entity_id] = StoreEntry(artifact, key)

    def _commit(self, attempt: _Attempt, report: BuildReport) -> None:
        session = self.session
        graph = session.graph
        snapshot = dict(session.store.snapshot())

        final_routes = {i: r for i, r in session.routes.items() if i in graph}
        for entity_id, route in attempt.new_routes.items():
            if entity_id in attempt.errors:
                continue
            if route is None:
                final_routes.pop(entity_id, None)
            else:
                final_routes[entity_id] = route
        claimed = {r: i for i, r in attempt.new_routes.items() if r is not None and i not in attempt.errors}
        for entity_id, route in list(final_routes.items()):
            if claimed.get(route, entity_id) != entity_id:
                del final_routes[entity_id]
        live_routes = set(final_routes.values())

        for entity_id, entry in sorted(attempt.finished.items()):
            if entity_id in attempt.errors:
                continue
            route = entry.artifact.route
            session.writer.write(entry.artifact)
            snapshot[route] = entry
            report.written.append(route)
        for route in sorted(set(snapshot) - live_routes):
            session.writer.remove(route)
            del snapshot[route]
            report.removed.append(route)

        session.store.swap(snapshot)
        session.results = attempt.working
        session.routes = final_routes
        for entity_id in attempt.affected:
            session.errors.pop(entity_id, None)
        session.errors.update(attempt.errors)
        for entity_id in [i for i in session.errors if i not in graph]:
            del session.errors[entity_id]
        session.publish_errors()
        session.cache.retain(graph.ids())
        self._set_state(BuildState.COMMITTED)

        report.rebuilt = attempt.rebuilt
        report.skipped = attempt.skipped
        report.errors = [attempt.errors[i] for i in sorted(attempt.errors)]
        report.errors.extend(
            session.scan_errors[i] for i in sorted(session.scan_errors) if i not in attempt.errors
        )
        report.written.sort()


def full_build(
    source_root: Path | str,
    output_root: Path | str | None = None,
    config: BuildConfig | dict[str, Any] | None = None,
    clean_output: bool = True,
) -> BuildReport:
    """Build a source tree once.

    Args:
        source_root: Project root holding sluggy.yaml and the source dirs.
        output_root: Output directory; defaults to the configured one.
        config: A BuildConfig, a config mapping, or None to read sluggy.yaml.
        clean_output: Wipe the output directory first so no stale files
            survive.

    Returns:
        BuildReport of the build; per-entity errors are in ``report.errors``.

    Raises:
        BuildError: If the build aborted.
    """
    source_root = Path(source_root)
    if not isinstance(config, BuildConfig):
        mapping = config if config is not None else load_config(source_root)
        config = BuildConfig.from_mapping(
            mapping, source_root, Path(output_root) if output_root is not None else None
        )
    return Orchestrator(config).full_build(clean_output=clean_output)
