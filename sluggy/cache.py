"""Build cache for Sluggy.

A CacheKey names one stage of one entity together with a digest of every
input that can influence the result: the entity's own bytes, the bytes of
everything it transitively depends on and the output-relevant configuration.
Equal keys therefore mean equal output, and the cache never has to guess
whether an entry is stale.

Key classes:
- CacheKey: (entity id, digest, stage).
- BuildCache: Single-flight get_or_compute with eviction by live ids.

Key functions:
- derive_key: Compute a CacheKey from the current graph.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import CacheConsistencyError
from .graph import DependencyGraph
from .utils import combine_hashes

logger = logging.getLogger(__name__)

STAGES = ("parse", "render", "finish")

# Stands in for the hash of a dependency that does not exist.
MISSING_MARKER = "missing"

T = TypeVar("T")


@dataclass(frozen=True)
class CacheKey:
    """Identity of one cached stage result.

    Attributes:
        entity_id: Id of the entity the result belongs to.
        digest: sha256 over every input of the stage.
        stage: "parse", "render" or "finish".
    """

    entity_id: str
    digest: str
    stage: str

    def __post_init__(self):
        if self.stage not in STAGES:
            raise ValueError(f"Unknown cache stage {self.stage!r}")


def derive_key(
    graph: DependencyGraph,
    entity_id: str,
    stage: str,
    fingerprint: str = "",
    extra: Iterable[str] = (),
) -> CacheKey:
    """Compute the CacheKey of ``entity_id`` at ``stage``.

    The parse stage only sees the entity's own bytes. Later stages also fold
    in the ``(id, hash)`` pair of every transitive dependency, sorted by id;
    a dependency that does not exist contributes MISSING_MARKER, so its later
    appearance changes the key.

    Args:
        graph: Current dependency graph.
        entity_id: Entity to key.
        stage: One of STAGES.
        fingerprint: Fingerprint of the output-relevant configuration.
        extra: Further inputs of every stage, such as the section manifest
            a content file is parsed against.

    Returns:
        The CacheKey.

    Raises:
        KeyError: If ``entity_id`` is not in the graph.
    """
    node = graph.get(entity_id)
    if node is None:
        raise KeyError(f"Cannot key {entity_id!r}: not in the graph")
    parts = [stage, fingerprint, entity_id, node.kind.value, node.content_hash, *extra]
    if stage != "parse":
        for dep_id in sorted(graph.dependencies_of(entity_id)):
            dep = graph.get(dep_id)
            parts.append(dep_id)
            parts.append(dep.content_hash if dep is not None else MISSING_MARKER)
    return CacheKey(entity_id=entity_id, digest=combine_hashes(parts), stage=stage)


class _Slot:
    __slots__ = ("key", "future")

    def __init__(self, key: CacheKey):
        self.key = key
        self.future: Future = Future()


class BuildCache:
    """Maps CacheKeys to stage results, computing each key at most once.

    Admission of a key happens under a short lock; the computation itself
    runs outside it, and concurrent callers for the same key wait on that
    key's future. Exceptions reach every waiter and are not stored, so the
    next request for the key computes again.

    Attributes:
        hits: Requests answered by an existing or in-flight entry.
        misses: Requests that had to compute.
        computations: Completed computations per CacheKey.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self.hits = 0
        self.misses = 0
        self.computations: Counter[CacheKey] = Counter()

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, CacheKey):
            return False
        with self._lock:
            slot = self._slots.get(key.digest)
        return slot is not None and slot.key == key and slot.future.done()

    def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], T],
        expect: type | tuple[type, ...] | None = None,
    ) -> tuple[T, bool]:
        """Return the value for ``key``, computing it if needed.

        Args:
            key: Cache key of the requested result.
            compute_fn: Called with no arguments when the key is absent.
            expect: Optional type the stored value must have.

        Returns:
            Tuple of (value, computed) where ``computed`` is True only for the
            caller that actually ran ``compute_fn``.

        Raises:
            CacheConsistencyError: If the digest is stored under a different
                entity or stage, or the value has an unexpected shape.
        """
        with self._lock:
            slot = self._slots.get(key.digest)
            if slot is None:
                slot = _Slot(key)
                self._slots[key.digest] = slot
                owner = True
                self.misses += 1
            else:
                if slot.key != key:
                    raise CacheConsistencyError(
                        f"Cache digest {key.digest[:12]} requested as "
                        f"{key.entity_id}/{key.stage} but stored as "
                        f"{slot.key.entity_id}/{slot.key.stage}"
                    )
                owner = False
                self.hits += 1

        if owner:
            try:
                value = compute_fn()
                _check_shape(key, value, expect)
            except BaseException as exc:
                with self._lock:
                    if self._slots.get(key.digest) is slot:
                        del self._slots[key.digest]
                slot.future.set_exception(exc)
                raise
            with self._lock:
                self.computations[key] += 1
            slot.future.set_result(value)
            logger.debug("Computed %s for %s", key.stage, key.entity_id)
            return value, True

        value = slot.future.result()
        _check_shape(key, value, expect)
        return value, False

    def peek(self, key: CacheKey) -> Any | None:
        """Return a completed value for ``key`` without touching the stats."""
        with self._lock:
            slot = self._slots.get(key.digest)
        if slot is None or slot.key != key or not slot.future.done():
            return None
        if slot.future.exception() is not None:
            return None
        return slot.future.result()

    def computations_for(self, entity_id: str, stage: str | None = None) -> int:
        """Total computations recorded for an entity, optionally for one stage."""
        with self._lock:
            return sum(
                count
                for key, count in self.computations.items()
                if key.entity_id == entity_id and (stage is None or key.stage == stage)
            )

    def retain(self, live_ids: Iterable[str]) -> int:
        """Drop every entry whose entity is not in ``live_ids``.

        Returns:
            Number of entries dropped.
        """
        live = set(live_ids)
        with self._lock:
            dead = [d for d, slot in self._slots.items() if slot.key.entity_id not in live]
            for digest in dead:
                del self._slots[digest]
        if dead:
            logger.debug("Evicted %d cache entries", len(dead))
        return len(dead)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()


def _check_shape(key: CacheKey, value: Any, expect: type | tuple[type, ...] | None) -> None:
    if expect is not None and not isinstance(value, expect):
        raise CacheConsistencyError(
            f"Cache entry {key.entity_id}/{key.stage} holds "
            f"{type(value).__name__}, expected {expect}"
        )
