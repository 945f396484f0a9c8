from __future__ import annotations

import asyncio
import threading
import time
from types import MappingProxyType
from typing import Iterable

from term_engine.contracts.term import Term, TermChangeEvent
from term_engine.exceptions.core import RegistryUnavailable
from term_engine.registry.snapshot import RegistrySnapshot
from term_engine.utils.logger import get_logger, log_debug, log_registry, log_warn


def _now_ms() -> int:
    return int(time.time() * 1000)


class TermRegistry:
    """
    In-memory, versioned view of terms kept current by change events.

    Responsibilities:
        - apply change events in arrival order, rejecting stale versions
        - recompute only the scope keys a change touches
        - publish a new immutable snapshot per applied batch

    Concurrency:
        - writers serialize on an internal lock
        - readers take `snapshot()` without locking; the pointer swap is a
          single attribute assignment, so a reader sees the old or the new
          snapshot, never a partial one
    """

    def __init__(self) -> None:
        self._snapshot: RegistrySnapshot | None = None
        self._write_lock = threading.Lock()
        self._ready = threading.Event()
        self._rejected = 0
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def version(self) -> int | None:
        snap = self._snapshot
        return None if snap is None else snap.version

    @property
    def rejected_changes(self) -> int:
        return self._rejected

    def snapshot(self) -> RegistrySnapshot:
        snap = self._snapshot
        if snap is None:
            raise RegistryUnavailable("no term snapshot published yet")
        return snap

    def get_active_terms(self, scope_key: str) -> tuple[Term, ...]:
        snap = self._snapshot
        if snap is None:
            return ()
        return snap.get_active_terms(scope_key)

    async def wait_ready(self, timeout: float | None = None, *, poll_interval: float = 0.05) -> RegistrySnapshot:
        """Suspend until a first snapshot exists."""
        deadline = None if timeout is None else time.monotonic() + float(timeout)
        while not self._ready.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                raise RegistryUnavailable(f"no term snapshot after {timeout}s")
            await asyncio.sleep(poll_interval)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def mark_ready(self) -> RegistrySnapshot:
        """Publish an empty first snapshot if nothing has arrived yet."""
        with self._write_lock:
            if self._snapshot is None:
                self._publish(RegistrySnapshot(version=0, created_ts=_now_ms()))
            return self._snapshot  # type: ignore[return-value]

    def apply_change(self, change: TermChangeEvent) -> RegistrySnapshot:
        return self.apply_changes([change])

    def apply_changes(self, changes: Iterable[TermChangeEvent]) -> RegistrySnapshot:
        """Apply changes in order and publish one snapshot for the batch."""
        with self._write_lock:
            base = self._snapshot or RegistrySnapshot(version=0)
            terms = dict(base.terms)
            index = dict(base.index)
            applied = 0
            for change in changes:
                if self._apply_one(terms, index, change):
                    applied += 1

            if applied == 0 and self._snapshot is not None:
                return self._snapshot

            snap = RegistrySnapshot(
                version=base.version + 1,
                terms=MappingProxyType(terms),
                index=MappingProxyType(index),
                created_ts=_now_ms(),
            )
            self._publish(snap)
            log_registry(
                self._logger,
                "registry.snapshot_published",
                snapshot_version=snap.version,
                applied=applied,
                terms=len(terms),
                active=snap.active_count,
                scope_keys=len(index),
            )
            return snap

    def _apply_one(
        self,
        terms: dict[str, Term],
        index: dict[str, tuple[Term, ...]],
        change: TermChangeEvent,
    ) -> bool:
        prev = terms.get(change.term_id)
        if prev is not None and change.version <= prev.version:
            self._rejected += 1
            log_warn(
                self._logger,
                "registry.stale_change",
                term_id=change.term_id,
                held_version=prev.version,
                change_version=change.version,
            )
            return False

        term = change.to_term()
        terms[term.term_id] = term

        affected: set[str] = set()
        if prev is not None and prev.is_active:
            affected.update(prev.scope.keys())
        if term.is_active:
            affected.update(term.scope.keys())

        new_keys = set(term.scope.keys()) if term.is_active else set()
        for key in affected:
            bucket = [t for t in index.get(key, ()) if t.term_id != term.term_id]
            if key in new_keys:
                bucket.append(term)
            if bucket:
                index[key] = tuple(sorted(bucket, key=lambda t: t.term_id))
            else:
                index.pop(key, None)

        log_debug(
            self._logger,
            "registry.change_applied",
            term_id=term.term_id,
            term_version=term.version,
            status=term.status,
            affected_keys=sorted(affected),
        )
        return True

    def _publish(self, snap: RegistrySnapshot) -> None:
        self._snapshot = snap
        self._ready.set()
