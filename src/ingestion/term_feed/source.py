from __future__ import annotations

import threading
import time
from typing import Any, Iterable, Iterator, Mapping

import requests

from term_engine.exceptions.core import TransientIOError

"""Term-change feed sources.

A feed exposes:
    - `bootstrap()` -> iterable of raw term payloads forming the initial set
    - `__iter__` / `__aiter__` -> raw change payloads in the order the term
      service emitted them

Raw payloads are mappings normalized by `TermChangeNormalizer`.
Polling cadence is IO-only.
"""

Raw = Mapping[str, Any]

DEFAULT_POLL_INTERVAL_MS = 5_000


class StaticTermFeed:
    """In-memory feed: a bootstrap list plus an optional list of later changes."""

    def __init__(self, initial: Iterable[Raw] = (), changes: Iterable[Raw] = ()):
        self._initial = list(initial)
        self._changes = list(changes)

    def bootstrap(self) -> list[Raw]:
        return list(self._initial)

    def __iter__(self) -> Iterator[Raw]:
        yield from self._changes


class TermChangeRESTSource:
    """Polls the term service for changes newer than the last seen cursor.

    Endpoints (relative to `base_url`):
        GET /terms                    -> {"terms": [...], "cursor": <int>}
        GET /terms/changes?since=<c>  -> {"changes": [...], "cursor": <int>}

    Network failures and unreadable bodies surface as TransientIOError.
    Polling retries them on the next poll; `TermFeedWorker` retries a failed
    `bootstrap()` with backoff.
    """

    def __init__(
        self,
        *,
        base_url: str,
        poll_interval: float | None = None,
        poll_interval_ms: int | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        stop_event: threading.Event | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = float(timeout)
        self._session = session or requests.Session()
        self._stop_event = stop_event
        self._cursor: int | None = None

        if poll_interval_ms is not None:
            self._poll_interval_ms = int(poll_interval_ms)
        elif poll_interval is not None:
            self._poll_interval_ms = int(round(float(poll_interval) * 1000.0))
        else:
            self._poll_interval_ms = DEFAULT_POLL_INTERVAL_MS

        if self._poll_interval_ms <= 0:
            raise ValueError(f"poll interval must be > 0ms, got {self._poll_interval_ms}")

    @property
    def cursor(self) -> int | None:
        return self._cursor

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            r = self._session.get(self._base_url + path, params=params, timeout=self._timeout)
            r.raise_for_status()
            data = r.json()
        except requests.RequestException as exc:
            raise TransientIOError(f"term service GET {path} failed: {exc}") from exc
        except ValueError as exc:
            raise TransientIOError(f"term service GET {path} returned a non-JSON body: {exc}") from exc
        if not isinstance(data, dict):
            raise TransientIOError(f"unexpected term service response type: {type(data)!r}")
        return data

    def _advance_cursor(self, data: Mapping[str, Any]) -> None:
        cursor = data.get("cursor")
        if cursor is not None:
            self._cursor = int(cursor)

    def bootstrap(self) -> list[Raw]:
        data = self._get("/terms")
        self._advance_cursor(data)
        return [t for t in data.get("terms", []) if isinstance(t, Mapping)]

    def poll(self) -> list[Raw]:
        params = {"since": self._cursor} if self._cursor is not None else None
        data = self._get("/terms/changes", params=params)
        self._advance_cursor(data)
        return [c for c in data.get("changes", []) if isinstance(c, Mapping)]

    def __iter__(self) -> Iterator[Raw]:
        while True:
            if self._stop_event is not None and self._stop_event.is_set():
                return
            try:
                rows = self.poll()
            except TransientIOError:
                if self._sleep_or_stop(self._poll_interval_ms / 1000.0):
                    return
                continue
            for row in rows:
                yield row
            if self._sleep_or_stop(self._poll_interval_ms / 1000.0):
                return

    def _sleep_or_stop(self, seconds: float) -> bool:
        if self._stop_event is None:
            time.sleep(seconds)
            return False
        return self._stop_event.wait(seconds)

    def close(self) -> None:
        self._session.close()
