from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import requests

from term_engine.contracts.decision import ViolationAlert
from term_engine.exceptions.core import FatalPublishError, TransientIOError
from term_engine.utils.logger import safe_jsonable

IDEMPOTENCY_HEADER = "Idempotency-Key"


class InMemoryAlertSink:
    """Sink that behaves like a deduplicating downstream consumer.

    `deliveries` counts every send (duplicates included); `alerts` keeps one
    entry per idempotency key, in first-delivery order: the observable set.
    """

    def __init__(self) -> None:
        self.deliveries = 0
        self.alerts: dict[str, ViolationAlert] = {}

    async def send(self, alert: ViolationAlert) -> None:
        self.deliveries += 1
        self.alerts.setdefault(alert.idempotency_key, alert)

    @property
    def observed(self) -> list[ViolationAlert]:
        return list(self.alerts.values())


class HttpAlertSink:
    """POSTs alerts as JSON to an HTTP endpoint.

    The request runs in a worker thread (requests is blocking). Outcomes:
        - 2xx                     -> delivered
        - 408 / 429 / 5xx         -> TransientIOError
        - other 4xx               -> FatalPublishError
        - connection errors, timeouts -> TransientIOError
    """

    def __init__(
        self,
        *,
        url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
        headers: dict[str, str] | None = None,
    ):
        self._url = url
        self._timeout = float(timeout)
        self._session = session or requests.Session()
        self._headers = dict(headers or {})

    def _post(self, alert: ViolationAlert) -> None:
        headers = {
            **self._headers,
            "Content-Type": "application/json",
            IDEMPOTENCY_HEADER: alert.idempotency_key,
        }
        try:
            r = self._session.post(
                self._url,
                data=json.dumps(alert.to_wire()),
                headers=headers,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientIOError(str(exc)) from exc
        except requests.RequestException as exc:
            raise FatalPublishError(str(exc)) from exc

        code = int(r.status_code)
        if 200 <= code < 300:
            return
        if code in (408, 429) or code >= 500:
            raise TransientIOError(f"alert sink returned {code}")
        raise FatalPublishError(f"alert sink rejected alert with {code}: {r.text[:200]}")

    async def send(self, alert: ViolationAlert) -> None:
        await asyncio.to_thread(self._post, alert)

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Dead-letter sinks
# ---------------------------------------------------------------------------


class InMemoryDeadLetterSink:
    """Keeps dead-lettered entries in a list."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    async def put(self, entry: dict[str, Any]) -> None:
        self.entries.append(dict(entry))


class JsonlDeadLetterSink:
    """Appends one JSON line per dead-lettered entry."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def put(self, entry: dict[str, Any]) -> None:
        line = json.dumps(safe_jsonable(entry), ensure_ascii=False)
        async with self._lock:
            await asyncio.to_thread(self._write, line)
