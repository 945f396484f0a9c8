from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

import pandas as pd

from ingestion.contracts.message import AckFn, InboundMessage, RejectFn


"""Inbound market-data sources.

Sources yield `InboundMessage` objects carrying the *raw* payload; the driver
normalizes them. A source never acknowledges on its own: commit happens only
when the engine calls `message.ack()` after publishing.
"""

_SENTINEL = object()


class QueueMarketDataSource:
    """Async source fed by a broker client through an asyncio queue.

    The broker client calls `put(payload, on_ack=..., on_reject=...)` with the
    callbacks that commit/reject the underlying offset; `close()` ends the
    stream after queued messages are consumed.
    """

    def __init__(self, *, maxsize: int = 0):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def put(
        self,
        payload: Any,
        *,
        on_ack: AckFn | None = None,
        on_reject: RejectFn | None = None,
    ) -> InboundMessage:
        if self._closed:
            raise RuntimeError("source is closed")
        msg = InboundMessage(payload=payload, on_ack=on_ack, on_reject=on_reject)
        await self._queue.put(msg)
        return msg

    def put_nowait(self, payload: Any, *, on_ack: AckFn | None = None, on_reject: RejectFn | None = None) -> InboundMessage:
        if self._closed:
            raise RuntimeError("source is closed")
        msg = InboundMessage(payload=payload, on_ack=on_ack, on_reject=on_reject)
        self._queue.put_nowait(msg)
        return msg

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_SENTINEL)

    def qsize(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[InboundMessage]:
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                return
            yield item


class ReplayMarketDataSource:
    """Replays recorded market data from a DataFrame, parquet or CSV file.

    Each row becomes one message. Columns other than instrument/seq/timestamp
    are rule fields; NaN cells are dropped so a missing field stays missing.
    Acknowledged and rejected rows are recorded for inspection.

    poll_interval_ms is replay pacing only (IO cadence), not event time.
    """

    def __init__(
        self,
        data: pd.DataFrame | str | Path | Iterable[Mapping[str, Any]],
        *,
        sort: bool = False,
        poll_interval_ms: int = 0,
        stop_event: threading.Event | None = None,
    ):
        self._frame = _load_frame(data)
        if sort and not self._frame.empty:
            keys = [c for c in ("instrument", "seq") if c in self._frame.columns]
            if keys:
                self._frame = self._frame.sort_values(keys, kind="stable").reset_index(drop=True)
        if poll_interval_ms < 0:
            raise ValueError("poll_interval_ms must be >= 0")
        self._poll_interval_ms = int(poll_interval_ms)
        self._stop_event = stop_event
        self.acked: list[int] = []
        self.rejected: list[tuple[int, str]] = []

    def __len__(self) -> int:
        return len(self._frame)

    def _row_payload(self, row: Mapping[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in row.items():
            if v is None:
                continue
            try:
                if pd.isna(v):
                    continue
            except (TypeError, ValueError):
                pass
            out[str(k)] = v.item() if hasattr(v, "item") else v
        return out

    async def __aiter__(self) -> AsyncIterator[InboundMessage]:
        for pos, row in enumerate(self._frame.to_dict(orient="records")):
            if self._stop_event is not None and self._stop_event.is_set():
                return
            yield InboundMessage(
                payload=self._row_payload(row),
                on_ack=lambda pos=pos: self.acked.append(pos),
                on_reject=lambda reason, pos=pos: self.rejected.append((pos, reason)),
            )
            if self._poll_interval_ms > 0:
                await asyncio.sleep(self._poll_interval_ms / 1000.0)
            else:
                await asyncio.sleep(0)


def _load_frame(data: pd.DataFrame | str | Path | Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    if isinstance(data, pd.DataFrame):
        return data.copy()
    if isinstance(data, (str, Path)):
        path = Path(data)
        if path.suffix == ".parquet":
            return pd.read_parquet(path)
        if path.suffix in (".csv", ".txt"):
            return pd.read_csv(path)
        if path.suffix in (".jsonl", ".ndjson"):
            return pd.read_json(path, lines=True)
        raise ValueError(f"unsupported replay file type: {path.suffix!r}")
    return pd.DataFrame.from_records(list(data))
