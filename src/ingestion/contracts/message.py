from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from term_engine.contracts.market import MarketDataUpdate

AckFn = Callable[[], Any]
RejectFn = Callable[[str], Any]


class AckState(str, Enum):
    PENDING = "pending"
    ACKED = "acked"
    REJECTED = "rejected"


async def _maybe_await(out: Any) -> None:
    if inspect.isawaitable(out):
        await out


@dataclass
class InboundMessage:
    """
    One message from the inbound stream plus its acknowledgement handle.

    Semantics:
        - `payload` : raw broker payload (mapping-like)
        - `update`  : normalized event, set once normalization succeeded
        - `ack()`   : commit to the source; the source will not redeliver
        - `reject()`: give up on the message without committing it (the
                      broker routes it to its own dead-letter path)

    `ack`/`reject` callbacks may be sync or async. Only the first settle call
    reaches the source; later calls are no-ops.
    """

    payload: Any
    update: MarketDataUpdate | None = None
    on_ack: AckFn | None = field(default=None, repr=False)
    on_reject: RejectFn | None = field(default=None, repr=False)
    out_of_order: bool = False
    state: AckState = AckState.PENDING
    reject_reason: str | None = None

    @property
    def settled(self) -> bool:
        return self.state is not AckState.PENDING

    async def ack(self) -> bool:
        if self.settled:
            return False
        self.state = AckState.ACKED
        if self.on_ack is not None:
            await _maybe_await(self.on_ack())
        return True

    async def reject(self, reason: str) -> bool:
        if self.settled:
            return False
        self.state = AckState.REJECTED
        self.reject_reason = reason
        if self.on_reject is not None:
            await _maybe_await(self.on_reject(reason))
        return True


@runtime_checkable
class MessageSource(Protocol):
    """Inbound market-data stream: an async iterable of InboundMessage."""

    def __aiter__(self) -> Any:
        ...


class Normalizer(Protocol):
    def normalize(self, raw: Any) -> MarketDataUpdate:
        ...


MessageHandler = Callable[[InboundMessage], Awaitable[Any]]
