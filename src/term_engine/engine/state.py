from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from term_engine.contracts.decision import ViolationDecision


class EventState(str, Enum):
    """
    Per-event lifecycle.

        RECEIVED -> RESOLVED -> EVALUATED -> PUBLISHED -> ACKNOWLEDGED
        RECEIVED -> FAILED
        SKIPPED  (payload could not be normalized; never reaches RECEIVED)
    """

    RECEIVED = "received"
    RESOLVED = "resolved"
    EVALUATED = "evaluated"
    PUBLISHED = "published"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    SKIPPED = "skipped"


_NEXT: dict[EventState, set[EventState]] = {
    EventState.RECEIVED: {EventState.RESOLVED, EventState.FAILED},
    EventState.RESOLVED: {EventState.EVALUATED, EventState.FAILED},
    EventState.EVALUATED: {EventState.PUBLISHED, EventState.FAILED},
    EventState.PUBLISHED: {EventState.ACKNOWLEDGED, EventState.FAILED},
    EventState.ACKNOWLEDGED: set(),
    EventState.FAILED: set(),
    EventState.SKIPPED: set(),
}


@dataclass
class EventRecord:
    instrument: str | None
    seq: int | None
    state: EventState = EventState.RECEIVED
    snapshot_version: int | None = None
    out_of_order: bool = False
    decisions: tuple[ViolationDecision, ...] = ()
    published: list[str] = field(default_factory=list)
    unpublished: list[str] = field(default_factory=list)
    skipped_terms: tuple[str, ...] = ()
    defects: list[str] = field(default_factory=list)
    # no applicable term could be evaluated on this event's fields
    skipped: bool = False
    error: str | None = None
    history: list[EventState] = field(default_factory=lambda: [EventState.RECEIVED])

    def advance(self, to: EventState) -> None:
        if to not in _NEXT[self.state]:
            raise RuntimeError(f"illegal event transition {self.state.value} -> {to.value}")
        self.state = to
        self.history.append(to)

    @property
    def terminal(self) -> bool:
        return not _NEXT[self.state]
