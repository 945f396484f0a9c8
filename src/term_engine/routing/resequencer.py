from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ingestion.contracts.message import InboundMessage
from term_engine.utils.logger import get_logger, log_data_integrity


@dataclass
class _KeyState:
    last_released: int
    # seq -> messages (a redelivered duplicate shares its slot)
    buffer: dict[int, list[InboundMessage]] = field(default_factory=dict)
    # seq -> monotonic ms when first buffered
    held_since: dict[int, float] = field(default_factory=dict)

    def buffered(self) -> int:
        return sum(len(v) for v in self.buffer.values())


class Resequencer:
    """
    Per-key reordering buffer with a bounded window.

    Sequence numbers are expected to be contiguous per key; the first event
    seen for a key sets the baseline.

    Release rules:
        - seq == last + 1          -> released, then any contiguous buffered run
        - seq >  last + 1          -> buffered until the gap fills
        - seq <= last              -> released at once, flagged out_of_order
        - buffer above `window`    -> lowest buffered seqs released past the gap
        - held longer than max_hold (see `expire`) -> same as overflow

    Everything released for a key is in non-decreasing seq order except the
    flagged out-of-order events.
    """

    def __init__(self, window: int):
        if window < 0:
            raise ValueError("window must be >= 0")
        self._window = int(window)
        self._keys: dict[str, _KeyState] = {}
        self._logger = get_logger(__name__)
        self.out_of_order = 0
        self.gaps_skipped = 0

    @property
    def window(self) -> int:
        return self._window

    def buffered(self, key: str | None = None) -> int:
        if key is not None:
            st = self._keys.get(key)
            return 0 if st is None else st.buffered()
        return sum(st.buffered() for st in self._keys.values())

    def last_released(self, key: str) -> int | None:
        st = self._keys.get(key)
        return None if st is None else st.last_released

    def accept(self, msg: InboundMessage, *, now_ms: float = 0.0) -> list[InboundMessage]:
        update = msg.update
        if update is None:
            raise ValueError("message must be normalized before resequencing")
        key = update.partition_key
        seq = int(update.seq)

        st = self._keys.get(key)
        if st is None:
            self._keys[key] = _KeyState(last_released=seq)
            return [msg]

        if seq <= st.last_released:
            msg.out_of_order = True
            self.out_of_order += 1
            log_data_integrity(
                self._logger,
                "router.out_of_order",
                instrument=key,
                seq=seq,
                last_released=st.last_released,
            )
            return [msg]

        if seq == st.last_released + 1:
            st.last_released = seq
            return [msg] + self._drain_contiguous(st)

        if self._window == 0:
            self._skip_gap(key, st, seq)
            st.last_released = seq
            return [msg]

        st.buffer.setdefault(seq, []).append(msg)
        st.held_since.setdefault(seq, now_ms)
        released: list[InboundMessage] = []
        while st.buffered() > self._window:
            released.extend(self._release_lowest(key, st))
        return released

    def expire(self, *, now_ms: float, max_hold_ms: float) -> list[InboundMessage]:
        """Release past the gap for keys whose oldest buffered entry is too old."""
        if max_hold_ms <= 0:
            return []
        released: list[InboundMessage] = []
        for key, st in self._keys.items():
            while st.buffer:
                lowest = min(st.buffer)
                if now_ms - st.held_since.get(lowest, now_ms) < max_hold_ms:
                    break
                released.extend(self._release_lowest(key, st))
        return released

    def flush(self, key: str | None = None) -> list[InboundMessage]:
        """Release everything buffered, in seq order per key."""
        keys: Iterable[str] = [key] if key is not None else list(self._keys)
        released: list[InboundMessage] = []
        for k in keys:
            st = self._keys.get(k)
            if st is None:
                continue
            while st.buffer:
                released.extend(self._release_lowest(k, st))
        return released

    # ------------------------------------------------------------------

    def _release_lowest(self, key: str, st: _KeyState) -> list[InboundMessage]:
        lowest = min(st.buffer)
        if lowest > st.last_released + 1:
            self._skip_gap(key, st, lowest)
        msgs = st.buffer.pop(lowest)
        st.held_since.pop(lowest, None)
        st.last_released = max(st.last_released, lowest)
        return msgs + self._drain_contiguous(st)

    def _drain_contiguous(self, st: _KeyState) -> list[InboundMessage]:
        out: list[InboundMessage] = []
        while st.last_released + 1 in st.buffer:
            nxt = st.last_released + 1
            out.extend(st.buffer.pop(nxt))
            st.held_since.pop(nxt, None)
            st.last_released = nxt
        return out

    def _skip_gap(self, key: str, st: _KeyState, seq: int) -> None:
        self.gaps_skipped += 1
        log_data_integrity(
            self._logger,
            "router.gap_skipped",
            instrument=key,
            expected_seq=st.last_released + 1,
            seq=seq,
            missing=seq - st.last_released - 1,
        )
