from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

import numpy as np
import pandas as pd

from term_engine.routing.lane import LaneHealth


def latency_percentiles(samples: Iterable[float], qs: tuple[int, ...] = (50, 90, 99)) -> dict[str, float | None]:
    arr = np.asarray(list(samples), dtype=float)
    if arr.size == 0:
        return {f"p{q}": None for q in qs}
    values = np.percentile(arr, qs)
    return {f"p{q}": round(float(v), 3) for q, v in zip(qs, values)}


@dataclass(frozen=True)
class EngineHealth:
    """Point-in-time health report for operational tooling."""

    phase: str
    registry_ready: bool
    snapshot_version: int | None
    lanes: tuple[LaneHealth, ...]
    counters: dict[str, int]
    publisher: dict[str, int]
    resequencer: dict[str, int]
    publish_latency_ms: dict[str, float | None] = field(default_factory=dict)

    @property
    def max_lag_ms(self) -> float:
        return max((lane.lag_ms for lane in self.lanes), default=0.0)

    @property
    def budget_exhausted(self) -> int:
        return int(self.counters.get("budget_exhausted", 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "registry_ready": self.registry_ready,
            "snapshot_version": self.snapshot_version,
            "max_lag_ms": self.max_lag_ms,
            "lanes": [asdict(lane) for lane in self.lanes],
            "counters": dict(self.counters),
            "publisher": dict(self.publisher),
            "resequencer": dict(self.resequencer),
            "publish_latency_ms": dict(self.publish_latency_ms),
        }

    def lanes_frame(self) -> pd.DataFrame:
        """Per-lane view, one row per lane, indexed by lane_id."""
        rows = [asdict(lane) for lane in self.lanes]
        if not rows:
            return pd.DataFrame(columns=[f for f in LaneHealth.__dataclass_fields__]).set_index("lane_id")
        return pd.DataFrame(rows).set_index("lane_id").sort_index()
