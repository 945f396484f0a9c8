from __future__ import annotations

from enum import Enum


class RuntimePhase(Enum):
    INIT = "init"
    BOOTSTRAP = "bootstrap"          # waiting for the first term snapshot
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_ALLOWED: dict[RuntimePhase, set[RuntimePhase]] = {
    RuntimePhase.INIT: {RuntimePhase.BOOTSTRAP, RuntimePhase.STOPPED},
    RuntimePhase.BOOTSTRAP: {RuntimePhase.RUNNING, RuntimePhase.DRAINING, RuntimePhase.STOPPED},
    RuntimePhase.RUNNING: {RuntimePhase.DRAINING, RuntimePhase.STOPPED},
    RuntimePhase.DRAINING: {RuntimePhase.STOPPED},
    RuntimePhase.STOPPED: set(),
}


class LifecycleGuard:
    """Enforces INIT -> BOOTSTRAP -> RUNNING -> DRAINING -> STOPPED."""

    def __init__(self) -> None:
        self.phase = RuntimePhase.INIT

    def enter(self, phase: RuntimePhase) -> None:
        if phase is self.phase:
            return
        if phase not in _ALLOWED[self.phase]:
            raise RuntimeError(f"illegal runtime transition {self.phase.value} -> {phase.value}")
        self.phase = phase
