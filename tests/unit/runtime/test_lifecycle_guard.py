import pytest

from term_engine.runtime.lifecycle import LifecycleGuard, RuntimePhase


def test_forward_only_transitions():
    g = LifecycleGuard()
    assert g.phase is RuntimePhase.INIT
    for p in (RuntimePhase.BOOTSTRAP, RuntimePhase.RUNNING, RuntimePhase.DRAINING, RuntimePhase.STOPPED):
        g.enter(p)
    assert g.phase is RuntimePhase.STOPPED
    with pytest.raises(RuntimeError):
        g.enter(RuntimePhase.RUNNING)


def test_reentering_current_phase_is_a_no_op():
    g = LifecycleGuard()
    g.enter(RuntimePhase.BOOTSTRAP)
    g.enter(RuntimePhase.BOOTSTRAP)
    assert g.phase is RuntimePhase.BOOTSTRAP


def test_running_requires_bootstrap():
    with pytest.raises(RuntimeError):
        LifecycleGuard().enter(RuntimePhase.RUNNING)
