import asyncio

import pytest

from helpers.fakes import change
from term_engine.contracts.market import MarketDataUpdate
from term_engine.contracts.term import Scope, ScopeKind, TermStatus
from term_engine.exceptions.core import RegistryUnavailable
from term_engine.registry.registry import TermRegistry


def test_snapshot_before_first_change_is_unavailable():
    reg = TermRegistry()
    assert not reg.is_ready
    with pytest.raises(RegistryUnavailable):
        reg.snapshot()
    assert reg.get_active_terms("USD-SWAP") == ()


def test_active_terms_ordered_by_id_and_unknown_scope_is_empty():
    reg = TermRegistry()
    reg.apply_changes([change("B"), change("A"), change("C", scope=Scope.instruments("EUR-SWAP"))])
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["A", "B"]
    assert [t.term_id for t in reg.get_active_terms("instrument:USD-SWAP")] == ["A", "B"]
    assert reg.get_active_terms("JPY-SWAP") == ()


def test_non_active_terms_are_not_indexed():
    reg = TermRegistry()
    reg.apply_changes([change("D", status=TermStatus.DRAFT), change("A")])
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["A"]
    assert reg.snapshot().term("D") is not None


def test_suspension_produces_new_snapshot_without_touching_old_one():
    reg = TermRegistry()
    before = reg.apply_change(change("A"))
    after = reg.apply_change(change("A", version=2, status=TermStatus.SUSPENDED))
    assert after.version == before.version + 1
    assert [t.term_id for t in before.get_active_terms("USD-SWAP")] == ["A"]
    assert after.get_active_terms("USD-SWAP") == ()


def test_stale_or_duplicate_versions_are_ignored():
    reg = TermRegistry()
    reg.apply_change(change("A", version=3))
    snap = reg.snapshot()
    assert reg.apply_change(change("A", version=3, status=TermStatus.RETIRED)) is snap
    assert reg.apply_change(change("A", version=2, status=TermStatus.RETIRED)) is snap
    assert reg.rejected_changes == 2
    assert reg.get_active_terms("USD-SWAP")[0].version == 3


def test_scope_change_moves_term_between_keys():
    reg = TermRegistry()
    reg.apply_change(change("A"))
    reg.apply_change(change("A", version=2, scope=Scope.instruments("EUR-SWAP")))
    assert reg.get_active_terms("USD-SWAP") == ()
    assert [t.version for t in reg.get_active_terms("EUR-SWAP")] == [2]
    assert "instrument:USD-SWAP" not in reg.snapshot().index


def test_terms_for_merges_account_desk_and_wildcard_scopes():
    reg = TermRegistry()
    reg.apply_changes(
        [
            change("INSTR"),
            change("ACCT", scope=Scope(kind=ScopeKind.ACCOUNT, values=frozenset({"ACC-1"}))),
            change("DESK", scope=Scope(kind=ScopeKind.DESK, values=frozenset({"RATES"}))),
            change("ALL", scope=Scope.instruments("*")),
            change("LATER", effective_from=2_000_000_000_000),
        ]
    )
    upd = MarketDataUpdate(
        instrument="USD-SWAP", seq=1, source_ts=1_700_000_000_000, fields={"rate": 9}, account="ACC-1", desk="RATES"
    )
    assert [t.term_id for t in reg.snapshot().terms_for(upd)] == ["ACCT", "ALL", "DESK", "INSTR"]


def test_empty_bootstrap_batch_publishes_first_snapshot():
    reg = TermRegistry()
    snap = reg.apply_changes([])
    assert reg.is_ready and snap.version == 1 and len(snap) == 0


def test_mark_ready_only_when_empty():
    reg = TermRegistry()
    assert reg.mark_ready().version == 0
    reg.apply_change(change("A"))
    assert reg.mark_ready().version == 1


@pytest.mark.asyncio
async def test_wait_ready_resumes_after_first_snapshot():
    reg = TermRegistry()

    async def publish_later():
        await asyncio.sleep(0.05)
        reg.apply_change(change("A"))

    task = asyncio.create_task(publish_later())
    snap = await reg.wait_ready(timeout=2.0, poll_interval=0.01)
    await task
    assert snap.version == 1


@pytest.mark.asyncio
async def test_wait_ready_times_out():
    with pytest.raises(RegistryUnavailable):
        await TermRegistry().wait_ready(timeout=0.05, poll_interval=0.01)


def test_active_terms_include_wildcard_scopes_of_the_same_kind():
    reg = TermRegistry()
    reg.apply_changes(
        [
            change("WILD", scope=Scope.instruments("*")),
            change("A"),
            change("ACCT_ALL", scope=Scope(kind=ScopeKind.ACCOUNT, values=frozenset({"*"}))),
        ]
    )
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["A", "WILD"]
    assert [t.term_id for t in reg.get_active_terms("JPY-SWAP")] == ["WILD"]
    assert [t.term_id for t in reg.get_active_terms("account:ACC-9")] == ["ACCT_ALL"]
