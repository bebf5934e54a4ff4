from __future__ import annotations

import datetime as dt

import pytest

from schwab_fakes import NOW, order, position
from src.core.errors import ReconcileWriteFailed
from src.core.ledger import SYNCED_SETUP_LABEL, load_synced_trades, plan_reconciliation, reconcile_ledger
from src.core.risk_snapshot import build_snapshots
from src.db.models import AuditLog, Trade, User


def _snapshots(*positions, orders=()):
    return build_snapshots(list(positions), list(orders)).snapshots


def _keys(session, user_id="u1") -> set[tuple[str, str]]:
    return {(t.symbol, t.direction) for t in load_synced_trades(session, user_id=user_id)}


@pytest.fixture()
def user(session) -> User:
    u = User(id="u1")
    session.add(u)
    session.commit()
    return u


def test_plan_reconciliation_is_a_full_replace_diff() -> None:
    plan = plan_reconciliation(
        {("AAPL", "long"), ("MSFT", "long")},
        {("AAPL", "long"), ("TSLA", "short")},
    )
    assert plan.update == {("AAPL", "long")}
    assert plan.create == {("TSLA", "short")}
    assert plan.delete == {("MSFT", "long")}


def test_create_update_delete_against_persisted_keys(session, user) -> None:
    first = _snapshots(position("AAPL", long_qty=100, avg=185.0), position("MSFT", long_qty=10, avg=400.0))
    reconcile_ledger(session, user_id="u1", snapshots=first, synced_at=NOW)
    aapl_id = next(t.id for t in load_synced_trades(session, user_id="u1") if t.symbol == "AAPL")

    later = NOW + dt.timedelta(hours=1)
    second = _snapshots(
        position("AAPL", long_qty=120, avg=186.0),
        position("TSLA", short_qty=50, avg=240.0),
        orders=[order(1, "AAPL", stop_price=182.0)],
    )
    result = reconcile_ledger(session, user_id="u1", snapshots=second, synced_at=later)

    assert (result.created, result.updated, result.deleted) == (1, 1, 1)
    assert result.saved == 2
    assert _keys(session) == {("AAPL", "long"), ("TSLA", "short")}

    aapl = session.get(Trade, aapl_id)
    assert aapl.position_size == 120
    assert aapl.stop == 182.0
    assert aapl.has_working_stop is True
    assert aapl.created_at == NOW
    assert aapl.last_synced_at == later
    assert aapl.setup == SYNCED_SETUP_LABEL
    assert aapl.contracts_json[0]["shares"] == 120
    assert aapl.contracts_json[0]["id"].startswith("schwab-AAPL-")


def test_reconcile_is_idempotent(session, user) -> None:
    snaps = _snapshots(position("AAPL", long_qty=100, avg=185.0), position("TSLA", short_qty=50, avg=240.0))
    reconcile_ledger(session, user_id="u1", snapshots=snaps, synced_at=NOW)
    before = {(t.id, t.symbol, t.direction, t.risk_amount) for t in load_synced_trades(session, user_id="u1")}

    result = reconcile_ledger(session, user_id="u1", snapshots=snaps, synced_at=NOW)
    after = {(t.id, t.symbol, t.direction, t.risk_amount) for t in load_synced_trades(session, user_id="u1")}

    assert (result.created, result.updated, result.deleted) == (0, 2, 0)
    assert before == after


def test_empty_snapshot_set_deletes_all_synced_rows(session, user) -> None:
    reconcile_ledger(session, user_id="u1", snapshots=_snapshots(position("AAPL", long_qty=1, avg=1.0)), synced_at=NOW)
    result = reconcile_ledger(session, user_id="u1", snapshots=[], synced_at=NOW)
    assert result.deleted == 1
    assert _keys(session) == set()


def test_manual_and_closed_rows_are_never_touched(session, user) -> None:
    manual = Trade(
        user_id="u1", date=NOW.date(), symbol="AAPL", direction="long", entry=10.0, stop=9.0,
        position_size=5, risk_amount=5.0, synced_from_broker=False,
    )
    closed = Trade(
        user_id="u1", date=NOW.date(), symbol="MSFT", direction="long", status="CLOSED", entry=10.0, stop=9.0,
        position_size=5, risk_amount=5.0, synced_from_broker=True,
    )
    other_user = Trade(
        user_id="u2", date=NOW.date(), symbol="NVDA", direction="long", entry=10.0, stop=9.0,
        position_size=5, risk_amount=5.0, synced_from_broker=True,
    )
    session.add_all([manual, closed, other_user])
    session.commit()

    reconcile_ledger(session, user_id="u1", snapshots=[], synced_at=NOW)
    assert session.query(Trade).count() == 3


def test_duplicate_keys_collapse(session, user) -> None:
    for size in (1, 2):
        session.add(
            Trade(
                user_id="u1", date=NOW.date(), symbol="AAPL", direction="long", entry=10.0, stop=9.0,
                position_size=size, risk_amount=float(size), synced_from_broker=True,
            )
        )
    session.commit()

    snaps = _snapshots(position("AAPL", long_qty=7, avg=10.0), position("AAPL", long_qty=9, avg=10.0))
    result = reconcile_ledger(session, user_id="u1", snapshots=snaps, synced_at=NOW)

    rows = load_synced_trades(session, user_id="u1")
    assert len(rows) == 1
    assert rows[0].position_size == 9
    assert (result.created, result.updated, result.deleted) == (0, 1, 1)


def test_failed_commit_leaves_ledger_unchanged(session, user, monkeypatch: pytest.MonkeyPatch) -> None:
    reconcile_ledger(
        session,
        user_id="u1",
        snapshots=_snapshots(position("AAPL", long_qty=100, avg=185.0), position("MSFT", long_qty=10, avg=400.0)),
        synced_at=NOW,
    )
    before = {(t.symbol, t.direction, t.position_size) for t in load_synced_trades(session, user_id="u1")}
    audits_before = session.query(AuditLog).count()

    def _boom() -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(session, "commit", _boom)
    with pytest.raises(ReconcileWriteFailed) as e:
        reconcile_ledger(
            session,
            user_id="u1",
            snapshots=_snapshots(position("AAPL", long_qty=1, avg=185.0), position("TSLA", short_qty=50, avg=240.0)),
            synced_at=NOW,
        )
    monkeypatch.undo()

    assert "disk full" in e.value.message
    assert e.value.http_status == 500
    after = {(t.symbol, t.direction, t.position_size) for t in load_synced_trades(session, user_id="u1")}
    assert after == before
    assert session.query(AuditLog).count() == audits_before


def test_reconcile_writes_audit_summary(session, user) -> None:
    reconcile_ledger(session, user_id="u1", snapshots=_snapshots(position("AAPL", long_qty=1, avg=1.0)), synced_at=NOW)
    entry = session.query(AuditLog).filter(AuditLog.action == "LEDGER_RECONCILED").one()
    assert entry.new_json["created"] == 1
    assert entry.new_json["keys"] == ["AAPL-long"]
