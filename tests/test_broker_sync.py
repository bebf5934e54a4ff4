from __future__ import annotations

import pytest

from schwab_fakes import NOW, FakeSchwabClient, account, order, position, seed_linked_user
from src.adapters.schwab.client import SchwabApiError
from src.core.broker_sync import SyncState, run_broker_sync
from src.core.config import BrokerSyncConfig
from src.core.errors import (
    AuthExpired,
    BrokerSyncError,
    ReconcileWriteFailed,
    SettingsWriteFailed,
    UpstreamFetchFailed,
    UserNotFound,
)
from src.core.ledger import load_synced_trades
from src.db.models import AuditLog, BrokerSyncRun, PortfolioPreference, Trade


def _client(**kw) -> FakeSchwabClient:
    acct = account(
        [
            position("AAPL", long_qty=100, avg=185.0, market_value=18_700.0),
            position("TSLA", short_qty=50, avg=240.0, market_value=-11_500.0),
            position("SPY 250321C500", long_qty=2, avg=4.0, market_value=900.0, asset_type="OPTION"),
        ],
        {"liquidationValue": 52_000.0, "availableFunds": 800.0},
    )
    kw.setdefault("account", acct)
    kw.setdefault(
        "orders_by_status",
        {
            "AWAITING_STOP_CONDITION": [
                order(1, "AAPL", instruction="SELL", stop_price=182.0, status="AWAITING_STOP_CONDITION")
            ],
            "WORKING": [order(2, "AAPL", instruction="SELL", order_type="LIMIT", status="WORKING")],
        },
    )
    return FakeSchwabClient(**kw)


def _sync(session, client, **kw):
    return run_broker_sync(session, user_id="u1", client=client, config=BrokerSyncConfig(), now=NOW, **kw)


def test_full_sync_writes_ledger_settings_and_run(session, secret_key) -> None:
    seed_linked_user(session)
    result = _sync(session, _client())

    assert result.state == SyncState.DONE
    assert [s.key for s in result.positions] == [("AAPL", "long"), ("TSLA", "short"), ("SPY 250321C500", "long")]
    assert result.portfolio_risk == pytest.approx(300.0 + 600.0)
    assert result.account.liquidation_value == 52_000.0
    assert result.account.equity == 52_000.0
    assert result.account.cash_balance == 800.0
    assert (result.reconcile.created, result.reconcile.updated, result.reconcile.deleted) == (3, 0, 0)
    assert result.saved_count == 3
    assert result.settings_error is None

    keys = {(t.symbol, t.direction) for t in load_synced_trades(session, user_id="u1")}
    assert keys == {("AAPL", "long"), ("TSLA", "short"), ("SPY 250321C500", "long")}

    pref = session.query(PortfolioPreference).filter(PortfolioPreference.user_id == "u1").one()
    assert pref.capital == 52_000.0

    run = session.query(BrokerSyncRun).one()
    assert run.id == result.run_id
    assert run.status == "SUCCESS"
    assert run.state == "DONE"
    assert run.created_count == 3
    assert run.stop_orders_count == 1
    actions = [a.action for a in session.query(AuditLog).order_by(AuditLog.id).all()]
    assert actions[0] == "BROKER_SYNC_STARTED"
    assert actions[-1] == "BROKER_SYNC_FINISHED"
    assert "LEDGER_RECONCILED" in actions

    payload = result.to_payload()
    assert payload["success"] is True
    assert payload["savedCount"] == 3
    assert payload["portfolioValue"] == 52_000.0
    assert payload["positions"][0]["hasWorkingStop"] is True


def test_second_run_updates_in_place(session, secret_key) -> None:
    seed_linked_user(session)
    _sync(session, _client())
    ids = {t.id for t in load_synced_trades(session, user_id="u1")}

    result = _sync(session, _client())
    assert (result.reconcile.created, result.reconcile.updated, result.reconcile.deleted) == (0, 3, 0)
    assert {t.id for t in load_synced_trades(session, user_id="u1")} == ids


def test_stale_link_fails_before_positions_fetch(session, secret_key) -> None:
    seed_linked_user(session, linked_days_ago=8)
    client = _client()
    with pytest.raises(AuthExpired) as e:
        _sync(session, client)
    assert e.value.state == "START"
    assert client.calls == []
    assert session.query(Trade).count() == 0

    run = session.query(BrokerSyncRun).one()
    assert run.status == "ERROR"
    assert run.state == "FAILED"
    assert "Refresh token expired" in run.error_json


def test_positions_failure_leaves_ledger_untouched(session, secret_key) -> None:
    seed_linked_user(session)
    _sync(session, _client())
    before = {(t.symbol, t.direction) for t in load_synced_trades(session, user_id="u1")}

    client = _client(account_error=SchwabApiError("Schwab request failed (503)", status_code=503, body_excerpt="down"))
    with pytest.raises(UpstreamFetchFailed) as e:
        _sync(session, client)

    assert e.value.http_status == 502
    assert e.value.state == "TOKEN_READY"
    assert e.value.to_dict()["upstreamStatus"] == 503
    assert e.value.body_excerpt == "down"
    assert {(t.symbol, t.direction) for t in load_synced_trades(session, user_id="u1")} == before


def test_failed_order_status_is_only_a_warning(session, secret_key) -> None:
    seed_linked_user(session)
    result = _sync(session, _client(failing_statuses=("QUEUED",)))
    assert any("QUEUED" in w for w in result.warnings)
    assert session.query(BrokerSyncRun).one().status == "SUCCESS"


def test_settings_failure_after_ledger_commit_is_partial(session, secret_key, monkeypatch: pytest.MonkeyPatch) -> None:
    seed_linked_user(session)

    def _fail(*args, **kwargs):
        raise SettingsWriteFailed("Settings write failed: OperationalError: locked")

    monkeypatch.setattr("src.core.broker_sync.apply_account_value", _fail)
    result = _sync(session, _client())

    assert result.settings_error == "Settings write failed: OperationalError: locked"
    assert result.to_payload()["success"] is True
    assert result.saved_count == 3
    assert len(load_synced_trades(session, user_id="u1")) == 3
    run = session.query(BrokerSyncRun).one()
    assert run.status == "PARTIAL"
    assert "locked" in run.error_json


def test_reconcile_failure_reports_state(session, secret_key, monkeypatch: pytest.MonkeyPatch) -> None:
    seed_linked_user(session)

    def _fail(*args, **kwargs):
        raise ReconcileWriteFailed("Ledger write failed: RuntimeError: boom")

    monkeypatch.setattr("src.core.broker_sync.reconcile_ledger", _fail)
    with pytest.raises(ReconcileWriteFailed) as e:
        _sync(session, _client())
    assert e.value.state == "SNAPSHOTS_BUILT"
    assert session.query(PortfolioPreference).count() == 0


def test_unexpected_error_is_wrapped(session, secret_key, monkeypatch: pytest.MonkeyPatch) -> None:
    seed_linked_user(session)

    def _explode(*args, **kwargs):
        raise KeyError("boom")

    monkeypatch.setattr("src.core.broker_sync.build_snapshots", _explode)
    with pytest.raises(BrokerSyncError) as e:
        _sync(session, _client())
    assert e.value.state == "ORDERS_FETCHED"
    assert session.query(BrokerSyncRun).one().status == "ERROR"


def test_unknown_user(session) -> None:
    with pytest.raises(UserNotFound) as e:
        run_broker_sync(session, user_id="nobody", client=FakeSchwabClient(), config=BrokerSyncConfig(), now=NOW)
    assert e.value.http_status == 404
    assert session.query(BrokerSyncRun).count() == 0


def test_account_payload_without_account_keeps_ledger(session, secret_key, monkeypatch: pytest.MonkeyPatch) -> None:
    import src.adapters.schwab.client as client_mod
    from src.adapters.schwab.client import SchwabClient
    from src.core.net import HttpResponse

    seed_linked_user(session)
    _sync(session, _client())
    before = {(t.symbol, t.direction) for t in load_synced_trades(session, user_id="u1")}
    assert before

    def fake_http_request(url, **kwargs):
        body = b"[]" if "/orders" in url else b"{}"
        return HttpResponse(status_code=200, content=body, content_type="application/json")

    monkeypatch.setenv("NETWORK_ENABLED", "1")
    monkeypatch.delenv("ALLOWED_OUTBOUND_HOSTS", raising=False)
    monkeypatch.setattr(client_mod, "http_request", fake_http_request)

    with pytest.raises(UpstreamFetchFailed) as e:
        _sync(session, SchwabClient(BrokerSyncConfig(client_id="cid", client_secret="cs")))

    assert e.value.http_status == 502
    assert e.value.state == "TOKEN_READY"
    assert "securitiesAccount missing" in e.value.message
    assert {(t.symbol, t.direction) for t in load_synced_trades(session, user_id="u1")} == before
    last_run = session.query(BrokerSyncRun).order_by(BrokerSyncRun.id.desc()).first()
    assert last_run.status == "ERROR"


def test_missing_liquidation_value_is_warned(session, secret_key) -> None:
    seed_linked_user(session)
    result = _sync(session, _client(account=account([position("AAPL", long_qty=1, avg=10.0)])))
    assert result.account.liquidation_value == 0.0
    assert any("liquidationValue" in w for w in result.warnings)
    assert session.query(PortfolioPreference).one().capital == 0.0
