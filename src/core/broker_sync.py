from __future__ import annotations

import datetime as dt
import enum
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from src.adapters.schwab.client import SchwabApiError, SchwabClient
from src.adapters.schwab.schemas import AccountResponse, CurrentBalances, Order, TokenResponse
from src.core.config import BrokerSyncConfig, load_broker_sync_config
from src.core.credential_store import get_broker_credential
from src.core.errors import (
    BrokerSyncError,
    NotLinked,
    ProviderError,
    SettingsWriteFailed,
    UpstreamFetchFailed,
    UserNotFound,
)
from src.core.ledger import ReconcileResult, reconcile_ledger
from src.core.risk_snapshot import RiskSnapshot, build_snapshots, portfolio_risk
from src.core.settings_sync import apply_account_value
from src.core.stop_orders import OrderWindow, collect_order_fetches, submit_order_fetches
from src.core.token_provider import ensure_token
from src.db.audit import log_change
from src.db.models import BrokerSyncRun, User
from src.utils.time import ensure_utc, to_epoch_ms, utcnow


log = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    START = "START"
    TOKEN_READY = "TOKEN_READY"
    POSITIONS_FETCHED = "POSITIONS_FETCHED"
    ORDERS_FETCHED = "ORDERS_FETCHED"
    SNAPSHOTS_BUILT = "SNAPSHOTS_BUILT"
    RECONCILED = "RECONCILED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    DONE = "DONE"
    FAILED = "FAILED"


class BrokerClient(Protocol):
    def refresh_access_token(self, refresh_token: str) -> TokenResponse: ...

    def get_account(self, account_hash: str, *, access_token: str) -> AccountResponse: ...

    def get_orders(
        self,
        account_hash: str,
        *,
        access_token: str,
        from_entered: dt.datetime,
        to_entered: dt.datetime,
        status: Optional[str] = None,
    ) -> list[Order]: ...


@dataclass(frozen=True)
class AccountFigures:
    liquidation_value: float
    equity: float
    cash_balance: float

    @classmethod
    def from_balances(cls, balances: CurrentBalances) -> "AccountFigures":
        # Zero or missing values fall through to the next source.
        liquidation = balances.liquidation_value or 0.0
        equity = balances.equity or liquidation
        cash = balances.cash_balance or balances.available_funds or 0.0
        return cls(liquidation_value=float(liquidation), equity=float(equity), cash_balance=float(cash))


@dataclass
class BrokerSyncResult:
    run_id: int
    user_id: str
    positions: list[RiskSnapshot]
    portfolio_risk: float
    account: AccountFigures
    synced_at: dt.datetime
    reconcile: ReconcileResult
    state: SyncState = SyncState.DONE
    warnings: list[str] = field(default_factory=list)
    settings_error: Optional[str] = None

    @property
    def saved_count(self) -> int:
        return self.reconcile.saved

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "runId": self.run_id,
            "positions": [p.to_payload() for p in self.positions],
            "portfolioRisk": self.portfolio_risk,
            "portfolioValue": self.account.liquidation_value,
            "accountEquity": self.account.equity,
            "cashBalance": self.account.cash_balance,
            "syncedAt": to_epoch_ms(self.synced_at),
            "savedCount": self.saved_count,
            "createdCount": self.reconcile.created,
            "updatedCount": self.reconcile.updated,
            "deletedCount": self.reconcile.deleted,
            "warnings": list(self.warnings),
            "settingsError": self.settings_error,
        }


def _start_run(session: Session, *, user_id: str, actor: str) -> BrokerSyncRun:
    run = BrokerSyncRun(user_id=user_id, status="ERROR", state=SyncState.START.value, coverage_json={})
    session.add(run)
    session.flush()
    log_change(
        session,
        actor=actor,
        action="BROKER_SYNC_STARTED",
        entity="BrokerSyncRun",
        entity_id=str(run.id),
        old=None,
        new={"user_id": user_id},
        note=f"Broker sync started for user={user_id}",
    )
    session.commit()
    return run


def _finish_run(
    session: Session,
    run: BrokerSyncRun,
    *,
    status: str,
    state: SyncState,
    actor: str,
    coverage: dict[str, Any],
    error: Optional[str] = None,
) -> None:
    run.status = status
    run.state = state.value
    run.finished_at = utcnow()
    run.coverage_json = coverage
    run.positions_count = int(coverage.get("positions_count") or 0)
    run.stop_orders_count = int(coverage.get("stop_orders_count") or 0)
    run.created_count = int(coverage.get("created") or 0)
    run.updated_count = int(coverage.get("updated") or 0)
    run.deleted_count = int(coverage.get("deleted") or 0)
    run.error_json = json.dumps({"error": error}) if error else None
    session.flush()
    log_change(
        session,
        actor=actor,
        action="BROKER_SYNC_FINISHED",
        entity="BrokerSyncRun",
        entity_id=str(run.id),
        old=None,
        new={"status": status, "state": state.value, "error": error},
        note=f"Broker sync finished for user={run.user_id}",
    )
    session.commit()


def run_broker_sync(
    session: Session,
    *,
    user_id: str,
    client: Optional[BrokerClient] = None,
    config: Optional[BrokerSyncConfig] = None,
    now: Optional[dt.datetime] = None,
    actor: str = "sync",
) -> BrokerSyncResult:
    """
    Synchronize one user's Schwab positions into their trade ledger.

    Order of work: token -> positions + stop orders (fetched concurrently) ->
    risk snapshots -> one atomic ledger rewrite -> account value into settings.
    Token, positions and ledger failures abort the run with a BrokerSyncError
    whose `state` is the last state reached. Order fetches are best-effort and
    a settings failure after the ledger committed is reported on the result
    (`settings_error`) without failing the run.

    Callers must not run two syncs for the same user at once.
    """
    if config is None:
        config, _ = load_broker_sync_config()
    if client is None:
        client = SchwabClient(config)
    now = ensure_utc(now or utcnow())

    if session.get(User, user_id) is None:
        raise UserNotFound("User not found", state=SyncState.START.value)

    run = _start_run(session, user_id=user_id, actor=actor)
    state = SyncState.START
    coverage: dict[str, Any] = {}
    warnings: list[str] = []
    try:
        access_token = ensure_token(session, user_id=user_id, client=client, config=config, now=now)
        cred = get_broker_credential(session, user_id=user_id)
        if cred is None or not cred.account_hash:
            raise NotLinked("Schwab account hash missing; re-link the account.")
        account_hash = cred.account_hash
        state = SyncState.TOKEN_READY

        window = OrderWindow.trailing(now, config.order_window_days)
        statuses = list(config.tracked_order_statuses)
        with ThreadPoolExecutor(max_workers=max(1, int(config.max_fetch_workers))) as pool:
            positions_future = pool.submit(client.get_account, account_hash, access_token=access_token)
            order_futures = submit_order_fetches(
                pool, client, account_hash=account_hash, access_token=access_token, window=window, statuses=statuses
            )
            try:
                account = positions_future.result()
            except SchwabApiError as e:
                raise UpstreamFetchFailed(
                    f"Failed to fetch positions: {e}",
                    status_code=e.status_code,
                    body_excerpt=e.body_excerpt,
                ) from e
            except ProviderError as e:
                raise UpstreamFetchFailed(f"Failed to fetch positions: {e}") from e
            state = SyncState.POSITIONS_FETCHED
            fetched = collect_order_fetches(order_futures, statuses=statuses, order_types=config.stop_order_types)
        state = SyncState.ORDERS_FETCHED
        if fetched.failed_statuses:
            warnings.append(
                "Orders fetch failed for status "
                + ", ".join(fetched.failed_statuses)
                + "; stops in those statuses may be missing."
            )

        positions = account.positions
        batch = build_snapshots(
            positions,
            fetched.orders,
            fallback_stop_pct=config.fallback_stop_pct,
            supported_asset_types=config.supported_asset_types,
            market=config.market,
        )
        warnings.extend(batch.warnings)
        state = SyncState.SNAPSHOTS_BUILT
        coverage.update(
            {
                "positions_count": len(positions),
                "snapshots_count": len(batch.snapshots),
                "stop_orders_count": len(fetched.orders),
                "orders_raw_count": fetched.raw_count,
                "failed_order_statuses": list(fetched.failed_statuses),
            }
        )

        reconcile = reconcile_ledger(
            session, user_id=user_id, snapshots=batch.snapshots, synced_at=now, actor=actor
        )
        state = SyncState.RECONCILED
        coverage.update({"created": reconcile.created, "updated": reconcile.updated, "deleted": reconcile.deleted})

        figures = AccountFigures.from_balances(account.balances)
        if account.balances.liquidation_value is None:
            log.warning("Schwab account for user %s reported no liquidationValue; capital set to 0", user_id)
            warnings.append("Account balances missing liquidationValue; portfolio capital set to 0.")
        settings_error: Optional[str] = None
        try:
            apply_account_value(
                session,
                user_id=user_id,
                liquidation_value=figures.liquidation_value,
                equity=figures.equity,
                cash_balance=figures.cash_balance,
                synced_at=now,
                market=config.market,
            )
            state = SyncState.SETTINGS_UPDATED
        except SettingsWriteFailed as e:
            settings_error = e.message
            warnings.append(e.message)

        coverage["warnings"] = warnings[:50]
        _finish_run(
            session,
            run,
            status="PARTIAL" if settings_error else "SUCCESS",
            state=SyncState.DONE,
            actor=actor,
            coverage=coverage,
            error=settings_error,
        )
        log.info(
            "Broker sync done for user %s: %s snapshot(s), risk %.2f, created=%s updated=%s deleted=%s",
            user_id,
            len(batch.snapshots),
            portfolio_risk(batch.snapshots),
            reconcile.created,
            reconcile.updated,
            reconcile.deleted,
        )
        return BrokerSyncResult(
            run_id=run.id,
            user_id=user_id,
            positions=list(batch.snapshots),
            portfolio_risk=portfolio_risk(batch.snapshots),
            account=figures,
            synced_at=now,
            reconcile=reconcile,
            state=SyncState.DONE,
            warnings=warnings,
            settings_error=settings_error,
        )

    except BrokerSyncError as e:
        e.state = e.state or state.value
        session.rollback()
        coverage["warnings"] = warnings[:50]
        _finish_run(session, run, status="ERROR", state=SyncState.FAILED, actor=actor, coverage=coverage, error=e.message)
        log.warning("Broker sync failed for user %s in state %s: %s", user_id, e.state, e.message)
        raise
    except Exception as e:
        session.rollback()
        message = f"Sync failed: {type(e).__name__}: {e}"
        _finish_run(session, run, status="ERROR", state=SyncState.FAILED, actor=actor, coverage=coverage, error=message)
        log.exception("Broker sync crashed for user %s in state %s", user_id, state.value)
        raise BrokerSyncError(message, state=state.value) from e
