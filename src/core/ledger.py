from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from src.core.errors import ReconcileWriteFailed
from src.core.risk_snapshot import RiskSnapshot
from src.db.audit import log_change
from src.db.models import Trade
from src.utils.time import ensure_utc, to_epoch_ms, utcnow


log = logging.getLogger(__name__)

SYNCED_SETUP_LABEL = "Synced from Schwab"

TradeKey = tuple[str, str]


@dataclass(frozen=True)
class ReconcilePlan:
    create: frozenset[TradeKey]
    update: frozenset[TradeKey]
    delete: frozenset[TradeKey]


@dataclass(frozen=True)
class ReconcileResult:
    created: int
    updated: int
    deleted: int

    @property
    def saved(self) -> int:
        return self.created + self.updated


def plan_reconciliation(existing_keys: Iterable[TradeKey], snapshot_keys: Iterable[TradeKey]) -> ReconcilePlan:
    """Full-replace diff of the persisted key set against the current broker key set."""
    old = set(existing_keys)
    new = set(snapshot_keys)
    return ReconcilePlan(create=frozenset(new - old), update=frozenset(new & old), delete=frozenset(old - new))


def load_synced_trades(session: Session, *, user_id: str) -> list[Trade]:
    return (
        session.query(Trade)
        .filter(Trade.user_id == user_id, Trade.synced_from_broker.is_(True), Trade.status == "ACTIVE")
        .order_by(Trade.id.asc())
        .all()
    )


def _contracts_for(snap: RiskSnapshot, synced_at: dt.datetime) -> list[dict[str, Any]]:
    ms = to_epoch_ms(synced_at)
    return [
        {
            "id": f"schwab-{snap.symbol}-{ms}",
            "entryPrice": snap.entry,
            "shares": snap.position_size,
            "riskAmount": snap.risk_amount,
            "createdAt": ms,
        }
    ]


def trade_fields(snap: RiskSnapshot, synced_at: dt.datetime) -> dict[str, Any]:
    """Column values a synced ledger row takes from one snapshot."""
    return {
        "date": synced_at.date(),
        "symbol": snap.symbol,
        "direction": snap.direction,
        "status": "ACTIVE",
        "setup": SYNCED_SETUP_LABEL,
        "entry": snap.entry,
        "stop": snap.stop,
        "target": None,
        "risk_percent": 0.0,
        "position_size": snap.position_size,
        "risk_amount": snap.risk_amount,
        "rr_ratio": None,
        "contracts_json": _contracts_for(snap, synced_at),
        "market": snap.market,
        "instrument_type": snap.instrument_type,
        "is_supported": snap.is_supported,
        "synced_from_broker": True,
        "has_working_stop": snap.has_working_stop,
        "current_price": snap.current_price,
        "last_synced_at": synced_at,
    }


def reconcile_ledger(
    session: Session,
    *,
    user_id: str,
    snapshots: Iterable[RiskSnapshot],
    synced_at: Optional[dt.datetime] = None,
    actor: str = "sync",
) -> ReconcileResult:
    """
    Make the user's synced ACTIVE trades match `snapshots` exactly, keyed by
    (symbol, direction): create missing keys, update matching rows in place,
    delete rows whose key the broker no longer reports.

    Everything is committed as one transaction. On failure the transaction is
    rolled back and ReconcileWriteFailed is raised, leaving the ledger as it was.
    The snapshot set must be complete; a partial set deletes live positions.
    """
    synced_at = ensure_utc(synced_at or utcnow())
    by_key: dict[TradeKey, RiskSnapshot] = {}
    for snap in snapshots:
        # Duplicate keys collapse to the last snapshot seen.
        by_key[snap.key] = snap

    try:
        rows = load_synced_trades(session, user_id=user_id)
        rows_by_key: dict[TradeKey, Trade] = {}
        duplicates: list[Trade] = []
        for row in rows:
            k = (row.symbol, row.direction)
            if k in rows_by_key:
                duplicates.append(row)
            else:
                rows_by_key[k] = row

        plan = plan_reconciliation(rows_by_key.keys(), by_key.keys())

        for k in sorted(plan.create):
            session.add(Trade(user_id=user_id, created_at=synced_at, **trade_fields(by_key[k], synced_at)))
        for k in sorted(plan.update):
            row = rows_by_key[k]
            for attr, value in trade_fields(by_key[k], synced_at).items():
                setattr(row, attr, value)
        for k in sorted(plan.delete):
            session.delete(rows_by_key[k])
        for row in duplicates:
            session.delete(row)

        result = ReconcileResult(
            created=len(plan.create),
            updated=len(plan.update),
            deleted=len(plan.delete) + len(duplicates),
        )
        log_change(
            session,
            actor=actor,
            action="LEDGER_RECONCILED",
            entity="Trade",
            entity_id=None,
            old={"keys": sorted(f"{s}-{d}" for s, d in rows_by_key)},
            new={
                "keys": sorted(f"{s}-{d}" for s, d in by_key),
                "created": result.created,
                "updated": result.updated,
                "deleted": result.deleted,
            },
            note=f"Broker sync ledger rewrite for user={user_id}",
        )
        session.flush()
        session.commit()
    except Exception as e:
        session.rollback()
        log.error("Ledger batch for user %s rolled back: %s: %s", user_id, type(e).__name__, e)
        raise ReconcileWriteFailed(f"Ledger write failed: {type(e).__name__}: {e}") from e

    log.info(
        "Ledger reconciled for user %s: created=%s updated=%s deleted=%s",
        user_id,
        result.created,
        result.updated,
        result.deleted,
    )
    return result
