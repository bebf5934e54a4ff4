from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy.orm import Session

from src.core.credential_store import get_broker_credential
from src.core.errors import SettingsWriteFailed
from src.db.models import PortfolioPreference
from src.utils.time import utcnow


log = logging.getLogger(__name__)


def apply_account_value(
    session: Session,
    *,
    user_id: str,
    liquidation_value: float,
    equity: float,
    cash_balance: float,
    synced_at: dt.datetime,
    market: str = "US",
) -> None:
    """
    Push the broker's account figures into the user's settings.

    The credential's cached value/equity/cash are merged (tokens and account ids
    untouched) and the portfolio capital for `market` is overwritten with the
    liquidation value, so the broker stays the source of truth for that market
    even if the user edited it by hand. Other markets are left alone.
    """
    try:
        cred = get_broker_credential(session, user_id=user_id)
        if cred is not None:
            cred.account_value = float(liquidation_value)
            cred.account_equity = float(equity)
            cred.cash_balance = float(cash_balance)
            cred.last_synced_at = synced_at

        pref = (
            session.query(PortfolioPreference)
            .filter(PortfolioPreference.user_id == user_id, PortfolioPreference.market == market)
            .one_or_none()
        )
        if pref is None:
            pref = PortfolioPreference(user_id=user_id, market=market, capital=float(liquidation_value))
            session.add(pref)
        pref.capital = float(liquidation_value)
        pref.broker_linked = True
        pref.last_synced_at = synced_at
        pref.updated_at = utcnow()
        session.commit()
    except Exception as e:
        session.rollback()
        log.error("Settings update for user %s failed: %s: %s", user_id, type(e).__name__, e)
        raise SettingsWriteFailed(f"Settings write failed: {type(e).__name__}: {e}") from e
