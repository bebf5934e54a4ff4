from __future__ import annotations

import datetime as dt
import logging
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from src.adapters.schwab.schemas import TokenResponse
from src.core.config import BrokerSyncConfig
from src.core.credential_store import get_broker_credential, mask_secret, read_tokens, store_refreshed_tokens
from src.core.errors import AuthExpired, CredentialError, NotLinked, ProviderError
from src.db.audit import log_change
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)


class TokenRefresher(Protocol):
    def refresh_access_token(self, refresh_token: str) -> TokenResponse: ...


def refresh_token_expired(linked_at: Optional[dt.datetime], *, now: dt.datetime, max_age_days: int) -> bool:
    if linked_at is None:
        return True
    return ensure_utc(linked_at) < now - dt.timedelta(days=max_age_days)


def ensure_token(
    session: Session,
    *,
    user_id: str,
    client: TokenRefresher,
    config: BrokerSyncConfig,
    now: Optional[dt.datetime] = None,
) -> str:
    """
    Return a bearer token for the user's linked Schwab account.

    The cached access token is reused while it has more than `refresh_margin_s`
    left. Otherwise the refresh token is exchanged and the new pair is committed
    before returning. A refresh token older than `refresh_token_max_age_days`
    (counted from `linked_at`) is dead at Schwab, so it fails with AuthExpired
    without calling out.
    """
    now = ensure_utc(now or utcnow())
    cred = get_broker_credential(session, user_id=user_id)
    if cred is None or not cred.access_token_encrypted:
        raise NotLinked()

    if refresh_token_expired(cred.linked_at, now=now, max_age_days=config.refresh_token_max_age_days):
        raise AuthExpired("Refresh token expired. Re-authentication required.")

    try:
        tokens = read_tokens(cred)
    except CredentialError as e:
        raise AuthExpired(f"Stored Schwab tokens are unreadable: {e}") from e

    expires_at = ensure_utc(cred.expires_at) if cred.expires_at else None
    if expires_at is not None and expires_at > now + dt.timedelta(seconds=config.refresh_margin_s):
        return str(tokens.access_token)

    if not tokens.refresh_token:
        raise AuthExpired("No refresh token stored. Re-authentication required.")

    try:
        refreshed = client.refresh_access_token(tokens.refresh_token)
    except ProviderError as e:
        log.warning("Schwab token refresh failed for user %s: %s", user_id, e)
        raise AuthExpired() from e

    new_expires_at = now + dt.timedelta(seconds=int(refreshed.expires_in))
    store_refreshed_tokens(
        cred,
        access_token=refreshed.access_token,
        refresh_token=refreshed.refresh_token,
        expires_at=new_expires_at,
    )
    log_change(
        session,
        actor="sync",
        action="TOKEN_REFRESHED",
        entity="BrokerCredential",
        entity_id=str(cred.id),
        old=None,
        new={"expires_at": new_expires_at.isoformat()},
    )
    session.commit()
    log.info(
        "Refreshed Schwab access token for user %s (token %s, expires %s)",
        user_id,
        mask_secret(refreshed.access_token),
        new_expires_at.isoformat(),
    )
    return refreshed.access_token
