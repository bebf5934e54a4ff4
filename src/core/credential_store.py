from __future__ import annotations

import base64
import datetime as dt
import hashlib
import os
from dataclasses import dataclass
from typing import Optional

try:
    from cryptography.fernet import Fernet, InvalidToken
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "cryptography is required for encrypted credential storage. "
        "Install dependencies with: pip install -e . "
        f"Original error: {type(e).__name__}: {e}"
    ) from e
from sqlalchemy.orm import Session

from src.core.errors import CredentialError
from src.db.models import BrokerCredential, User
from src.utils.time import utcnow


def secret_key_available() -> bool:
    v = os.environ.get("APP_SECRET_KEY")
    return bool(v and v.strip())


def _fernet() -> Fernet:
    secret = os.environ.get("APP_SECRET_KEY")
    if not secret or not secret.strip():
        raise CredentialError("APP_SECRET_KEY is required to store broker tokens in DB.")
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(plaintext: str) -> str:
    return _fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(token: str) -> str:
    try:
        return _fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise CredentialError("Failed to decrypt credential (wrong APP_SECRET_KEY?).") from e


def mask_secret(value: Optional[str], *, keep_last: int = 4) -> str:
    v = "" if value is None else str(value)
    if not v:
        return "-"
    k = max(0, int(keep_last))
    suffix = v[-k:] if k and len(v) >= k else ""
    return ("*" * 10) + suffix


@dataclass(frozen=True)
class TokenPair:
    access_token: Optional[str]
    refresh_token: Optional[str]


def get_broker_credential(session: Session, *, user_id: str) -> Optional[BrokerCredential]:
    return (
        session.query(BrokerCredential)
        .filter(BrokerCredential.user_id == user_id, BrokerCredential.broker == "SCHWAB")
        .one_or_none()
    )


def read_tokens(cred: BrokerCredential) -> TokenPair:
    access = decrypt_value(cred.access_token_encrypted) if cred.access_token_encrypted else None
    refresh = decrypt_value(cred.refresh_token_encrypted) if cred.refresh_token_encrypted else None
    return TokenPair(access_token=access, refresh_token=refresh)


def store_refreshed_tokens(
    cred: BrokerCredential,
    *,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: dt.datetime,
) -> None:
    """Stage a token refresh on the credential row; a missing refresh token keeps the old one."""
    cred.access_token_encrypted = encrypt_value(access_token)
    if refresh_token:
        cred.refresh_token_encrypted = encrypt_value(refresh_token)
    cred.expires_at = expires_at
    cred.updated_at = utcnow()


def link_credential(
    session: Session,
    *,
    user_id: str,
    access_token: str,
    refresh_token: str,
    expires_at: dt.datetime,
    account_hash: str,
    account_number: Optional[str] = None,
    linked_at: Optional[dt.datetime] = None,
) -> BrokerCredential:
    """
    Upsert the user's Schwab credential as the OAuth callback would leave it.

    The authorization-code exchange itself lives outside this project; this is the
    write it ends with (also used by the CLI `link` command and tests).
    """
    if not secret_key_available():
        raise CredentialError("APP_SECRET_KEY is required to store broker tokens in DB.")
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
        session.flush()
    now = utcnow()
    cred = get_broker_credential(session, user_id=user_id)
    if cred is None:
        cred = BrokerCredential(user_id=user_id, broker="SCHWAB")
        session.add(cred)
    cred.access_token_encrypted = encrypt_value(access_token)
    cred.refresh_token_encrypted = encrypt_value(refresh_token)
    cred.expires_at = expires_at
    cred.linked_at = linked_at or now
    cred.account_hash = account_hash
    cred.account_number = account_number
    cred.updated_at = now
    session.flush()
    return cred
