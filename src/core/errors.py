"""Error taxonomy for broker synchronization.

Every `BrokerSyncError` knows the HTTP status the API layer should map it to,
whether a later re-run can be expected to succeed, and (once the orchestrator
has seen it) the sync state in which the run stopped.
"""

from __future__ import annotations

from typing import Optional

BODY_EXCERPT_CHARS = 200


def excerpt(body: bytes | str | None, limit: int = BODY_EXCERPT_CHARS) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return body[:limit]


class ProviderError(Exception):
    """Network or provider failure below the sync engine (HTTP helper, client)."""


class CredentialError(Exception):
    pass


class InvalidPositionError(ValueError):
    """Broker returned a position the risk math cannot use (non-positive quantity)."""


class BrokerSyncError(Exception):
    code = "SYNC_FAILED"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, state: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.state = state

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"success": False, "error": self.message, "code": self.code}
        if self.state:
            out["state"] = self.state
        return out


class UserNotFound(BrokerSyncError):
    code = "USER_NOT_FOUND"
    http_status = 404


class NotLinked(BrokerSyncError):
    code = "NOT_LINKED"
    http_status = 400

    def __init__(self, message: str = "No Schwab account linked", **kw) -> None:
        super().__init__(message, **kw)


class AuthExpired(BrokerSyncError):
    code = "AUTH_EXPIRED"
    http_status = 401

    def __init__(self, message: str = "Token refresh failed. Re-authentication required.", **kw) -> None:
        super().__init__(message, **kw)


RefreshFailed = AuthExpired


class UpstreamFetchFailed(BrokerSyncError):
    code = "UPSTREAM_FETCH_FAILED"
    http_status = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body_excerpt: str = "",
        **kw,
    ) -> None:
        super().__init__(message, **kw)
        self.status_code = status_code
        self.body_excerpt = body_excerpt

    def to_dict(self) -> dict[str, object]:
        out = super().to_dict()
        if self.status_code is not None:
            out["upstreamStatus"] = self.status_code
        return out


class ReconcileWriteFailed(BrokerSyncError):
    code = "RECONCILE_WRITE_FAILED"
    http_status = 500
    retryable = True


class SettingsWriteFailed(BrokerSyncError):
    """Raised by the settings propagator; the orchestrator reports it without failing the run."""

    code = "SETTINGS_WRITE_FAILED"
    http_status = 500
    retryable = True
