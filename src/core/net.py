from __future__ import annotations

import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Optional

from src.core.errors import ProviderError


log = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = frozenset({"api.schwabapi.com"})


def network_enabled() -> bool:
    v = (os.environ.get("NETWORK_ENABLED") or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def _normalize_host(raw: str) -> str:
    s = raw.strip().lower()
    if "://" in s:
        s = urllib.parse.urlparse(s).hostname or ""
    s = s.split("/", 1)[0]
    return s.split(":", 1)[0]


def allowed_outbound_hosts() -> set[str]:
    raw = (os.environ.get("ALLOWED_OUTBOUND_HOSTS") or "").strip()
    if raw:
        hosts = {_normalize_host(h) for h in raw.split(",") if h.strip()}
        return {h for h in hosts if h}
    return set(DEFAULT_ALLOWED_HOSTS)


def assert_url_allowed(url: str) -> None:
    u = urllib.parse.urlparse(url)
    if (u.scheme or "").lower() != "https":
        raise ProviderError("Blocked network request: only https:// is allowed.")
    host = (u.hostname or "").lower()
    if not host:
        raise ProviderError("Blocked network request: missing hostname.")
    if host not in allowed_outbound_hosts():
        hint = " (ALLOWED_OUTBOUND_HOSTS overrides defaults)" if os.environ.get("ALLOWED_OUTBOUND_HOSTS") else ""
        raise ProviderError(f"Blocked network request: host not allowlisted ({host}).{hint}")


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    content: bytes
    content_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class _AllowlistRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        # Enforce allowlist on redirects as well.
        assert_url_allowed(str(newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def _describe(url: str) -> str:
    # Host and path only; query strings can carry account identifiers.
    u = urllib.parse.urlparse(url)
    return f"host={(u.hostname or '').lower()} path={u.path or '/'}"


def http_request(
    url: str,
    *,
    method: str = "GET",
    headers: Optional[dict[str, str]] = None,
    body: Optional[bytes] = None,
    timeout_s: float = 30.0,
    max_retries: int = 0,
    backoff_s: float = 0.5,
    raise_for_status: bool = True,
) -> HttpResponse:
    """
    Minimal HTTP helper with:
      - NETWORK_ENABLED gate
      - outbound host allowlist (redirects included)
      - per-call timeout + optional limited retries on 429/5xx/connection errors

    With raise_for_status=False a non-2xx response is returned instead of raised,
    so callers can decide whether it is fatal. Raised errors never include headers,
    bodies or query strings.
    """
    if not network_enabled():
        raise ProviderError("Network disabled; set NETWORK_ENABLED=1 to enable live connectors.")
    assert_url_allowed(url)

    attempt = 0
    last_err: Exception | None = None
    while attempt <= max_retries:
        try:
            opener = urllib.request.build_opener(_AllowlistRedirectHandler())
            req = urllib.request.Request(url, data=body, headers=dict(headers or {}), method=method.upper())
            with opener.open(req, timeout=timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                return HttpResponse(
                    status_code=status, content=resp.read(), content_type=resp.headers.get("Content-Type")
                )
        except urllib.error.HTTPError as e:
            last_err = e
            status = int(getattr(e, "code", 0) or 0)
            if (status == 429 or status >= 500) and attempt < max_retries:
                time.sleep(min(8.0, backoff_s * (2**attempt)))
                attempt += 1
                continue
            content = e.read() if e.fp is not None else b""
            if not raise_for_status:
                return HttpResponse(
                    status_code=status, content=content, content_type=e.headers.get("Content-Type") if e.headers else None
                )
            raise ProviderError(f"HTTP error status={status} {_describe(url)}") from None
        except ProviderError:
            raise
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            last_err = e
            log.debug("Request attempt %s failed (%s): %s", attempt + 1, _describe(url), type(e).__name__)
            if attempt < max_retries:
                time.sleep(min(8.0, backoff_s * (2**attempt)))
            attempt += 1
            continue

    reason = getattr(last_err, "reason", None) or last_err
    raise ProviderError(f"Network request failed: {type(last_err).__name__}: {reason} ({_describe(url)})")
