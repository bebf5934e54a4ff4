from __future__ import annotations

import base64
import datetime as dt
import json
import logging
import urllib.parse
from typing import Any, Optional

from pydantic import ValidationError

from src.adapters.schwab.schemas import AccountResponse, Order, TokenResponse
from src.core.config import BrokerSyncConfig
from src.core.errors import ProviderError, excerpt
from src.core.net import HttpResponse, assert_url_allowed, http_request, network_enabled
from src.utils.time import schwab_timestamp


log = logging.getLogger(__name__)


class SchwabApiError(ProviderError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body_excerpt: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body_excerpt = body_excerpt


class SchwabClient:
    """
    Thin Schwab trader API wrapper over the shared allowlisted HTTP helper.

    One instance is built per sync run from explicit config; it holds no token
    state of its own. Access tokens are passed per call by the token provider.
    """

    def __init__(self, config: BrokerSyncConfig) -> None:
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self.token_url = config.token_url

    def _require_ready(self) -> None:
        if not network_enabled():
            raise ProviderError("Network disabled; set NETWORK_ENABLED=1 to enable live connectors.")
        assert_url_allowed(self.base_url)

    def _send(self, url: str, *, method: str = "GET", headers: dict[str, str], body: bytes | None = None) -> HttpResponse:
        return http_request(
            url,
            method=method,
            headers=headers,
            body=body,
            timeout_s=float(self.config.http_timeout_s),
            max_retries=int(self.config.http_max_retries),
            raise_for_status=False,
        )

    def _get_json(self, path: str, *, access_token: str, params: Optional[dict[str, str]] = None) -> Any:
        self._require_ready()
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        resp = self._send(url, headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"})
        if not resp.ok:
            raise SchwabApiError(
                f"Schwab request failed ({resp.status_code})",
                status_code=resp.status_code,
                body_excerpt=excerpt(resp.content),
            )
        try:
            return json.loads(resp.text() or "null")
        except ValueError as e:
            raise SchwabApiError(
                "Schwab response was not valid JSON", status_code=resp.status_code, body_excerpt=excerpt(resp.content)
            ) from e

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        if not self.config.client_id or not self.config.client_secret:
            raise ProviderError("SCHWAB_CLIENT_ID and SCHWAB_CLIENT_SECRET are required.")
        if not network_enabled():
            raise ProviderError("Network disabled; set NETWORK_ENABLED=1 to enable live connectors.")
        basic = base64.b64encode(f"{self.config.client_id}:{self.config.client_secret}".encode("utf-8")).decode("ascii")
        body = urllib.parse.urlencode({"grant_type": "refresh_token", "refresh_token": refresh_token}).encode("utf-8")
        resp = self._send(
            self.token_url,
            method="POST",
            headers={"Content-Type": "application/x-www-form-urlencoded", "Authorization": f"Basic {basic}"},
            body=body,
        )
        if not resp.ok:
            raise SchwabApiError(
                f"Token refresh failed ({resp.status_code})",
                status_code=resp.status_code,
                body_excerpt=excerpt(resp.content),
            )
        try:
            return TokenResponse.model_validate_json(resp.content)
        except ValidationError as e:
            raise SchwabApiError("Token response missing access_token/expires_in", status_code=resp.status_code) from e

    def get_account(self, account_hash: str, *, access_token: str) -> AccountResponse:
        data = self._get_json(
            f"/accounts/{urllib.parse.quote(account_hash, safe='')}",
            access_token=access_token,
            params={"fields": "positions"},
        )
        if not isinstance(data, dict):
            raise SchwabApiError("Unexpected account payload: expected a JSON object")
        try:
            account = AccountResponse.model_validate(data)
        except ValidationError as e:
            raise SchwabApiError(f"Unexpected account payload: {e.error_count()} validation error(s)") from e
        # A missing account must not read as an empty position list.
        if account.securities_account is None:
            raise SchwabApiError("Unexpected account payload: securitiesAccount missing")
        return account

    def get_orders(
        self,
        account_hash: str,
        *,
        access_token: str,
        from_entered: dt.datetime,
        to_entered: dt.datetime,
        status: Optional[str] = None,
    ) -> list[Order]:
        params = {
            "fromEnteredTime": schwab_timestamp(from_entered),
            "toEnteredTime": schwab_timestamp(to_entered),
        }
        if status:
            params["status"] = status
        data = self._get_json(
            f"/accounts/{urllib.parse.quote(account_hash, safe='')}/orders",
            access_token=access_token,
            params=params,
        )
        if not isinstance(data, list):
            return []
        orders: list[Order] = []
        for row in data:
            try:
                orders.append(Order.model_validate(row))
            except ValidationError:
                log.warning("Skipping malformed Schwab order row (status filter %s)", status)
        return orders
