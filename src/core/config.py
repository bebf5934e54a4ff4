from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field


class BrokerSyncConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    api_base_url: str = "https://api.schwabapi.com/trader/v1"
    token_url: str = "https://api.schwabapi.com/v1/oauth/token"

    market: str = "US"
    order_window_days: int = 60
    # Stops can sit in a pre-trigger status outside regular hours; all of these count as "working".
    tracked_order_statuses: list[str] = Field(
        default_factory=lambda: ["WORKING", "AWAITING_STOP_CONDITION", "QUEUED", "PENDING_ACTIVATION"]
    )
    stop_order_types: list[str] = Field(default_factory=lambda: ["STOP", "STOP_LIMIT", "TRAILING_STOP"])
    supported_asset_types: list[str] = Field(default_factory=lambda: ["EQUITY", "ETF"])
    fallback_stop_pct: float = 0.05

    refresh_margin_s: int = 300
    refresh_token_max_age_days: int = 7

    http_timeout_s: float = 30.0
    http_max_retries: int = 0
    max_fetch_workers: int = 5


_ENV_OVERRIDES: dict[str, str] = {
    "SCHWAB_CLIENT_ID": "client_id",
    "SCHWAB_CLIENT_SECRET": "client_secret",
    "SCHWAB_API_BASE_URL": "api_base_url",
    "SCHWAB_TOKEN_URL": "token_url",
    "SCHWAB_HTTP_TIMEOUT_S": "http_timeout_s",
}


def _candidate_paths() -> list[Path]:
    paths = [Path("broker_sync.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".riskledger" / "broker_sync.yaml")
    return paths


def load_broker_sync_config(path: Optional[Path] = None) -> tuple[BrokerSyncConfig, Optional[str]]:
    """
    Build the sync config from defaults, an optional YAML file, then environment.

    Returns the config and the YAML path that was used (None if no file was found).
    """
    data: dict[str, Any] = {}
    used: Optional[str] = None
    for p in [path] if path is not None else _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            used = str(p)
            break
    for env_name, field in _ENV_OVERRIDES.items():
        v = (os.environ.get(env_name) or "").strip()
        if v:
            data[field] = v
    return BrokerSyncConfig.model_validate(data), used
