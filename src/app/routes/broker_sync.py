from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from src.adapters.schwab.client import SchwabClient
from src.app.auth import require_actor
from src.app.db import db_session
from src.core.broker_sync import BrokerClient, run_broker_sync
from src.core.config import BrokerSyncConfig, load_broker_sync_config
from src.core.errors import BrokerSyncError


router = APIRouter(prefix="/schwab", tags=["schwab"])


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")


def get_sync_config() -> BrokerSyncConfig:
    cfg, _ = load_broker_sync_config()
    return cfg


def get_broker_client(config: BrokerSyncConfig = Depends(get_sync_config)) -> BrokerClient:
    return SchwabClient(config)


@router.post("/sync")
def schwab_sync(
    body: Optional[SyncRequest] = None,
    session: Session = Depends(db_session),
    actor: str = Depends(require_actor),
    config: BrokerSyncConfig = Depends(get_sync_config),
    client: BrokerClient = Depends(get_broker_client),
):
    user_id = ((body.user_id if body else None) or "").strip()
    if not user_id:
        return JSONResponse(status_code=400, content={"success": False, "error": "userId is required"})
    try:
        result = run_broker_sync(session, user_id=user_id, client=client, config=config, actor=actor)
    except BrokerSyncError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
    return result.to_payload()
