from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from src.app.db import db_session
from src.utils.time import utcnow


router = APIRouter(tags=["health"])


@router.get("/health")
def health(session: Session = Depends(db_session)):
    session.execute(text("SELECT 1"))
    return {"status": "ok", "timestamp": utcnow().isoformat()}
