from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.db.models import Base


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def secret_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("APP_SECRET_KEY", "test-secret-key")
    return "test-secret-key"
