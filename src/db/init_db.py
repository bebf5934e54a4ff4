from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from src.db.models import Base


def init_db(engine: Engine) -> None:
    url = str(engine.url)
    if url.startswith("sqlite:///") and not url.endswith(":memory:"):
        db_path = Path(url[len("sqlite:///") :])
        db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
