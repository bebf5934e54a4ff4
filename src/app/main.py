from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from src.app.routes.broker_sync import router as broker_sync_router
from src.app.routes.health import router as health_router
from src.db.init_db import init_db
from src.db.session import make_engine, make_session_factory


load_dotenv()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(database_url: Optional[str] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Risk Ledger", version="0.1.0")

    engine = make_engine(database_url)
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)

    @app.on_event("startup")
    def _startup() -> None:
        init_db(engine)

    app.include_router(health_router)
    app.include_router(broker_sync_router)
    return app
