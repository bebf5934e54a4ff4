from __future__ import annotations

import datetime as dt
from typing import Any, Optional

try:
    from sqlalchemy import (
        JSON,
        Boolean,
        Date,
        Enum,
        Float,
        ForeignKey,
        Index,
        Integer,
        String,
        Text,
        UniqueConstraint,
    )
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy. Create a virtualenv and install the project:\n"
        "  python -m venv .venv\n"
        "  source .venv/bin/activate\n"
        "  pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from src.utils.time import utcnow
from src.db.types import UTCDateTime


class Base(DeclarativeBase):
    pass


TradeDirection = Enum("long", "short", name="trade_direction")
TradeStatus = Enum("ACTIVE", "CLOSED", name="trade_status")
MarketCode = Enum("US", "CN", name="market_code")
SyncStatus = Enum("SUCCESS", "PARTIAL", "ERROR", name="sync_status")


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    broker_credential: Mapped[Optional["BrokerCredential"]] = relationship(back_populates="user", uselist=False)
    trades: Mapped[list["Trade"]] = relationship(back_populates="user")
    preferences: Mapped[list["PortfolioPreference"]] = relationship(back_populates="user")


class BrokerCredential(Base):
    """
    Linked Schwab account for a user. Tokens are stored as Fernet ciphertext
    (see `src.core.credential_store`); only the token provider and the link
    flow write them.
    """

    __tablename__ = "broker_credentials"
    __table_args__ = (UniqueConstraint("user_id", "broker"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    broker: Mapped[str] = mapped_column(String(50), default="SCHWAB", nullable=False)
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    linked_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    account_hash: Mapped[Optional[str]] = mapped_column(String(200))
    account_number: Mapped[Optional[str]] = mapped_column(String(50))

    # Cached account figures from the last successful sync.
    account_value: Mapped[Optional[float]] = mapped_column(Float)
    account_equity: Mapped[Optional[float]] = mapped_column(Float)
    cash_balance: Mapped[Optional[float]] = mapped_column(Float)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="broker_credential")


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_user_synced_status", "user_id", "synced_from_broker", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(TradeDirection, nullable=False)
    status: Mapped[str] = mapped_column(TradeStatus, default="ACTIVE", nullable=False)
    setup: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    entry: Mapped[float] = mapped_column(Float, nullable=False)
    stop: Mapped[float] = mapped_column(Float, nullable=False)
    target: Mapped[Optional[float]] = mapped_column(Float)
    risk_percent: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    position_size: Mapped[float] = mapped_column(Float, nullable=False)
    risk_amount: Mapped[float] = mapped_column(Float, nullable=False)
    rr_ratio: Mapped[Optional[float]] = mapped_column(Float)
    contracts_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    market: Mapped[str] = mapped_column(MarketCode, default="US", nullable=False)
    instrument_type: Mapped[Optional[str]] = mapped_column(String(50))
    is_supported: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Broker sync ownership: rows with synced_from_broker=True are rewritten on every run.
    synced_from_broker: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_working_stop: Mapped[Optional[bool]] = mapped_column(Boolean)
    current_price: Mapped[Optional[float]] = mapped_column(Float)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="trades")


class PortfolioPreference(Base):
    __tablename__ = "portfolio_preferences"
    __table_args__ = (UniqueConstraint("user_id", "market"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    market: Mapped[str] = mapped_column(MarketCode, nullable=False)
    capital: Mapped[float] = mapped_column(Float, nullable=False)
    broker_linked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="preferences")


class BrokerSyncRun(Base):
    __tablename__ = "broker_sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    finished_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(SyncStatus, nullable=False, default="ERROR")
    state: Mapped[str] = mapped_column(String(50), nullable=False, default="START")

    positions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stop_orders_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deleted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_json: Mapped[Optional[str]] = mapped_column(Text)

    coverage_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
