from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="Risk Ledger CLI (Schwab position sync)")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
):
    load_dotenv()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _session_factory(database_url: Optional[str]):
    from src.db.init_db import init_db
    from src.db.session import make_engine, make_session_factory

    engine = make_engine(database_url)
    init_db(engine)
    return make_session_factory(engine)


@app.command("init-db")
def init_db_cmd(database_url: Optional[str] = typer.Option(None, help="Overrides DATABASE_URL")):
    from src.db.init_db import init_db
    from src.db.session import make_engine

    engine = make_engine(database_url)
    init_db(engine)
    typer.echo(f"Initialized {engine.url}")


@app.command("sync")
def sync_cmd(
    user_id: str = typer.Option(..., "--user-id"),
    config_path: Optional[Path] = typer.Option(None, "--config", exists=True, dir_okay=False),
    database_url: Optional[str] = typer.Option(None, help="Overrides DATABASE_URL"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    from src.core.broker_sync import run_broker_sync
    from src.core.config import load_broker_sync_config
    from src.core.errors import BrokerSyncError

    cfg, used = load_broker_sync_config(config_path)
    if used:
        logging.getLogger(__name__).info("Loaded broker sync config from %s", used)
    SessionLocal = _session_factory(database_url)
    with SessionLocal() as session:
        try:
            result = run_broker_sync(session, user_id=user_id, config=cfg, actor=actor)
        except BrokerSyncError as e:
            typer.echo(json.dumps(e.to_dict(), indent=2), err=True)
            raise typer.Exit(code=1)
    typer.echo(json.dumps(result.to_payload(), indent=2, default=str))


@app.command("ledger")
def ledger_cmd(
    user_id: str = typer.Option(..., "--user-id"),
    database_url: Optional[str] = typer.Option(None, help="Overrides DATABASE_URL"),
):
    from src.core.trade_risk import calculate_portfolio_risk, calculate_trade_risk
    from src.db.models import Trade
    from src.utils.money import format_usd

    SessionLocal = _session_factory(database_url)
    with SessionLocal() as session:
        trades = (
            session.query(Trade)
            .filter(Trade.user_id == user_id, Trade.status == "ACTIVE")
            .order_by(Trade.symbol.asc(), Trade.direction.asc())
            .all()
        )
        for t in trades:
            flags = []
            if t.synced_from_broker:
                flags.append("synced")
            if not t.has_working_stop:
                flags.append("no-stop")
            if not t.is_supported:
                flags.append("unsupported")
            typer.echo(
                f"{t.symbol:<8} {t.direction:<5} size={t.position_size:g} entry={format_usd(t.entry)} "
                f"stop={format_usd(t.stop)} risk={format_usd(calculate_trade_risk(t))} {' '.join(flags)}".rstrip()
            )
        typer.echo(f"Total open risk: {format_usd(calculate_portfolio_risk(trades))} ({len(trades)} trade(s))")


@app.command("link")
def link_cmd(
    user_id: str = typer.Option(..., "--user-id"),
    access_token: str = typer.Option(..., "--access-token"),
    refresh_token: str = typer.Option(..., "--refresh-token"),
    account_hash: str = typer.Option(..., "--account-hash"),
    account_number: Optional[str] = typer.Option(None, "--account-number"),
    expires_in: int = typer.Option(1800, help="Seconds until the access token expires"),
    database_url: Optional[str] = typer.Option(None, help="Overrides DATABASE_URL"),
):
    """Store a Schwab token pair for a user (the tokens from an OAuth callback)."""
    from src.core.credential_store import CredentialError, link_credential, mask_secret
    from src.utils.time import utcnow

    SessionLocal = _session_factory(database_url)
    with SessionLocal() as session:
        try:
            link_credential(
                session,
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + dt.timedelta(seconds=int(expires_in)),
                account_hash=account_hash,
                account_number=account_number,
            )
        except CredentialError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=2)
        session.commit()
    typer.echo(f"Linked Schwab account {mask_secret(account_number or account_hash)} for user {user_id}")


if __name__ == "__main__":
    app()
