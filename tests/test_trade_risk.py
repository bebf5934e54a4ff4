from __future__ import annotations

import datetime as dt

import pytest

from src.core.trade_risk import (
    calculate_portfolio_risk,
    calculate_trade_risk,
    contract_effective_stop,
    is_valid_stop_price,
)
from src.db.models import Trade


def _trade(**kw) -> Trade:
    base = dict(
        user_id="u1",
        date=dt.date(2025, 3, 10),
        symbol="AAPL",
        direction="long",
        status="ACTIVE",
        entry=100.0,
        stop=95.0,
        position_size=10,
        risk_amount=50.0,
        contracts_json=[],
        market="US",
        is_supported=True,
    )
    base.update(kw)
    return Trade(**base)


def test_is_valid_stop_price() -> None:
    assert is_valid_stop_price(100, 95, "long")
    assert not is_valid_stop_price(100, 100, "long")
    assert is_valid_stop_price(100, 105, "short")
    assert not is_valid_stop_price(100, 90, "short")


def test_flat_trade_risk() -> None:
    assert calculate_trade_risk(_trade()) == pytest.approx(50.0)


def test_contract_risk_with_stop_override() -> None:
    t = _trade(
        contracts_json=[
            {"entryPrice": 100.0, "shares": 10},
            {"entryPrice": 110.0, "shares": 5, "contractStop": 108.0},
        ]
    )
    assert contract_effective_stop(t.contracts_json[1], t.stop) == 108.0
    assert calculate_trade_risk(t) == pytest.approx(5.0 * 10 + 2.0 * 5)


def test_portfolio_risk_counts_active_supported_only() -> None:
    trades = [
        _trade(),
        _trade(symbol="MSFT", status="CLOSED"),
        _trade(symbol="OPT", is_supported=False),
        _trade(symbol="600519", market="CN", entry=10.0, stop=9.0),
    ]
    assert calculate_portfolio_risk(trades) == pytest.approx(50.0 + 10.0)
    assert calculate_portfolio_risk(trades, market="US") == pytest.approx(50.0)
