from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from src.db.models import Trade


def is_valid_stop_price(entry: float, stop: float, direction: str) -> bool:
    # Long stops sit below entry, short stops above.
    if direction == "long":
        return stop < entry
    return stop > entry


def contract_effective_stop(contract: Mapping[str, Any], trade_stop: float) -> float:
    override = contract.get("contractStop")
    return float(override) if override is not None else float(trade_stop)


def calculate_trade_risk(trade: Trade) -> float:
    """
    Open risk of one ledger trade.

    Trades carrying contracts are summed per contract (a contract may override the
    trade-level stop); flat trades use `position_size * |entry - stop|`.
    """
    contracts = list(trade.contracts_json or [])
    if not contracts:
        return float(trade.position_size) * abs(float(trade.entry) - float(trade.stop))
    total = 0.0
    for c in contracts:
        stop = contract_effective_stop(c, trade.stop)
        total += abs(float(c.get("entryPrice") or 0.0) - stop) * float(c.get("shares") or 0.0)
    return total


def calculate_portfolio_risk(trades: Iterable[Trade], *, market: Optional[str] = None) -> float:
    total = 0.0
    for t in trades:
        if t.status != "ACTIVE" or not t.is_supported:
            continue
        if market is not None and t.market != market:
            continue
        total += calculate_trade_risk(t)
    return total
