from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from src.adapters.schwab.schemas import Order, Position
from src.core.errors import InvalidPositionError
from src.core.stop_orders import match_stop_order, position_direction
from src.core.trade_risk import is_valid_stop_price


log = logging.getLogger(__name__)

SUPPORTED_ASSET_TYPES: tuple[str, ...] = ("EQUITY", "ETF")
UNSUPPORTED = "UNSUPPORTED"


@dataclass(frozen=True)
class RiskSnapshot:
    symbol: str
    direction: str
    entry: float
    stop: float
    position_size: float
    risk_amount: float
    has_working_stop: bool
    current_price: Optional[float]
    instrument_type: str
    is_supported: bool
    market: str = "US"

    @property
    def key(self) -> tuple[str, str]:
        return (self.symbol, self.direction)

    def to_payload(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "entry": self.entry,
            "stop": self.stop,
            "positionSize": self.position_size,
            "riskAmount": self.risk_amount,
            "market": self.market,
            "instrumentType": self.instrument_type,
            "isSupported": self.is_supported,
            "syncedFromBroker": True,
            "hasWorkingStop": self.has_working_stop,
            "currentPrice": self.current_price,
        }


@dataclass
class SnapshotBatch:
    snapshots: list[RiskSnapshot] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def fallback_stop(entry: float, direction: str, pct: float = 0.05) -> float:
    # Placeholder for "no real stop yet", not a recommendation.
    return entry * (1 - pct) if direction == "long" else entry * (1 + pct)


def build_snapshot(
    position: Position,
    matched: Optional[Order],
    *,
    fallback_stop_pct: float = 0.05,
    supported_asset_types: Sequence[str] = SUPPORTED_ASSET_TYPES,
    market: str = "US",
) -> RiskSnapshot:
    symbol = position.symbol
    if not symbol:
        raise InvalidPositionError("Position is missing an instrument symbol.")
    direction = position_direction(position)
    size = float(position.long_quantity if direction == "long" else position.short_quantity)
    if not size > 0:
        raise InvalidPositionError(f"{symbol}: non-positive quantity ({size}); position skipped.")
    if position.average_price is None:
        raise InvalidPositionError(f"{symbol}: missing average price; position skipped.")
    entry = float(position.average_price)

    matched_stop = matched.stop_price if matched is not None else None
    has_working_stop = matched_stop is not None and matched_stop > 0
    stop = float(matched_stop) if has_working_stop else fallback_stop(entry, direction, fallback_stop_pct)

    asset_type = (position.instrument.asset_type or "").upper()
    is_supported = asset_type in set(supported_asset_types)
    current_price = float(position.market_value) / size if position.market_value is not None else None

    return RiskSnapshot(
        symbol=symbol,
        direction=direction,
        entry=entry,
        stop=stop,
        position_size=size,
        risk_amount=abs(entry - stop) * size,
        has_working_stop=has_working_stop,
        current_price=current_price,
        instrument_type=asset_type if is_supported else UNSUPPORTED,
        is_supported=is_supported,
        market=market,
    )


def build_snapshots(
    positions: Iterable[Position],
    stop_orders: Sequence[Order],
    *,
    fallback_stop_pct: float = 0.05,
    supported_asset_types: Sequence[str] = SUPPORTED_ASSET_TYPES,
    market: str = "US",
) -> SnapshotBatch:
    """
    Snapshot every position against the filtered stop orders. Positions the risk
    math cannot use are dropped with a data-quality warning instead of failing
    the batch.
    """
    out = SnapshotBatch()
    for position in positions:
        matched = match_stop_order(position, stop_orders)
        try:
            snap = build_snapshot(
                position,
                matched,
                fallback_stop_pct=fallback_stop_pct,
                supported_asset_types=supported_asset_types,
                market=market,
            )
        except InvalidPositionError as e:
            log.warning("Data quality: %s", e)
            out.warnings.append(f"Data quality: {e}")
            continue
        if snap.has_working_stop and not is_valid_stop_price(snap.entry, snap.stop, snap.direction):
            out.warnings.append(
                f"{snap.symbol}: working stop {snap.stop:.2f} is on the wrong side of entry {snap.entry:.2f} "
                f"for a {snap.direction} position."
            )
        out.snapshots.append(snap)
    return out


def portfolio_risk(snapshots: Iterable[RiskSnapshot]) -> float:
    return sum(s.risk_amount for s in snapshots if s.is_supported)
