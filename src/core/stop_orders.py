from __future__ import annotations

import datetime as dt
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, Sequence

from src.adapters.schwab.schemas import Order, Position
from src.core.errors import ProviderError


log = logging.getLogger(__name__)

TRACKED_STATUSES: tuple[str, ...] = ("WORKING", "AWAITING_STOP_CONDITION", "QUEUED", "PENDING_ACTIVATION")
STOP_ORDER_TYPES: tuple[str, ...] = ("STOP", "STOP_LIMIT", "TRAILING_STOP")


class OrderSource(Protocol):
    def get_orders(
        self,
        account_hash: str,
        *,
        access_token: str,
        from_entered: dt.datetime,
        to_entered: dt.datetime,
        status: Optional[str] = None,
    ) -> list[Order]: ...


@dataclass(frozen=True)
class OrderWindow:
    start: dt.datetime
    end: dt.datetime

    @classmethod
    def trailing(cls, now: dt.datetime, days: int = 60) -> "OrderWindow":
        return cls(start=now - dt.timedelta(days=days), end=now)


@dataclass
class OrderFetchResult:
    orders: list[Order]
    failed_statuses: list[str] = field(default_factory=list)
    raw_count: int = 0


def _fetch_one(client: OrderSource, account_hash: str, access_token: str, window: OrderWindow, status: str) -> list[Order]:
    return client.get_orders(
        account_hash,
        access_token=access_token,
        from_entered=window.start,
        to_entered=window.end,
        status=status,
    )


def submit_order_fetches(
    executor: Executor,
    client: OrderSource,
    *,
    account_hash: str,
    access_token: str,
    window: OrderWindow,
    statuses: Sequence[str] = TRACKED_STATUSES,
) -> dict[str, Future]:
    """Fan out one orders request per status; pair with `collect_order_fetches`."""
    return {
        status: executor.submit(_fetch_one, client, account_hash, access_token, window, status)
        for status in statuses
    }


def merge_orders(batches: Iterable[Iterable[Order]]) -> list[Order]:
    """De-duplicate by order id; a later batch wins for an id seen twice."""
    by_id: dict[int, Order] = {}
    for batch in batches:
        for order in batch:
            by_id[order.order_id] = order
    return list(by_id.values())


def filter_stop_orders(
    orders: Iterable[Order],
    *,
    statuses: Sequence[str] = TRACKED_STATUSES,
    order_types: Sequence[str] = STOP_ORDER_TYPES,
) -> list[Order]:
    # A stop waiting for its trigger outside regular hours still counts; market hours are never consulted.
    wanted_statuses = set(statuses)
    wanted_types = set(order_types)
    return [o for o in orders if o.order_type in wanted_types and o.status in wanted_statuses]


def collect_order_fetches(
    futures: dict[str, Future],
    *,
    statuses: Sequence[str] = TRACKED_STATUSES,
    order_types: Sequence[str] = STOP_ORDER_TYPES,
) -> OrderFetchResult:
    """
    Fan in per-status results. Each status is best-effort: a failed request adds
    nothing and is reported in `failed_statuses`. Results are folded in the
    order of `futures` (not completion order) so the merge is deterministic.
    """
    batches: list[list[Order]] = []
    failed: list[str] = []
    raw_count = 0
    for status, fut in futures.items():
        try:
            batch = list(fut.result() or [])
        except ProviderError as e:
            log.warning("Orders fetch for status %s failed: %s", status, e)
            failed.append(status)
            continue
        except Exception as e:
            log.warning("Orders fetch for status %s failed: %s: %s", status, type(e).__name__, e)
            failed.append(status)
            continue
        raw_count += len(batch)
        batches.append(batch)
    merged = merge_orders(batches)
    return OrderFetchResult(
        orders=filter_stop_orders(merged, statuses=statuses, order_types=order_types),
        failed_statuses=failed,
        raw_count=raw_count,
    )


def fetch_working_orders(
    client: OrderSource,
    *,
    account_hash: str,
    access_token: str,
    window: OrderWindow,
    statuses: Sequence[str] = TRACKED_STATUSES,
    order_types: Sequence[str] = STOP_ORDER_TYPES,
    max_workers: int = 4,
) -> list[Order]:
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(statuses) or 1))) as pool:
        futures = submit_order_fetches(
            pool, client, account_hash=account_hash, access_token=access_token, window=window, statuses=statuses
        )
        result = collect_order_fetches(futures, statuses=statuses, order_types=order_types)
    return result.orders


def closing_instruction(direction: str) -> str:
    return "SELL" if direction == "long" else "BUY"


def position_direction(position: Position) -> str:
    return "long" if (position.long_quantity or 0) > 0 else "short"


def match_stop_order(position: Position, orders: Sequence[Order]) -> Optional[Order]:
    """
    First stop order whose primary leg closes this position (same symbol, opposite
    instruction). When several qualify only the first is used.
    """
    want = closing_instruction(position_direction(position))
    for order in orders:
        leg = order.primary_leg
        if leg is None:
            continue
        if leg.instrument.symbol == position.symbol and leg.instruction == want:
            return order
    return None
