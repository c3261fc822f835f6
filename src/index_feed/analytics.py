"""Derived metrics over quote sequences.

Pure functions on ordered quotes, computed in Decimal so results carry no
binary floating-point noise. Returns are simple (not log) returns.

Failure policy: a metric that cannot be computed raises ``EmptyRange`` (no
points at all) or ``InsufficientData`` (too few points, or a zero base
price). Nothing here ever defaults to zero.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from decimal import Decimal

import pandas as pd

from index_feed.core.exceptions import EmptyRange, InsufficientData
from index_feed.core.models import MovingAveragePoint, Quote


def simple_return(p0: Decimal, p1: Decimal) -> Decimal:
    """Return ``(p1 - p0) / p0``.

    Raises
    ------
    InsufficientData
        If ``p0`` is zero.
    """
    if p0 == 0:
        raise InsufficientData(
            "Cannot compute a return from a zero base price",
            context={"required": 1, "available": 0, "cause": "zero base price"},
        )
    return (p1 - p0) / p0


def range_return(quotes: Sequence[Quote]) -> Decimal:
    """Simple return from the first to the last quote."""
    _require(quotes, 2)
    return simple_return(quotes[0].price, quotes[-1].price)


def period_returns(quotes: Sequence[Quote]) -> list[Decimal]:
    """Simple returns between consecutive quotes (``len(quotes) - 1`` values)."""
    return [simple_return(prev.price, cur.price) for prev, cur in zip(quotes, quotes[1:])]


def moving_average(quotes: Iterable[Quote], window: int) -> Iterator[MovingAveragePoint]:
    """Trailing simple moving average, one point per full window.

    Lazily yields ``max(0, n - window + 1)`` points; each is stamped with the
    timestamp of the quote that closes its window.

    Raises
    ------
    ValueError
        If ``window < 1``. Raised on call, not on first iteration.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    return _moving_average(quotes, window)


def _moving_average(quotes: Iterable[Quote], window: int) -> Iterator[MovingAveragePoint]:
    buf: deque[Decimal] = deque(maxlen=window)
    total = Decimal(0)
    for q in quotes:
        if len(buf) == window:
            total -= buf[0]
        buf.append(q.price)
        total += q.price
        if len(buf) == window:
            yield MovingAveragePoint(timestamp=q.timestamp, value=total / window)


def volatility(quotes: Sequence[Quote], window: int) -> Decimal:
    """Sample standard deviation of the last ``window`` period returns.

    Needs ``window + 1`` quotes. Not annualized.

    Raises
    ------
    ValueError
        If ``window < 2``; a sample deviation needs two returns.
    EmptyRange
        If there are no quotes.
    InsufficientData
        If fewer than ``window + 1`` quotes are available.
    """
    if window < 2:
        raise ValueError(f"volatility window must be >= 2, got {window}")
    _require(quotes, window + 1)

    returns = period_returns(quotes[-(window + 1):])
    mean = sum(returns, Decimal(0)) / len(returns)
    variance = sum(((r - mean) ** 2 for r in returns), Decimal(0)) / (len(returns) - 1)
    return variance.sqrt()


def max_drawdown(quotes: Sequence[Quote]) -> Decimal:
    """Largest peak-to-trough decline as a fraction (zero or negative).

    A series that never falls below its running peak returns 0.
    """
    _require(quotes, 1)
    peak = quotes[0].price
    worst = Decimal(0)
    for q in quotes:
        if q.price > peak:
            peak = q.price
        if peak == 0:
            continue
        drawdown = q.price / peak - 1
        if drawdown < worst:
            worst = drawdown
    return worst


def quotes_frame(quotes: Iterable[Quote]) -> pd.DataFrame:
    """Quotes as a DataFrame indexed by timestamp.

    Columns: price (Decimal objects), volume, source.
    """
    rows = [
        {"timestamp": q.timestamp, "price": q.price, "volume": q.volume, "source": q.source}
        for q in quotes
    ]
    if not rows:
        return pd.DataFrame(
            columns=["price", "volume", "source"],
            index=pd.DatetimeIndex([], tz="UTC", name="timestamp"),
        )
    return pd.DataFrame(rows).set_index("timestamp")


def _require(quotes: Sequence[Quote], required: int) -> None:
    available = len(quotes)
    if available == 0:
        raise EmptyRange("No quotes in range", context={"required": required, "available": 0})
    if available < required:
        raise InsufficientData(
            f"Need {required} quotes, have {available}",
            context={"required": required, "available": available},
        )
