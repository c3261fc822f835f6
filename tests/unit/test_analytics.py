"""Tests for index_feed.analytics."""

from __future__ import annotations

import math
import statistics
from datetime import date, timedelta
from decimal import Decimal

import pandas as pd
import pytest

from index_feed.analytics import (
    max_drawdown,
    moving_average,
    period_returns,
    quotes_frame,
    range_return,
    simple_return,
    volatility,
)
from index_feed.core.exceptions import EmptyRange, InsufficientData
from index_feed.core.models import Quote

IBEX = "^IBEX"


def _series(*prices) -> list[Quote]:
    start = date(2024, 1, 1)
    return [
        Quote(index_id=IBEX, timestamp=start + timedelta(days=i), price=p)
        for i, p in enumerate(prices)
    ]


class TestReturns:
    def test_simple_return(self):
        assert simple_return(Decimal(100), Decimal(102)) == Decimal("0.02")

    def test_range_return_two_points(self):
        assert range_return(_series(100, 102)) == Decimal("0.02")

    def test_negative_return(self):
        assert range_return(_series(100, 101, 99)) == Decimal("-0.01")

    def test_zero_base_price(self):
        with pytest.raises(InsufficientData):
            simple_return(Decimal(0), Decimal(5))

    def test_single_point(self):
        with pytest.raises(InsufficientData) as exc_info:
            range_return(_series(100))
        assert exc_info.value.context == {"required": 2, "available": 1}

    def test_empty(self):
        with pytest.raises(EmptyRange):
            range_return([])

    def test_period_returns(self):
        assert period_returns(_series(100, 110, 99)) == [Decimal("0.1"), Decimal("-0.1")]
        assert period_returns(_series(100)) == []


class TestMovingAverage:
    @pytest.mark.parametrize("n,window", [(0, 1), (1, 1), (5, 3), (5, 5), (3, 5), (10, 1)])
    def test_output_length(self, n, window):
        points = list(moving_average(_series(*range(100, 100 + n)), window))
        assert len(points) == max(0, n - window + 1)

    def test_values_and_alignment(self):
        quotes = _series(100, 102, 104, 106)
        points = list(moving_average(quotes, 3))
        assert [p.value for p in points] == [Decimal(102), Decimal(104)]
        assert [p.timestamp for p in points] == [quotes[2].timestamp, quotes[3].timestamp]

    def test_window_one_is_identity(self):
        quotes = _series(100, 101.5)
        assert [p.value for p in moving_average(quotes, 1)] == [q.price for q in quotes]

    def test_is_lazy(self):
        def endless():
            day = date(2024, 1, 1)
            while True:
                yield Quote(index_id=IBEX, timestamp=day, price=100)
                day += timedelta(days=1)

        gen = moving_average(endless(), 2)
        assert next(gen).value == Decimal(100)

    def test_invalid_window_raises_on_call(self):
        with pytest.raises(ValueError, match="window must be >= 1"):
            moving_average(_series(1, 2), 0)


class TestVolatility:
    def test_insufficient_data(self):
        with pytest.raises(InsufficientData) as exc_info:
            volatility(_series(100, 101, 102), 5)
        assert exc_info.value.context["required"] == 6
        assert exc_info.value.context["available"] == 3

    def test_empty(self):
        with pytest.raises(EmptyRange):
            volatility([], 5)

    def test_window_below_two(self):
        with pytest.raises(ValueError):
            volatility(_series(100, 101, 102), 1)

    def test_constant_growth_has_zero_volatility(self):
        assert volatility(_series(100, 110, 121, Decimal("133.1")), 3) == 0

    def test_matches_sample_stdev(self):
        prices = [100, 103, 101, 104, 99, 102]
        quotes = _series(*prices)
        returns = [(b - a) / a for a, b in zip(prices, prices[1:])]
        expected = statistics.stdev(returns)
        assert math.isclose(float(volatility(quotes, 5)), expected, rel_tol=1e-9)

    def test_uses_only_last_window(self):
        quotes = _series(50, 200, 100, 101, 102, 103)
        tail = _series(100, 101, 102, 103)
        assert volatility(quotes, 3) == volatility(tail, 3)


class TestMaxDrawdown:
    def test_monotonic_rise_has_no_drawdown(self):
        assert max_drawdown(_series(100, 101, 102)) == 0

    def test_peak_to_trough(self):
        assert max_drawdown(_series(100, 120, 90, 110, 95)) == Decimal("-0.25")

    def test_empty(self):
        with pytest.raises(EmptyRange):
            max_drawdown([])


class TestQuotesFrame:
    def test_columns_and_index(self):
        frame = quotes_frame(_series(100, 101))
        assert list(frame.columns) == ["price", "volume", "source"]
        assert frame.index.name == "timestamp"
        assert frame["price"].iloc[-1] == Decimal(101)

    def test_empty(self):
        frame = quotes_frame([])
        assert isinstance(frame, pd.DataFrame)
        assert frame.empty
