from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal

from spreadbot.models.schemas import MarketSnapshot, SpreadPlan


class InvalidPlan(ValueError):
    """The narrowed prices cross or touch; nothing may be submitted."""


def _dec(value: float) -> Decimal:
    return Decimal(repr(value))


def price_decimals(snapshot: MarketSnapshot) -> int:
    """Tick precision: the exchange's ask string if we saw it, else the float's shortest form."""
    if snapshot.price_decimals is not None:
        return snapshot.price_decimals
    exponent = _dec(snapshot.ask).normalize().as_tuple().exponent
    return max(0, -exponent)


def clamp_factor(narrowing_factor: float) -> float:
    if not math.isfinite(narrowing_factor):
        raise InvalidPlan(f"narrowing factor must be a finite number (got {narrowing_factor})")
    return min(max(narrowing_factor, 0.0), 1.0)


def plan_spread(snapshot: MarketSnapshot, volume: float, narrowing_factor: float = 0.0) -> SpreadPlan:
    """Buy/sell limits moved from bid/ask toward the center by narrowing_factor.

    0.0 keeps the raw bid and ask, 0.5 halves the spread, 1.0 puts both legs on
    the center price (always rejected). Arithmetic is done in Decimal so both
    legs land on the same value when they meet at the center.
    """
    if not math.isfinite(volume) or volume <= 0:
        raise InvalidPlan(f"volume must be positive (got {volume})")

    factor = clamp_factor(narrowing_factor)
    decimals = price_decimals(snapshot)
    quantum = Decimal(1).scaleb(-decimals)

    bid, ask, f = _dec(snapshot.bid), _dec(snapshot.ask), _dec(factor)
    center = (bid + ask) / 2
    buy = (bid + (center - bid) * f).quantize(quantum, rounding=ROUND_HALF_UP)
    sell = (ask - (ask - center) * f).quantize(quantum, rounding=ROUND_HALF_UP)

    if buy <= 0:
        raise InvalidPlan(f"buy price rounds to {buy} at {decimals} decimals")
    if sell <= buy:
        raise InvalidPlan(
            f"narrowed prices are too close or equal (buy: {buy}, sell: {sell}); "
            "use a lower spread narrowing factor"
        )

    margin = sell - buy
    return SpreadPlan(
        bid=snapshot.bid,
        ask=snapshot.ask,
        center_price=float(center),
        buy_price=float(buy),
        sell_price=float(sell),
        narrowing_factor=factor,
        volume=volume,
        estimated_profit=float(margin * _dec(volume)),
        estimated_profit_pct=float(margin / buy * 100),
        price_decimals=decimals,
    )
