from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from spreadbot.execution.trader import SpreadTrader
from spreadbot.execution.watchdog import CancellationState, PriceLimitWatchdog
from spreadbot.models.schemas import TradeOutcome, TradeResult

logger = logging.getLogger(__name__)


@dataclass
class LoopSummary:
    completed: int = 0
    canceled: bool = False
    outcomes: List[TradeOutcome] = field(default_factory=list)


def run_supervised(
    trader: SpreadTrader,
    watchdog: PriceLimitWatchdog,
    state: CancellationState,
    coin: str,
    volume: float,
    iterations: int = 10,
    narrowing_factor: float = 0.0,
    untradeable: bool = False,
) -> LoopSummary:
    """Run trades back to back while the watchdog guards the price limit.

    The flag is checked before every trade; an in-flight trade is never
    preempted. If the watchdog fired, this waits for its cleanup before
    returning. Errors from a trade propagate after the watchdog is settled.
    """
    summary = LoopSummary()
    watchdog.start()
    try:
        for i in range(1, iterations + 1):
            if state.is_canceled():
                logger.warning("Price limit exceeded; no further trades")
                break
            logger.info("Running iteration %d of %d", i, iterations)
            outcome = trader.trade(
                coin,
                volume,
                narrowing_factor=narrowing_factor,
                untradeable=untradeable,
                stop_event=state.stop_event,
            )
            if outcome is not None:
                summary.outcomes.append(outcome)
                if outcome.result is TradeResult.FILLED:
                    summary.completed += 1
                    logger.info("SUCCESSFUL TRADE %d", i)
    finally:
        if state.is_canceled():
            logger.info("Waiting for watchdog cleanup...")
            watchdog.join()
            logger.info("Cleanup complete")
        else:
            watchdog.stop()
            watchdog.join()
        summary.canceled = state.is_canceled()
    return summary
