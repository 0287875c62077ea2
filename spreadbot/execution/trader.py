from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from spreadbot.api.balance import USD_ALIAS, USD_CODE, asset_code, available_balance
from spreadbot.api.kraken_client import KrakenClient
from spreadbot.config import Settings
from spreadbot.data.market import MarketReader
from spreadbot.execution.coordinator import OrderPairCoordinator
from spreadbot.models.schemas import MarketSnapshot, TradeOutcome
from spreadbot.notify.slack import SlackNotifier
from spreadbot.strategy.spread_planner import InvalidPlan, plan_spread

logger = logging.getLogger(__name__)


class InsufficientBalanceError(Exception):
    """Not enough base or quote asset to cover both legs."""


class SpreadTrader:
    """One spread trade end to end: balances, plan, place, poll."""

    def __init__(
        self,
        client: KrakenClient,
        reader: MarketReader,
        coordinator: OrderPairCoordinator,
        notifier: Optional[SlackNotifier] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.reader = reader
        self.coordinator = coordinator
        self.notifier = notifier
        self.settings = settings or Settings()
        self._sleep = sleep

    def check_balances(self, coin: str, volume: float, snapshot: MarketSnapshot) -> None:
        balances = self.client.balance_ex()
        code = asset_code(coin)
        try:
            base = available_balance(balances, code)
            usd = available_balance(balances, USD_CODE, USD_ALIAS)
        except KeyError as exc:
            raise InsufficientBalanceError(str(exc)) from exc

        logger.info("Available %s: %.8f, available USD: %.2f", code, base, usd)
        if base < volume:
            raise InsufficientBalanceError(f"Insufficient {coin} balance (have: {base:.8f}, need: {volume:.8f})")
        required = volume * snapshot.bid
        if usd < required:
            raise InsufficientBalanceError(f"Insufficient USD balance (have: {usd:.2f}, need: {required:.2f})")

    def market_ok(self, coin: str, snapshot: MarketSnapshot) -> bool:
        max_spread = self.settings.max_spread_pct
        min_volume = self.settings.min_volume_usd
        if max_spread is not None and snapshot.spread_pct > max_spread:
            logger.info("Spread %.4f%% is above %.4f%%", snapshot.spread_pct, max_spread)
            return False
        if min_volume is not None:
            volume_24h = self.reader.volume_24h_usd(coin)
            if volume_24h < min_volume:
                logger.info("24h volume %.2f USD is below %.2f USD", volume_24h, min_volume)
                return False
        return True

    def wait_for_market(self, coin: str, stop_event: Optional[threading.Event] = None) -> Optional[MarketSnapshot]:
        """Fresh snapshot once spread and volume gates pass; None if stopped while waiting."""
        while True:
            snapshot = self.reader.snapshot(coin)
            if self.market_ok(coin, snapshot):
                return snapshot
            if stop_event is not None and stop_event.is_set():
                return None
            self._sleep(self.settings.poll_interval)

    def _plan(self, snapshot: MarketSnapshot, volume: float, narrowing_factor: float):
        try:
            return plan_spread(snapshot, volume, narrowing_factor)
        except InvalidPlan as exc:
            logger.error("Trade %s cancelled: %s", snapshot.pair, exc)
            if self.notifier is not None:
                self.notifier.send(f"❌ Trade {snapshot.pair} cancelled\nReason: {exc}")
            raise

    def trade(
        self,
        coin: str,
        volume: float,
        narrowing_factor: float = 0.0,
        untradeable: bool = False,
        place_orders: bool = True,
        stop_event: Optional[threading.Event] = None,
    ) -> Optional[TradeOutcome]:
        snapshot = self.reader.snapshot(coin)
        logger.info(
            "%s bid %s ask %s spread %.8f (%.4f%%) 24h high %s low %s",
            snapshot.pair, snapshot.bid, snapshot.ask, snapshot.spread, snapshot.spread_pct,
            snapshot.high, snapshot.low,
        )
        self.check_balances(coin, volume, snapshot)
        plan = self._plan(snapshot, volume, narrowing_factor)
        logger.info(
            "Plan for %s: buy %s sell %s, estimated profit %.2f (%.4f%%)",
            snapshot.pair, plan.buy_price, plan.sell_price, plan.estimated_profit, plan.estimated_profit_pct,
        )

        if not place_orders:
            logger.info("Order placement disabled; skipping")
            return None

        # Prices move while we wait on the gates, so plan again from the fresh read.
        fresh = self.wait_for_market(coin, stop_event)
        if fresh is None:
            logger.warning("Stop requested before %s orders were placed", snapshot.pair)
            return None
        plan = self._plan(fresh, volume, narrowing_factor)
        if stop_event is not None and stop_event.is_set():
            logger.warning("Stop requested; not placing %s orders", snapshot.pair)
            return None

        position = self.coordinator.open(coin, plan, volume, untradeable=untradeable)
        return self.coordinator.run(position, stop_event=stop_event)
