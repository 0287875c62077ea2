from __future__ import annotations

import logging
import threading
from typing import Optional

import schedule

from spreadbot.api.balance import asset_code, available_balance
from spreadbot.api.kraken_client import KrakenClient, KrakenError, pair_code, pair_name
from spreadbot.data.market import MarketReader
from spreadbot.models.schemas import Side

logger = logging.getLogger(__name__)


class CancellationState:
    """The only state shared between the trading loop and the watchdog.

    Once canceled it stays canceled.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._canceled = False
        self.stop_event = threading.Event()

    def cancel(self) -> bool:
        """Set the flag; True only for the call that flipped it."""
        with self._lock:
            first = not self._canceled
            self._canceled = True
        self.stop_event.set()
        return first

    def is_canceled(self) -> bool:
        with self._lock:
            return self._canceled


class PriceLimitWatchdog(threading.Thread):
    """Watches the bid and, once it exceeds limit_price, cancels and flattens.

    Cleanup is: cancel every open order for the pair, verify, one more
    cancel-and-verify if anything survived, then a single limit sell at the
    bid for whatever base asset is left. A failed step is retried on the next
    tick. The thread ends after cleanup succeeds or stop() is called.
    """

    def __init__(
        self,
        client: KrakenClient,
        reader: MarketReader,
        coin: str,
        limit_price: float,
        state: CancellationState,
        interval: float = 10.0,
        quote: str = "USD",
        asset: Optional[str] = None,
    ) -> None:
        super().__init__(name=f"watchdog-{coin.upper()}", daemon=True)
        self.client = client
        self.reader = reader
        self.coin = coin.upper()
        self.limit_price = limit_price
        self.state = state
        self.interval = interval
        self.pair = pair_name(coin, quote)
        self.pair_filter = pair_code(coin, quote)
        self.asset = asset or asset_code(coin)
        self.scheduler = schedule.Scheduler()
        self.cleanup_done = threading.Event()
        self.breach_price: Optional[float] = None
        self.exit_txid: Optional[str] = None
        self._halt = threading.Event()

    def run(self) -> None:
        self.scheduler.every(self.interval).seconds.do(self.tick)
        try:
            while self.scheduler.jobs:
                # After a breach only a finished cleanup ends the loop.
                if self._halt.is_set() and not self.state.is_canceled():
                    break
                self.scheduler.run_pending()
                self.cleanup_done.wait(min(1.0, self.interval))
        finally:
            self.scheduler.clear()
        logger.info("Watchdog for %s stopped", self.pair)

    def stop(self) -> None:
        """End the thread if no breach has happened; otherwise cleanup still runs to completion."""
        self._halt.set()

    def tick(self):
        if not self.state.is_canceled():
            try:
                snapshot = self.reader.snapshot(self.coin)
            except KrakenError as exc:
                logger.warning("Watchdog could not read %s price: %s", self.pair, exc)
                return None
            logger.info("Current bid of %s: %.8f (limit %.8f)", self.pair, snapshot.bid, self.limit_price)
            if snapshot.bid <= self.limit_price:
                return None
            logger.warning("Price limit exceeded for %s: %.8f > %.8f", self.pair, snapshot.bid, self.limit_price)
            self.breach_price = snapshot.bid
            self.state.cancel()

        if self.cleanup():
            self.cleanup_done.set()
            return schedule.CancelJob
        return None

    def cleanup(self) -> bool:
        try:
            if not self.cancel_and_verify():
                return False
            if self.exit_txid is None:
                self._exit_position()
        except KrakenError as exc:
            logger.error("Watchdog cleanup for %s failed, retrying next tick: %s", self.pair, exc)
            return False
        return True

    def cancel_and_verify(self) -> bool:
        for attempt in (1, 2):
            canceled = self.client.cancel_all_orders(self.pair_filter)
            if canceled == 0:
                logger.info("No open orders found for %s", self.pair)
                return True
            logger.info("Canceled %d open orders for %s (attempt %d)", canceled, self.pair, attempt)
            orders = self.client.open_orders(self.pair_filter)
            if not orders:
                logger.info("Successfully canceled all open orders for %s", self.pair)
                return True
            logger.warning("%d orders still open for %s after cancellation", len(orders), self.pair)

        logger.error("Failed to cancel all %s orders after two attempts", self.pair)
        return False

    def _exit_position(self) -> None:
        balances = self.client.balance_ex()
        try:
            available = available_balance(balances, self.asset)
        except KeyError:
            logger.info("No %s balance reported; nothing to liquidate", self.asset)
            return
        if available <= 0:
            logger.info("No %s inventory left; nothing to liquidate", self.asset)
            return

        price = self._exit_price()
        self.exit_txid = self.client.add_order(self.pair, Side.SELL, available, price)
        logger.warning("Placed exit sell for %.8f %s at %.8f (%s)", available, self.coin, price, self.exit_txid)

    def _exit_price(self) -> float:
        try:
            return self.reader.snapshot(self.coin).bid
        except KrakenError as exc:
            if self.breach_price is None:
                raise
            logger.warning("Using breach price for exit order, fresh bid unavailable: %s", exc)
            return self.breach_price
