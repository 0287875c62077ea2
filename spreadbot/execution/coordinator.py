from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from spreadbot.api.kraken_client import KrakenClient, KrakenError, pair_name
from spreadbot.data.market import MarketReader
from spreadbot.models.schemas import (
    OrderInfo,
    OrderLeg,
    OrderStatus,
    PairState,
    Side,
    SpreadPlan,
    TradeOutcome,
    TradePosition,
    TradeResult,
)
from spreadbot.notify.slack import SlackNotifier

logger = logging.getLogger(__name__)

UNTRADEABLE_FACTOR = 10.0
WORKING_STATUSES = (OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIAL)


class OrderPlacementError(Exception):
    """No order of the pair reached the exchange."""


class PartialSubmissionError(Exception):
    """One leg is live on the exchange and the other failed. Needs manual cleanup."""

    def __init__(self, pair: str, live_txid: str, live_side: Side, cause: Exception):
        super().__init__(
            f"{pair}: {live_side.value} order {live_txid} is live but the opposite leg failed ({cause}); "
            "cancel it manually"
        )
        self.pair = pair
        self.live_txid = live_txid
        self.live_side = live_side
        self.cause = cause


def evaluate_pair(buy_status: OrderStatus, sell_status: OrderStatus) -> PairState:
    if buy_status is OrderStatus.CLOSED and sell_status is OrderStatus.CLOSED:
        return PairState.FILLED
    if buy_status is OrderStatus.CANCELED and sell_status is OrderStatus.CANCELED:
        return PairState.CANCELED
    return PairState.PENDING


class OrderPairCoordinator:
    """Places a buy/sell pair and polls it until both legs close or both are canceled.

    When one leg closes while the other is still open, the open leg is edited
    once to the filled price plus (or minus) profit_margin. The per-leg flag on
    the position is set only after the exchange accepts the edit, so a failed
    edit is retried on the next cycle and a successful one is never repeated.
    """

    def __init__(
        self,
        client: KrakenClient,
        notifier: Optional[SlackNotifier] = None,
        poll_interval: float = 20.0,
        initial_wait: float = 10.0,
        profit_margin: float = 0.005,
        reprice: bool = True,
        quote: str = "USD",
        sleep: Callable[[float], None] = time.sleep,
        reader: Optional[MarketReader] = None,
    ) -> None:
        self.client = client
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.initial_wait = initial_wait
        self.profit_margin = profit_margin
        self.reprice = reprice
        self.quote = quote
        self._sleep = sleep
        self.reader = reader

    def _notify(self, text: str) -> None:
        if self.notifier is not None:
            self.notifier.send(text)

    def open(self, coin: str, plan: SpreadPlan, volume: float, untradeable: bool = False) -> TradePosition:
        pair = pair_name(coin, self.quote)
        buy_price, sell_price = plan.buy_price, plan.sell_price
        if untradeable:
            buy_price = plan.buy_price / UNTRADEABLE_FACTOR
            sell_price = plan.sell_price * UNTRADEABLE_FACTOR
            logger.info("Untradeable mode: buy %.8f -> %.8f, sell %.8f -> %.8f",
                        plan.buy_price, buy_price, plan.sell_price, sell_price)

        try:
            buy_txid = self.client.add_order(pair, Side.BUY, volume, buy_price)
        except KrakenError as exc:
            raise OrderPlacementError(f"{pair}: buy order failed, nothing was placed ({exc})") from exc

        try:
            sell_txid = self.client.add_order(pair, Side.SELL, volume, sell_price)
        except KrakenError as exc:
            error = PartialSubmissionError(pair, buy_txid, Side.BUY, exc)
            logger.critical("PARTIAL SUBMISSION: %s", error)
            self._notify(f"🚨 PARTIAL SUBMISSION on {pair}\n{error}")
            raise error from exc

        position = TradePosition(
            coin=coin.upper(),
            pair=pair,
            volume=volume,
            plan=plan,
            buy_leg=OrderLeg(txid=buy_txid, side=Side.BUY, requested_price=buy_price, requested_volume=volume),
            sell_leg=OrderLeg(txid=sell_txid, side=Side.SELL, requested_price=sell_price, requested_volume=volume),
        )
        logger.info("Orders placed for %s: buy %s @ %s, sell %s @ %s", pair, buy_txid, buy_price, sell_txid, sell_price)
        self._notify(
            f"🔄 Placed spread orders for {pair}\n"
            f"Volume: {volume:.5f}\n"
            f"Bid/ask: {plan.bid} / {plan.ask}\n"
            f"Spread narrowing: {plan.narrowing_factor * 100:.2f}%\n"
            f"Buy: {buy_price} ({buy_txid})\n"
            f"Sell: {sell_price} ({sell_txid})\n"
            f"Estimated profit: {plan.estimated_profit:.2f} {self.quote} ({plan.estimated_profit_pct:.4f}%)"
            + ("\nUNTRADEABLE prices" if untradeable else "")
        )
        return position

    def poll_once(self, position: TradePosition) -> PairState:
        """One status cycle: refresh both legs, reprice if due, classify the pair."""
        buy_info = self.client.query_order(position.buy_leg.txid)
        sell_info = self.client.query_order(position.sell_leg.txid)
        position.buy_leg.apply(buy_info)
        position.sell_leg.apply(sell_info)
        logger.info(
            "%s buy %s [%s %.2f%%] / sell %s [%s %.2f%%]",
            position.pair,
            buy_info.txid, buy_info.status.value, buy_info.fill_pct,
            sell_info.txid, sell_info.status.value, sell_info.fill_pct,
        )

        if self.reprice:
            self._maybe_reprice(position, buy_info, sell_info)
        return evaluate_pair(position.buy_leg.status, position.sell_leg.status)

    def _maybe_reprice(self, position: TradePosition, buy_info: OrderInfo, sell_info: OrderInfo) -> bool:
        buy, sell = position.buy_leg, position.sell_leg
        if buy.status is OrderStatus.CLOSED and sell.status is OrderStatus.OPEN and not position.repriced_sell:
            filled, target, info, flag = buy, sell, sell_info, "repriced_sell"
            new_price = (buy.executed_price or buy.requested_price) * (1 + self.profit_margin)
        elif sell.status is OrderStatus.CLOSED and buy.status is OrderStatus.OPEN and not position.repriced_buy:
            filled, target, info, flag = sell, buy, buy_info, "repriced_buy"
            new_price = (sell.executed_price or sell.requested_price) * (1 - self.profit_margin)
        else:
            return False

        try:
            new_txid = self.client.edit_order(target.txid, info.pair or position.pair, target.requested_volume, new_price)
        except KrakenError as exc:
            logger.warning("Repricing %s leg %s failed, will retry next cycle: %s", target.side.value, target.txid, exc)
            return False

        old_txid = target.txid
        target.replace_txid(new_txid, new_price)
        setattr(position, flag, True)
        logger.info(
            "%s leg filled at %s; %s leg %s repriced to %.8f as %s",
            filled.side.value, filled.executed_price, target.side.value, old_txid, new_price, new_txid,
        )
        return True

    def run(self, position: TradePosition, stop_event: Optional[threading.Event] = None) -> TradeOutcome:
        """Poll until the pair is filled or canceled.

        stop_event is only looked at between whole cycles; when it is set and
        the pair is still pending, the legs still working on the book are
        canceled and an INTERRUPTED outcome is returned.
        """
        self._sleep(self.initial_wait)
        while True:
            try:
                state = self.poll_once(position)
            except KrakenError as exc:
                logger.warning("Status check for %s failed, retrying: %s", position.pair, exc)
                state = PairState.PENDING

            if state is PairState.FILLED:
                return self._filled(position)
            if state is PairState.CANCELED:
                return self._canceled(position)
            if stop_event is not None and stop_event.is_set():
                logger.warning("Stop requested while %s is unresolved; canceling working legs", position.pair)
                self.cancel_working_legs(position)
                return self._outcome(position, TradeResult.INTERRUPTED)
            self._sleep(self.poll_interval)

    def cancel_working_legs(self, position: TradePosition) -> List[str]:
        """Cancel every leg not known to be closed or canceled. Returns the txids that were canceled."""
        canceled = []
        for leg in (position.buy_leg, position.sell_leg):
            if leg.status not in WORKING_STATUSES:
                continue
            try:
                self.client.cancel_order(leg.txid)
            except KrakenError as exc:
                logger.error("Could not cancel %s leg %s of %s, cancel it manually: %s",
                             leg.side.value, leg.txid, position.pair, exc)
                self._notify(f"🚨 {position.pair} {leg.side.value} order {leg.txid} may still be open: {exc}")
                continue
            leg.status = OrderStatus.CANCELED
            canceled.append(leg.txid)
            logger.info("Canceled %s leg %s of %s", leg.side.value, leg.txid, position.pair)
        return canceled

    def _outcome(self, position: TradePosition, result: TradeResult) -> TradeOutcome:
        plan = position.plan
        return TradeOutcome(
            result=result,
            coin=position.coin,
            volume=position.volume,
            profit=plan.estimated_profit,
            profit_pct=plan.estimated_profit_pct,
            realized=False,
            buy_price=position.buy_leg.requested_price,
            sell_price=position.sell_leg.requested_price,
            buy_fee=position.buy_leg.fee or 0.0,
            sell_fee=position.sell_leg.fee or 0.0,
        )

    def _filled(self, position: TradePosition) -> TradeOutcome:
        buy_price = position.buy_leg.executed_price or position.buy_leg.requested_price
        sell_price = position.sell_leg.executed_price or position.sell_leg.requested_price
        outcome = TradeOutcome(
            result=TradeResult.FILLED,
            coin=position.coin,
            volume=position.volume,
            profit=(sell_price - buy_price) * position.volume,
            profit_pct=(sell_price - buy_price) / buy_price * 100,
            realized=True,
            buy_price=buy_price,
            sell_price=sell_price,
            buy_fee=position.buy_leg.fee or 0.0,
            sell_fee=position.sell_leg.fee or 0.0,
        )
        logger.info(
            "TRADE COMPLETE %s: profit %.2f %s (%.2f%%), fees %.2f",
            position.pair, outcome.profit, self.quote, outcome.profit_pct, outcome.total_fees,
        )
        self._notify(
            f"Trade {position.coin} in the volume {position.volume:.5f} executed\n"
            f"Profit: ${outcome.profit:.2f}\n"
            f"Gain: {outcome.profit_pct:.2f}%\n"
            f"Fees: ${outcome.total_fees:.2f} (Buy: ${outcome.buy_fee:.2f}, Sell: ${outcome.sell_fee:.2f})"
            + self._market_context(position.coin)
        )
        return outcome

    def _market_context(self, coin: str) -> str:
        """Current spread and 24h volume for the fill message; empty if unavailable."""
        if self.reader is None:
            return ""
        try:
            snapshot = self.reader.snapshot(coin)
            volume_24h = self.reader.volume_24h_usd(coin)
        except KrakenError as exc:
            logger.warning("Market context for %s unavailable: %s", coin, exc)
            return ""
        return (
            f"\nSpread now: {snapshot.spread:.8f} ({snapshot.spread_pct:.4f}%)"
            f"\n24h Volume: ${volume_24h:,.2f}"
        )

    def _canceled(self, position: TradePosition) -> TradeOutcome:
        outcome = self._outcome(position, TradeResult.CANCELED)
        logger.info(
            "TRADE CANCELED %s: unrealised profit %.2f %s (%.2f%%)",
            position.pair, outcome.profit, self.quote, outcome.profit_pct,
        )
        self._notify(
            f"Trade {position.coin} canceled\n"
            f"Unrealised profit: ${outcome.profit:.2f} (Gain: {outcome.profit_pct:.2f}%)"
        )
        return outcome
