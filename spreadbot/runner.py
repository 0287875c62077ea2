from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from spreadbot.api.balance import UnknownAssetError, asset_code
from spreadbot.api.kraken_client import KrakenClient, KrakenError
from spreadbot.config import ConfigError, Settings
from spreadbot.data.market import MarketReader
from spreadbot.execution.coordinator import OrderPairCoordinator, OrderPlacementError, PartialSubmissionError
from spreadbot.execution.supervisor import run_supervised
from spreadbot.execution.trader import InsufficientBalanceError, SpreadTrader
from spreadbot.execution.watchdog import CancellationState, PriceLimitWatchdog
from spreadbot.notify.slack import SlackNotifier
from spreadbot.strategy.spread_planner import InvalidPlan

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP = 1
EXIT_PARTIAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spreadbot", description="Kraken spread trading bot")
    sub = parser.add_subparsers(dest="command", required=True)

    trade = sub.add_parser("trade", help="Run a single spread trade")
    loop = sub.add_parser("loop", help="Run trades back to back behind a price-limit watchdog")
    for p in (trade, loop):
        p.add_argument("--coin", required=True, help="Base coin to trade (e.g. BTC, SOL)")
        p.add_argument("--volume", type=float, required=True, help="Base coin volume to trade")
        p.add_argument("--narrow", type=float, default=0.0,
                       help="Spread narrowing factor in [0, 1]; 0 keeps bid/ask, 1 is the center price")
        p.add_argument("--untradeable", action="store_true",
                       help="Place orders at prices that cannot execute (close them manually)")
    trade.add_argument("--order", action="store_true", help="Place actual orders (default: dry run)")
    loop.add_argument("--iterations", type=int, default=10, help="Number of trades to execute")
    loop.add_argument("--limitprice", type=float, required=True, help="Bid above which everything is liquidated")

    sub.add_parser("balance", help="Print the account balances")
    return parser


def _components(settings: Settings):
    client = KrakenClient(settings.api_key, settings.api_secret, base_url=settings.base_url)
    reader = MarketReader(client, quote=settings.quote)
    notifier = SlackNotifier(settings.slack_webhook)
    coordinator = OrderPairCoordinator(
        client,
        notifier,
        poll_interval=settings.poll_interval,
        initial_wait=settings.initial_wait,
        profit_margin=settings.profit_margin,
        reprice=settings.reprice,
        quote=settings.quote,
        reader=reader,
    )
    trader = SpreadTrader(client, reader, coordinator, notifier, settings)
    return client, reader, trader


def _validate(args: argparse.Namespace) -> None:
    if args.volume <= 0:
        raise ConfigError("--volume must be positive")
    asset_code(args.coin)
    if getattr(args, "limitprice", 1.0) <= 0:
        raise ConfigError("--limitprice must be positive")
    if getattr(args, "iterations", 1) <= 0:
        raise ConfigError("--iterations must be positive")


def _print_balances(client: KrakenClient) -> None:
    for asset, entry in sorted(client.balance_ex().items()):
        print(f"{asset:>10}  balance {entry.balance:.8f}  hold {entry.hold_trade:.8f}  available {entry.available:.8f}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
        settings.require_credentials()
        if args.command != "balance":
            _validate(args)
    except (ConfigError, UnknownAssetError) as exc:
        logger.error("%s", exc)
        return EXIT_SETUP

    client, reader, trader = _components(settings)

    try:
        if args.command == "balance":
            _print_balances(client)
            return EXIT_OK

        logger.info("Trading %s/%s, volume %s", args.coin.upper(), settings.quote, args.volume)
        if args.untradeable:
            logger.info("Running in untradeable mode (orders will be placed at extreme prices)")

        if args.command == "trade":
            outcome = trader.trade(
                args.coin,
                args.volume,
                narrowing_factor=args.narrow,
                untradeable=args.untradeable,
                place_orders=args.order,
            )
            if outcome is not None:
                logger.info("Trade finished: %s", outcome.result.value)
            return EXIT_OK

        state = CancellationState()
        watchdog = PriceLimitWatchdog(
            client, reader, args.coin, args.limitprice, state, interval=settings.watchdog_interval,
        )
        summary = run_supervised(
            trader,
            watchdog,
            state,
            args.coin,
            args.volume,
            iterations=args.iterations,
            narrowing_factor=args.narrow,
            untradeable=args.untradeable,
        )
        logger.info("Loop finished: %d trades filled, canceled=%s", summary.completed, summary.canceled)
        return EXIT_OK
    except PartialSubmissionError as exc:
        logger.critical("Manual intervention required: %s", exc)
        return EXIT_PARTIAL
    except (InvalidPlan, InsufficientBalanceError, OrderPlacementError, KrakenError) as exc:
        logger.error("%s", exc)
        return EXIT_SETUP


if __name__ == "__main__":
    raise SystemExit(main())
