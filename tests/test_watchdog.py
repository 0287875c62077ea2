import schedule

from spreadbot.api.kraken_client import KrakenAPIError, KrakenHTTPError
from spreadbot.execution.watchdog import CancellationState, PriceLimitWatchdog
from spreadbot.models.schemas import Balance, MarketSnapshot, OrderInfo, Side


class FakeExchange:
    def __init__(self, open_txids=(), base_balance=0.0, stubborn=0, cancel_failures=0):
        self.open = {txid: OrderInfo(txid=txid, status="open", pair="SOLUSD", description=f"order {txid}")
                     for txid in open_txids}
        self.base_balance = base_balance
        self.stubborn = stubborn  # cancel calls that silently leave the order open
        self.cancel_failures = cancel_failures
        self.canceled = []
        self.open_queries = 0
        self.exit_orders = []

    def open_orders(self, pair_filter):
        self.open_queries += 1
        assert pair_filter == "SOLUSD"
        return dict(self.open)

    def cancel_order(self, txid):
        if self.cancel_failures:
            self.cancel_failures -= 1
            raise KrakenAPIError("/0/private/CancelOrder", ["EService:Unavailable"])
        self.canceled.append(txid)
        if self.stubborn:
            self.stubborn -= 1
            return 1
        self.open.pop(txid, None)
        return 1

    def cancel_all_orders(self, pair_filter):
        orders = self.open_orders(pair_filter)
        for txid in orders:
            self.cancel_order(txid)
        return len(orders)

    def balance_ex(self):
        return {"SOL.F": Balance(asset="SOL.F", balance=self.base_balance)}

    def add_order(self, pair, side, volume, price=None, ordertype="limit"):
        self.exit_orders.append((pair, side, volume, price))
        return "OEXIT"


class FakeReader:
    def __init__(self, bids):
        self.bids = list(bids)

    def snapshot(self, coin):
        bid = self.bids.pop(0) if len(self.bids) > 1 else self.bids[0]
        if isinstance(bid, Exception):
            raise bid
        return MarketSnapshot(pair="SOL/USD", bid=bid, ask=bid + 0.5, high=bid + 1, low=bid - 1)


def make_watchdog(exchange, bids, limit=105.0, interval=10.0):
    state = CancellationState()
    watchdog = PriceLimitWatchdog(exchange, FakeReader(bids), "SOL", limit, state, interval=interval)
    return watchdog, state


def test_cancellation_state_is_monotonic():
    state = CancellationState()
    assert not state.is_canceled()
    assert state.cancel() is True
    assert state.cancel() is False
    assert state.is_canceled()
    assert state.stop_event.is_set()


def test_price_below_limit_does_nothing():
    exchange = FakeExchange(open_txids=["O1", "O2"])
    watchdog, state = make_watchdog(exchange, [104.0])

    assert watchdog.tick() is None
    assert not state.is_canceled()
    assert exchange.open_queries == 0


def test_breach_cancels_all_and_verifies():
    exchange = FakeExchange(open_txids=["O1", "O2"])
    watchdog, state = make_watchdog(exchange, [106.0])

    assert watchdog.tick() is schedule.CancelJob

    assert state.is_canceled()
    assert sorted(exchange.canceled) == ["O1", "O2"]
    assert exchange.open == {}
    assert exchange.open_queries == 2
    assert exchange.exit_orders == []
    assert watchdog.cleanup_done.is_set()


def test_breach_liquidates_remaining_inventory_once():
    exchange = FakeExchange(open_txids=["O1"], base_balance=3.0)
    watchdog, _state = make_watchdog(exchange, [106.0, 105.8])

    watchdog.tick()

    assert exchange.exit_orders == [("SOL/USD", Side.SELL, 3.0, 105.8)]
    assert watchdog.exit_txid == "OEXIT"


def test_second_cancel_pass_when_orders_survive():
    exchange = FakeExchange(open_txids=["O1", "O2"], stubborn=1)
    watchdog, _state = make_watchdog(exchange, [106.0])

    assert watchdog.cancel_and_verify() is True
    assert exchange.open_queries == 4
    assert len(exchange.canceled) == 3


def test_gives_up_after_two_passes_and_retries_next_tick():
    exchange = FakeExchange(open_txids=["O1"], stubborn=2)
    watchdog, state = make_watchdog(exchange, [106.0, 100.0])

    assert watchdog.tick() is None
    assert state.is_canceled()
    assert not watchdog.cleanup_done.is_set()

    # Price is back under the limit, but the flag stays set and cleanup resumes.
    assert watchdog.tick() is schedule.CancelJob
    assert state.is_canceled()
    assert exchange.open == {}


def test_cancel_error_is_retried_next_tick():
    exchange = FakeExchange(open_txids=["O1"], cancel_failures=1)
    watchdog, state = make_watchdog(exchange, [106.0])

    assert watchdog.tick() is None
    assert state.is_canceled()
    assert watchdog.tick() is schedule.CancelJob
    assert exchange.canceled == ["O1"]


def test_price_read_error_is_tolerated():
    exchange = FakeExchange()
    watchdog, state = make_watchdog(exchange, [KrakenHTTPError("timeout"), 104.0])

    assert watchdog.tick() is None
    assert not state.is_canceled()


def test_thread_finishes_after_cleanup():
    exchange = FakeExchange(open_txids=["O1", "O2"])
    watchdog, state = make_watchdog(exchange, [106.0], interval=0.01)

    watchdog.start()
    watchdog.join(timeout=5)

    assert not watchdog.is_alive()
    assert watchdog.cleanup_done.is_set()
    assert exchange.open == {}


def test_stop_without_breach_ends_thread():
    exchange = FakeExchange(open_txids=["O1"])
    watchdog, state = make_watchdog(exchange, [100.0], interval=0.01)

    watchdog.start()
    watchdog.stop()
    watchdog.join(timeout=5)

    assert not watchdog.is_alive()
    assert not state.is_canceled()
    assert exchange.canceled == []
