import base64
import hashlib
import hmac
import json
import time

import pytest

from spreadbot.api.kraken_client import (
    KrakenAPIError,
    KrakenAuthError,
    KrakenClient,
    KrakenHTTPError,
    format_decimal,
    kraken_signature,
)
from spreadbot.models.schemas import OrderStatus, Side

SECRET = base64.b64encode(b"not-a-real-secret").decode()


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)


def make_client(responses, **kwargs):
    client = KrakenClient(api_key="key", api_secret=SECRET, base_url="https://example.com", **kwargs)
    client.session = FakeSession(responses)
    return client


def test_signature_matches_kraken_scheme():
    body = '{"nonce": "1616492376594", "txid": "OABC"}'
    expected_digest = hashlib.sha256(("1616492376594" + body).encode()).digest()
    expected = base64.b64encode(
        hmac.new(b"not-a-real-secret", b"/0/private/QueryOrders" + expected_digest, hashlib.sha512).digest()
    ).decode()

    assert kraken_signature("/0/private/QueryOrders", body, "1616492376594", SECRET) == expected


def test_invalid_secret_is_auth_error():
    with pytest.raises(KrakenAuthError):
        kraken_signature("/0/private/Balance", "{}", "1", "not base64!")


def test_nonce_strictly_increases_when_clock_stalls(monkeypatch):
    client = make_client([])
    monkeypatch.setattr(time, "time", lambda: 1700000000.0)

    nonces = [client._next_nonce() for _ in range(5)]
    assert nonces == sorted(set(nonces))
    assert nonces[0] == 1700000000000


def test_private_request_signs_payload():
    client = make_client([FakeResponse(200, {"error": [], "result": {"count": 1}})])

    assert client.cancel_order("OTX1") == 1

    method, url, kwargs = client.session.calls[0]
    assert method == "POST"
    assert url == "https://example.com/0/private/CancelOrder"
    body = json.loads(kwargs["data"])
    assert body["txid"] == "OTX1"
    assert kwargs["headers"]["API-Key"] == "key"
    assert kwargs["headers"]["API-Sign"] == kraken_signature(
        "/0/private/CancelOrder", kwargs["data"], body["nonce"], SECRET
    )


def test_auth_errors_are_not_retried():
    client = make_client([FakeResponse(200, {"error": ["EAPI:Invalid nonce"], "result": {}})])

    with pytest.raises(KrakenAuthError):
        client.query_order("OTX1")
    assert len(client.session.calls) == 1


def test_private_request_without_credentials():
    client = KrakenClient(base_url="https://example.com")
    with pytest.raises(KrakenAuthError):
        client.balance_ex()


def test_public_request_retries_transient_status(monkeypatch):
    ticker = {"XXBTZUSD": {"a": ["101.0", "1", "1.0"], "b": ["100.0", "1", "1.0"]}}
    client = make_client([FakeResponse(429, {}), FakeResponse(200, {"error": [], "result": ticker})])
    monkeypatch.setattr(time, "sleep", lambda *_args, **_kwargs: None)

    entry = client.ticker("BTC/USD")
    assert entry["a"][0] == "101.0"
    assert len(client.session.calls) == 2


def test_private_request_http_error_is_not_retried():
    client = make_client([FakeResponse(502, {"error": "bad"})])

    with pytest.raises(KrakenHTTPError):
        client.add_order("SOL/USD", Side.BUY, 1.5, 100.0)
    assert len(client.session.calls) == 1


def test_add_order_payload_and_txid():
    client = make_client([
        FakeResponse(200, {"error": [], "result": {"descr": {"order": "buy 1.5 SOLUSD @ limit 100"}, "txid": ["OBUY"]}})
    ])

    assert client.add_order("SOL/USD", Side.BUY, 1.5, 100.0) == "OBUY"
    body = json.loads(client.session.calls[0][2]["data"])
    assert body["ordertype"] == "limit"
    assert body["type"] == "buy"
    assert body["pair"] == "SOL/USD"
    assert body["price"] == "100"
    assert body["volume"] == "1.5"


def test_add_order_without_txid_fails():
    client = make_client([FakeResponse(200, {"error": [], "result": {"txid": []}})])
    with pytest.raises(KrakenAPIError):
        client.add_order("SOL/USD", Side.SELL, 1, 101.0)


def test_market_order_has_no_price():
    client = make_client([FakeResponse(200, {"error": [], "result": {"txid": ["OMKT"]}})])

    assert client.add_order("SOL/USD", Side.SELL, 2, ordertype="market") == "OMKT"
    body = json.loads(client.session.calls[0][2]["data"])
    assert "price" not in body
    assert body["ordertype"] == "market"


def test_query_order_parses_status():
    payload = {
        "OTX1": {
            "status": "closed",
            "descr": {"pair": "SOLUSD", "type": "buy", "price": "99.50", "order": "buy 10 SOLUSD @ limit 99.50"},
            "price": "99.48",
            "vol": "10",
            "vol_exec": "10",
            "fee": "0.25",
        }
    }
    client = make_client([FakeResponse(200, {"error": [], "result": payload})])

    info = client.query_order("OTX1")
    assert info.status is OrderStatus.CLOSED
    assert info.side is Side.BUY
    assert info.executed_price == pytest.approx(99.48)
    assert info.fee == pytest.approx(0.25)
    assert info.fill_pct == pytest.approx(100.0)


def test_edit_order_returns_replacement_txid():
    client = make_client([
        FakeResponse(200, {"error": [], "result": {"status": "ok", "txid": "ONEW", "originaltxid": "OOLD"}})
    ])

    assert client.edit_order("OOLD", "SOLUSD", 10, 99.9975) == "ONEW"
    body = json.loads(client.session.calls[0][2]["data"])
    assert body["price"] == "99.99750"
    assert body["txid"] == "OOLD"


def test_cancel_order_zero_count_is_error():
    client = make_client([FakeResponse(200, {"error": [], "result": {"count": 0}})])
    with pytest.raises(KrakenAPIError):
        client.cancel_order("OTX1")


def test_open_orders_filters_by_pair():
    open_orders = {
        "O1": {"status": "open", "descr": {"pair": "SOLUSD", "type": "buy", "price": "100", "order": "buy 1 SOLUSD @ limit 100"}, "vol": "1"},
        "O2": {"status": "open", "descr": {"pair": "XBTUSD", "type": "sell", "price": "9", "order": "sell 1 XBTUSD @ limit 9"}, "vol": "1"},
        "O3": {"status": "", "descr": {}},
    }
    client = make_client([FakeResponse(200, {"error": [], "result": {"open": open_orders}})])

    orders = client.open_orders("SOLUSD")
    assert list(orders) == ["O1"]


def test_balance_ex_parses_entries():
    result = {"USD.F": {"balance": "500.00", "hold_trade": "100.00"}, "SOL.F": {"balance": "12.5"}}
    client = make_client([FakeResponse(200, {"error": [], "result": result})])

    balances = client.balance_ex()
    assert balances["USD.F"].available == pytest.approx(400.0)
    assert balances["SOL.F"].available == pytest.approx(12.5)


def test_format_decimal_strips_trailing_zeros():
    assert format_decimal(10.0) == "10"
    assert format_decimal(0.00012) == "0.00012"


def test_cancel_all_orders_cancels_only_matching_pair():
    open_orders = {
        "O1": {"status": "open", "descr": {"pair": "SOLUSD", "type": "buy", "price": "100", "order": "buy 1 SOLUSD @ limit 100"}, "vol": "1"},
        "O2": {"status": "open", "descr": {"pair": "XBTUSD", "type": "sell", "price": "9", "order": "sell 1 XBTUSD @ limit 9"}, "vol": "1"},
    }
    client = make_client([
        FakeResponse(200, {"error": [], "result": {"open": open_orders}}),
        FakeResponse(200, {"error": [], "result": {"count": 1}}),
    ])

    assert client.cancel_all_orders("SOLUSD") == 1
    _method, url, kwargs = client.session.calls[-1]
    assert url.endswith("/0/private/CancelOrder")
    assert json.loads(kwargs["data"])["txid"] == "O1"
