from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from spreadbot.models.schemas import Balance, OrderInfo, Side

logger = logging.getLogger(__name__)

API_BASE = "https://api.kraken.com"

AUTH_ERRORS = (
    "EAPI:Invalid key",
    "EAPI:Invalid signature",
    "EAPI:Invalid nonce",
    "EGeneral:Permission denied",
)


class KrakenError(Exception):
    """Base class for everything the gateway raises."""


class KrakenHTTPError(KrakenError):
    """Raised when a Kraken HTTP request cannot be satisfied."""


class KrakenAPIError(KrakenError):
    """Raised when Kraken answers with a non-empty error array."""

    def __init__(self, path: str, errors: list[str]):
        super().__init__(f"{path} failed: {', '.join(errors)}")
        self.path = path
        self.errors = errors


class KrakenAuthError(KrakenAPIError):
    """Bad key, bad signature or stale nonce. Retrying reproduces it."""


def pair_name(coin: str, quote: str = "USD") -> str:
    return f"{coin.upper()}/{quote.upper()}"


def pair_code(coin: str, quote: str = "USD") -> str:
    return f"{coin.upper()}{quote.upper()}"


def format_decimal(value: float, places: int = 8) -> str:
    text = f"{value:.{places}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def kraken_signature(url_path: str, body: str, nonce: str, secret: str) -> str:
    """base64(HMAC-SHA512(b64decode(secret), path + SHA256(nonce + body)))"""
    try:
        key = base64.b64decode(secret)
    except (ValueError, TypeError) as exc:
        raise KrakenAuthError(url_path, [f"secret is not valid base64: {exc}"]) from exc
    digest = hashlib.sha256((nonce + body).encode()).digest()
    mac = hmac.new(key, url_path.encode() + digest, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


class KrakenClient:
    """Kraken REST client. Public GETs retry with backoff, private POSTs never do."""

    RETRY_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = API_BASE,
        timeout: float = 10.0,
        retries: int = 3,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": "spreadbot/0.1"})
        self._nonce_lock = threading.Lock()
        self._last_nonce = 0

    def _next_nonce(self) -> int:
        # Shared by the trading loop and the watchdog thread.
        with self._nonce_lock:
            nonce = max(int(time.time() * 1000), self._last_nonce + 1)
            self._last_nonce = nonce
            return nonce

    def _send(self, method: str, path: str, retry: bool, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        attempts = self.retries if retry else 1
        backoff = 1.0

        for attempt in range(1, attempts + 1):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:
                if attempt == attempts:
                    raise KrakenHTTPError(f"{method} {path} error after {attempt} attempt(s): {exc}") from exc
                time.sleep(backoff)
                backoff = min(backoff * 2, 10)
                continue

            if response.status_code in self.RETRY_STATUS and attempt < attempts:
                time.sleep(backoff)
                backoff = min(backoff * 2, 10)
                continue

            if response.status_code >= 400:
                raise KrakenHTTPError(f"{method} {path} failed: {response.status_code} {response.text[:200]}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise KrakenHTTPError(f"{method} {path} returned invalid JSON") from exc
            return self._unwrap(path, payload)

        raise KrakenHTTPError(f"{method} {path} exhausted retries")

    @staticmethod
    def _unwrap(path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        errors = payload.get("error") or []
        if errors:
            if any(err.startswith(AUTH_ERRORS) for err in errors):
                raise KrakenAuthError(path, errors)
            raise KrakenAPIError(path, errors)
        return payload.get("result") or {}

    def public_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._send("GET", path, retry=True, params=params)

    def private_request(self, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise KrakenAuthError(path, ["missing API credentials"])
        nonce = str(self._next_nonce())
        body = json.dumps({"nonce": nonce, **(data or {})})
        headers = {
            "API-Key": self.api_key,
            "API-Sign": kraken_signature(path, body, nonce, self.api_secret),
            "Content-Type": "application/json",
        }
        return self._send("POST", path, retry=False, data=body, headers=headers)

    # Public endpoints

    def ticker(self, pair: str) -> Dict[str, Any]:
        """Ticker entry for one pair; Kraken keys the result by its own pair name."""
        result = self.public_request("/0/public/Ticker", params={"pair": pair})
        if not result:
            raise KrakenAPIError("/0/public/Ticker", [f"no ticker data for {pair}"])
        return next(iter(result.values()))

    # Private endpoints

    def balance_ex(self) -> Dict[str, Balance]:
        result = self.private_request("/0/private/BalanceEx")
        return {
            asset: Balance(
                asset=asset,
                balance=float(entry.get("balance") or 0),
                hold_trade=float(entry.get("hold_trade") or 0),
            )
            for asset, entry in result.items()
        }

    def add_order(
        self,
        pair: str,
        side: Side,
        volume: float,
        price: Optional[float] = None,
        ordertype: str = "limit",
    ) -> str:
        if ordertype not in ("limit", "market"):
            raise ValueError(f"Unsupported order type: {ordertype}")
        data: Dict[str, Any] = {
            "ordertype": ordertype,
            "type": Side(side).value,
            "pair": pair,
            "volume": format_decimal(volume),
        }
        if ordertype == "limit":
            if price is None:
                raise ValueError("limit orders need a price")
            data["price"] = format_decimal(price)
        result = self.private_request("/0/private/AddOrder", data)
        txids = result.get("txid") or []
        if not txids:
            raise KrakenAPIError("/0/private/AddOrder", ["no transaction id returned"])
        logger.info("Placed %s %s order: %s", ordertype, data["type"], (result.get("descr") or {}).get("order", ""))
        return txids[0]

    def query_order(self, txid: str) -> OrderInfo:
        result = self.private_request("/0/private/QueryOrders", {"txid": txid})
        if txid not in result:
            raise KrakenAPIError("/0/private/QueryOrders", [f"order {txid} not found"])
        return OrderInfo.from_kraken(txid, result[txid])

    def edit_order(self, txid: str, pair: str, volume: float, price: float) -> str:
        """Edit in place. Returns the replacement txid; the old one stays queryable but inert."""
        data = {
            "pair": pair,
            "txid": txid,
            "volume": format_decimal(volume),
            "price": f"{price:.5f}",
        }
        result = self.private_request("/0/private/EditOrder", data)
        if result.get("status") not in (None, "ok"):
            raise KrakenAPIError("/0/private/EditOrder", [f"edit failed: {result.get('status')}"])
        new_txid = result.get("txid")
        if not new_txid:
            raise KrakenAPIError("/0/private/EditOrder", ["no new transaction id returned"])
        return new_txid

    def cancel_order(self, txid: str) -> int:
        result = self.private_request("/0/private/CancelOrder", {"txid": txid})
        count = int(result.get("count") or 0)
        if count == 0:
            raise KrakenAPIError("/0/private/CancelOrder", [f"no orders were canceled for {txid}"])
        return count

    def open_orders(self, pair_filter: str) -> Dict[str, OrderInfo]:
        """Open orders whose description mentions pair_filter (e.g. SOLUSD)."""
        result = self.private_request("/0/private/OpenOrders")
        matched: Dict[str, OrderInfo] = {}
        for txid, entry in (result.get("open") or {}).items():
            descr = entry.get("descr") or {}
            if not entry.get("status") or not (descr.get("order") or descr.get("pair")):
                continue
            if pair_filter in descr.get("pair", "") or pair_filter in descr.get("order", ""):
                matched[txid] = OrderInfo.from_kraken(txid, entry)
        return matched

    def cancel_all_orders(self, pair_filter: str) -> int:
        orders = self.open_orders(pair_filter)
        for txid, order in orders.items():
            logger.info("Canceling order %s: %s", txid, order.description)
            self.cancel_order(txid)
        return len(orders)
