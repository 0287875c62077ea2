from __future__ import annotations

from typing import Any, Dict, List

from spreadbot.api.kraken_client import KrakenAPIError, KrakenClient, pair_name
from spreadbot.models.schemas import MarketSnapshot


def decimals_in(text: str) -> int:
    """Digits after the decimal point, trailing zeros included."""
    if "." not in text:
        return 0
    return len(text.split(".", 1)[1])


def _first(entry: Dict[str, Any], key: str) -> str:
    values: List[str] = entry.get(key) or []
    if not values:
        raise KrakenAPIError("/0/public/Ticker", [f"insufficient order book data ({key})"])
    return values[0]


class MarketReader:
    """Fresh ticker reads. Nothing is cached between calls."""

    def __init__(self, client: KrakenClient, quote: str = "USD") -> None:
        self.client = client
        self.quote = quote

    def snapshot(self, coin: str) -> MarketSnapshot:
        pair = pair_name(coin, self.quote)
        entry = self.client.ticker(pair)
        ask_text = _first(entry, "a")
        try:
            return MarketSnapshot(
                pair=pair,
                bid=float(_first(entry, "b")),
                ask=float(ask_text),
                high=float(_first(entry, "h")),
                low=float(_first(entry, "l")),
                price_decimals=decimals_in(ask_text),
            )
        except ValueError as exc:
            raise KrakenAPIError("/0/public/Ticker", [f"unusable ticker for {pair}: {exc}"]) from exc

    def volume_24h_usd(self, coin: str) -> float:
        """Last-24h base volume valued at the current bid."""
        entry = self.client.ticker(pair_name(coin, self.quote))
        volumes = entry.get("v") or []
        if len(volumes) < 2:
            raise KrakenAPIError("/0/public/Ticker", [f"insufficient volume data for {coin}"])
        return float(volumes[1]) * float(_first(entry, "b"))
