from __future__ import annotations

from typing import Dict, Optional

from spreadbot.models.schemas import Balance

# Kraken's BalanceEx keys for the coins we trade.
ASSET_CODES = {
    "BTC": "XBT.F",
    "ETH": "ETH",
    "SOL": "SOL.F",
    "SUNDOG": "SUNDOG",
    "TRUMP": "TRUMP",
    "GUN": "GUN",
    "OCEAN": "OCEAN",
    "GHIBLI": "GHIBLI",
    "TITCOIN": "TITCOIN",
    "PAXG": "PAXG",
    "FWOG": "FWOG",
}

USD_CODE = "USD.F"
USD_ALIAS = "ZUSD"


class UnknownAssetError(KeyError):
    """Raised for a coin with no known Kraken balance code."""


def asset_code(coin: str) -> str:
    try:
        return ASSET_CODES[coin.upper()]
    except KeyError as exc:
        raise UnknownAssetError(f"unknown standard code: {coin}") from exc


def available_balance(balances: Dict[str, Balance], code: str, alias: Optional[str] = None) -> float:
    """balance - hold_trade, summed over the main code and an optional alias.

    Raises KeyError when neither code is present in the response.
    """
    found = [balances[c] for c in (code, alias) if c and c in balances]
    if not found:
        raise KeyError(f"balance for {code} not found in response")
    return sum(entry.available for entry in found)
