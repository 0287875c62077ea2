"""Public API surface for the Kraken gateway."""

from .kraken_client import (
    KrakenAPIError,
    KrakenAuthError,
    KrakenClient,
    KrakenError,
    KrakenHTTPError,
    pair_code,
    pair_name,
)

__all__ = [
    "KrakenAPIError",
    "KrakenAuthError",
    "KrakenClient",
    "KrakenError",
    "KrakenHTTPError",
    "pair_code",
    "pair_name",
]
