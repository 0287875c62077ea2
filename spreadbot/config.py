from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

DEFAULT_BASE_URL = "https://api.kraken.com"


class ConfigError(Exception):
    """Raised when the runtime configuration is missing or invalid."""


class Settings(BaseModel):
    api_key: str = ""
    api_secret: str = ""
    base_url: str = DEFAULT_BASE_URL
    slack_webhook: Optional[str] = None
    quote: str = "USD"
    poll_interval: float = Field(default=20.0, gt=0)
    initial_wait: float = Field(default=10.0, ge=0)
    watchdog_interval: float = Field(default=10.0, gt=0)
    profit_margin: float = Field(default=0.005, ge=0, lt=1)
    reprice: bool = True
    max_spread_pct: Optional[float] = Field(default=None, gt=0)
    min_volume_usd: Optional[float] = Field(default=None, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        mapping = {
            "api_key": "KRAKEN_API_KEY",
            "api_secret": "KRAKEN_PRIVATE_KEY",
            "base_url": "KRAKEN_BASE_URL",
            "slack_webhook": "SLACK_WEBHOOK",
            "poll_interval": "SPREADBOT_POLL_INTERVAL",
            "initial_wait": "SPREADBOT_INITIAL_WAIT",
            "watchdog_interval": "SPREADBOT_WATCHDOG_INTERVAL",
            "profit_margin": "SPREADBOT_PROFIT_MARGIN",
            "reprice": "SPREADBOT_REPRICE",
            "max_spread_pct": "SPREADBOT_MAX_SPREAD_PCT",
            "min_volume_usd": "SPREADBOT_MIN_VOLUME_USD",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def require_credentials(self) -> None:
        if not self.api_key or not self.api_secret:
            raise ConfigError("KRAKEN_API_KEY and KRAKEN_PRIVATE_KEY environment variables must be set")
