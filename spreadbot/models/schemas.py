from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    """Order states as reported by the exchange."""

    PENDING = "pending"
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REJECTED = "rejected"


class PairState(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELED = "canceled"


class TradeResult(str, Enum):
    FILLED = "filled"
    CANCELED = "canceled"
    INTERRUPTED = "interrupted"


class MarketSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: str
    bid: float = Field(gt=0)
    ask: float = Field(gt=0)
    high: float = Field(ge=0)
    low: float = Field(ge=0)
    # Digits after the decimal point in the exchange's ask string, when known.
    price_decimals: Optional[int] = Field(default=None, ge=0)

    @field_validator("ask")
    @classmethod
    def ask_ge_bid(cls, v: float, info: ValidationInfo):
        bid = info.data.get("bid")
        if bid is not None and v < bid:
            raise ValueError("ask must be >= bid")
        return v

    @property
    def spread(self) -> float:
        return self.ask - self.bid

    @property
    def spread_pct(self) -> float:
        return self.spread / self.bid * 100


class SpreadPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    bid: float
    ask: float
    center_price: float
    buy_price: float = Field(gt=0)
    sell_price: float = Field(gt=0)
    narrowing_factor: float = Field(ge=0, le=1)
    volume: float = Field(gt=0)
    estimated_profit: float
    estimated_profit_pct: float
    price_decimals: int = Field(ge=0)

    @model_validator(mode="after")
    def prices_not_crossed(self):
        if self.sell_price <= self.buy_price:
            raise ValueError("sell_price must be strictly above buy_price")
        return self


class OrderInfo(BaseModel):
    """One entry of a QueryOrders / OpenOrders response."""

    txid: str
    status: OrderStatus
    pair: str = ""
    description: str = ""
    side: Optional[Side] = None
    limit_price: float = 0.0
    price: float = 0.0  # average executed price, 0 until something fills
    volume: float = 0.0
    volume_executed: float = 0.0
    fee: float = 0.0

    @classmethod
    def from_kraken(cls, txid: str, payload: Dict[str, Any]) -> "OrderInfo":
        descr = payload.get("descr") or {}
        return cls(
            txid=txid,
            status=payload.get("status", "pending"),
            pair=descr.get("pair", ""),
            description=descr.get("order", ""),
            side=descr.get("type") or None,
            limit_price=float(descr.get("price") or 0),
            price=float(payload.get("price") or 0),
            volume=float(payload.get("vol") or 0),
            volume_executed=float(payload.get("vol_exec") or 0),
            fee=float(payload.get("fee") or 0),
        )

    @property
    def executed_price(self) -> float:
        return self.price or self.limit_price

    @property
    def fill_pct(self) -> float:
        if not self.volume:
            return 0.0
        return self.volume_executed / self.volume * 100


class OrderLeg(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    txid: str
    side: Side
    requested_price: float = Field(gt=0)
    requested_volume: float = Field(gt=0)
    status: OrderStatus = OrderStatus.OPEN
    executed_price: Optional[float] = None
    fee: Optional[float] = None
    retired_txids: List[str] = Field(default_factory=list)

    def replace_txid(self, new_txid: str, new_price: float) -> None:
        """Swap in the id returned by an edit; the old id is never polled again."""
        self.retired_txids.append(self.txid)
        self.txid = new_txid
        self.requested_price = new_price
        self.status = OrderStatus.OPEN
        self.executed_price = None

    def apply(self, info: OrderInfo) -> None:
        self.status = info.status
        self.fee = info.fee
        if info.volume_executed > 0:
            self.executed_price = info.executed_price


class TradePosition(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    coin: str
    pair: str
    volume: float = Field(gt=0)
    plan: SpreadPlan
    buy_leg: OrderLeg
    sell_leg: OrderLeg
    repriced_buy: bool = False
    repriced_sell: bool = False


class TradeOutcome(BaseModel):
    result: TradeResult
    coin: str
    volume: float
    profit: float
    profit_pct: float
    realized: bool
    buy_price: float
    sell_price: float
    buy_fee: float = 0.0
    sell_fee: float = 0.0

    @property
    def total_fees(self) -> float:
        return self.buy_fee + self.sell_fee


class Balance(BaseModel):
    asset: str
    balance: float = 0.0
    hold_trade: float = 0.0

    @property
    def available(self) -> float:
        return self.balance - self.hold_trade
