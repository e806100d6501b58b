"""Order pipeline schemas.

`Order` is validated once at submission and travels through the queue as JSON.
`Quote` and `SwapResult` are the provider contract. `StatusEvent` is the only
thing subscribers ever see; it is broadcast, never stored.

Wire payloads use camelCase (`tokenIn`, `txHash`, ...) to match the public API;
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import OrderValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, Enum):
    market = "market"


class OrderStatus(str, Enum):
    pending = "pending"
    routing = "routing"
    building = "building"
    submitted = "submitted"
    confirmed = "confirmed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.confirmed.value, OrderStatus.failed.value})


class _WireModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Order(_WireModel):
    id: str = Field(..., min_length=1, description="Opaque unique order id (job key).")
    user_id: str = "anon"
    type: OrderType = OrderType.market
    token_in: str = Field(..., min_length=1)
    token_out: str = Field(..., min_length=1)
    amount_in: float = Field(..., gt=0)
    created_at: datetime = Field(default_factory=utc_now)
    attempts: int = Field(0, ge=0, description="Incremented by the queue on each retry.")


class OrderRequest(BaseModel):
    """Loosely-typed submission payload; `to_order` enforces presence rules."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)

    id: Optional[str] = None
    user_id: Optional[str] = None
    type: Optional[str] = None
    token_in: Optional[str] = None
    token_out: Optional[str] = None
    amount_in: Optional[float] = None

    def to_order(self, order_id: str) -> Order:
        missing = [
            alias
            for alias, value in (
                ("tokenIn", self.token_in),
                ("tokenOut", self.token_out),
                ("amountIn", self.amount_in),
            )
            if value in (None, "")
        ]
        if missing:
            raise OrderValidationError(f"missing required fields: {', '.join(missing)}")
        if self.amount_in is not None and self.amount_in <= 0:
            raise OrderValidationError("amountIn must be positive")
        order_type = self.type or OrderType.market.value
        if order_type != OrderType.market.value:
            raise OrderValidationError(f"unsupported order type: {order_type}")
        return Order(
            id=order_id,
            user_id=self.user_id or "anon",
            type=OrderType.market,
            token_in=str(self.token_in),
            token_out=str(self.token_out),
            amount_in=float(self.amount_in),  # type: ignore[arg-type]
        )


class Quote(_WireModel):
    dex: str
    price: float = Field(..., gt=0, description="Output units per unit of input.")
    fee: float = Field(..., ge=0, description="Fractional fee rate, e.g. 0.003.")
    liquidity: Optional[float] = Field(None, ge=0)


class SwapResult(_WireModel):
    tx_hash: str = Field(..., min_length=1)
    executed_price: float = Field(..., gt=0)


class StatusEvent(_WireModel):
    order_id: str
    status: OrderStatus
    attempt: int = Field(1, ge=1)
    chosen_dex: Optional[str] = None
    quote: Optional[Quote] = None
    tx_hash: Optional[str] = None
    executed_price: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


__all__ = [
    "Order",
    "OrderRequest",
    "OrderStatus",
    "OrderType",
    "Quote",
    "StatusEvent",
    "SwapResult",
    "TERMINAL_STATUSES",
    "utc_now",
]
