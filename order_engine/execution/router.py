"""Quote/execution provider contract and the mock DEX router.

The worker only depends on `DexRouter.quote` and `DexRouter.execute`; real
exchange integrations subclass it. `MockDexRouter` simulates two liquidity
sources with randomized prices, latency and occasional chain failures.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple
from uuid import uuid4

from .errors import RoutingError, SwapExecutionError
from .schemas import Order, Quote, SwapResult


class DexRouter:
    """Provider interface consumed by the execution worker."""

    sources: Tuple[str, ...] = ()

    async def quote(self, source: str, token_in: str, token_out: str, amount: float) -> Quote:
        raise NotImplementedError

    async def execute(self, source: str, order: Order) -> SwapResult:
        raise NotImplementedError


def select_best_quote(quotes: Sequence[Quote]) -> Quote:
    """Return the quote with the strictly lowest price.

    Ties keep the earlier quote, so the first configured source wins.
    """
    if not quotes:
        raise RoutingError("no quotes to choose from")
    best = quotes[0]
    for q in quotes[1:]:
        if q.price < best.price:
            best = q
    return best


@dataclass(frozen=True)
class SourceProfile:
    price_low: float  # multiplier on base price
    price_span: float
    fee: float
    liquidity: float


DEFAULT_PROFILES: Dict[str, SourceProfile] = {
    "raydium": SourceProfile(price_low=0.98, price_span=0.04, fee=0.003, liquidity=100_000.0),
    "meteora": SourceProfile(price_low=0.97, price_span=0.05, fee=0.002, liquidity=80_000.0),
}


class MockDexRouter(DexRouter):
    def __init__(
        self,
        *,
        base_price: float = 100.0,
        failure_rate: float = 0.08,
        sources: Sequence[str] = ("raydium", "meteora"),
        profiles: Optional[Dict[str, SourceProfile]] = None,
        quote_latency_s: Tuple[float, float] = (0.15, 0.35),
        execute_latency_s: Tuple[float, float] = (2.0, 3.0),
        seed: Optional[int] = None,
    ):
        self.base_price = base_price
        self.failure_rate = failure_rate
        self.sources = tuple(sources)
        self.profiles = dict(profiles or DEFAULT_PROFILES)
        self.quote_latency_s = quote_latency_s
        self.execute_latency_s = execute_latency_s
        self._rng = random.Random(seed)

        unknown = [s for s in self.sources if s not in self.profiles]
        if unknown:
            raise ValueError(f"No price profile for sources: {unknown}")

    async def _sleep(self, bounds: Tuple[float, float]) -> None:
        low, high = bounds
        if high <= 0:
            return
        await asyncio.sleep(self._rng.uniform(low, high))

    def _profile(self, source: str) -> SourceProfile:
        profile = self.profiles.get(source)
        if profile is None:
            raise RoutingError(f"unknown liquidity source: {source}")
        return profile

    async def quote(self, source: str, token_in: str, token_out: str, amount: float) -> Quote:
        profile = self._profile(source)
        await self._sleep(self.quote_latency_s)
        price = self.base_price * (profile.price_low + self._rng.random() * profile.price_span)
        return Quote(dex=source, price=price, fee=profile.fee, liquidity=profile.liquidity)

    async def execute(self, source: str, order: Order) -> SwapResult:
        profile = self._profile(source)
        await self._sleep(self.execute_latency_s)
        if self._rng.random() < self.failure_rate:
            raise SwapExecutionError("simulated-chain-error")
        executed_price = self.base_price * (profile.price_low + self._rng.random() * profile.price_span)
        return SwapResult(tx_hash=f"MOCKTX_{uuid4().hex[:16]}", executed_price=executed_price)


__all__ = ["DEFAULT_PROFILES", "DexRouter", "MockDexRouter", "SourceProfile", "select_best_quote"]
