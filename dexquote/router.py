from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from dexquote import config
from dexquote.dex.types import QuoteResult
from dexquote.errors import AllRoutesExhausted
from dexquote.pricing import price_impact, quote_price_impact, rate_of

logger = logging.getLogger(__name__)

Requote = Callable[[QuoteResult, int], Awaitable[QuoteResult]]

_INF = Decimal("Infinity")


@dataclass(frozen=True)
class RankedQuote:
    quote: QuoteResult
    rate: Decimal
    price_impact: Optional[Decimal] = None

    def sort_key(self) -> Tuple[Decimal, int, Decimal, str]:
        impact = self.price_impact if self.price_impact is not None else _INF
        return (-self.rate, self.quote.hop_count, impact, self.quote.route_id)


@dataclass(frozen=True)
class RouteLeg:
    quote: QuoteResult
    amount_in: int
    amount_out: int
    fraction: Decimal


@dataclass(frozen=True)
class Route:
    legs: Tuple[RouteLeg, ...]
    amount_in: int
    amount_out: int
    rate: Decimal
    price_impact: Optional[Decimal] = None

    @property
    def best(self) -> QuoteResult:
        return self.legs[0].quote

    @property
    def is_split(self) -> bool:
        return len(self.legs) > 1

    @property
    def route_id(self) -> str:
        return "+".join(leg.quote.route_id for leg in self.legs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_id": self.route_id,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "rate": str(self.rate),
            "price_impact": None if self.price_impact is None else str(self.price_impact),
            "legs": [
                {
                    "dex": leg.quote.dex_id,
                    "kind": leg.quote.kind,
                    "path": [[t, f] for t, f in leg.quote.path],
                    "amount_in": str(leg.amount_in),
                    "amount_out": str(leg.amount_out),
                    "fraction": str(leg.fraction),
                    "gas_estimate": leg.quote.gas_estimate,
                }
                for leg in self.legs
            ],
        }


def failure_counts(quotes: Sequence[QuoteResult]) -> Dict[str, int]:
    return dict(Counter(str(q.failure) for q in quotes if not q.ok))


class Router:
    """Ranks successful quotes and picks a route.

    Order: normalized rate descending, then fewer hops, then lower price
    impact (unknown last), then the smallest route id.
    """

    def __init__(
        self,
        *,
        max_price_impact_bps: Optional[int] = None,
        split_enabled: Optional[bool] = None,
        split_tolerance: Optional[float] = None,
        split_increments: Optional[int] = None,
        convergence_tolerance: Optional[float] = None,
    ):
        self.max_price_impact_bps = int(
            max_price_impact_bps if max_price_impact_bps is not None else config.MAX_PRICE_IMPACT_BPS
        )
        self.split_enabled = bool(config.SPLIT_ROUTING_ENABLED if split_enabled is None else split_enabled)
        self.split_tolerance = Decimal(str(split_tolerance if split_tolerance is not None else config.SPLIT_RATE_TOLERANCE))
        self.split_increments = int(split_increments if split_increments is not None else config.SPLIT_INCREMENTS)
        self.convergence_tolerance = Decimal(
            str(convergence_tolerance if convergence_tolerance is not None else config.SPLIT_CONVERGENCE_TOLERANCE)
        )

    def rank(self, quotes: Sequence[QuoteResult], *, decimals_in: int, decimals_out: int) -> List[RankedQuote]:
        ranked: List[RankedQuote] = []
        for q in quotes:
            if not q.ok or q.amount_out <= 0:
                continue
            impact = quote_price_impact(q, decimals_in, decimals_out)
            if (
                self.max_price_impact_bps > 0
                and impact is not None
                and impact * 10_000 > self.max_price_impact_bps
            ):
                logger.debug("dropping %s: price impact %s above cap", q.route_id, impact)
                continue
            ranked.append(RankedQuote(q, rate_of(q.amount_in, q.amount_out, decimals_in, decimals_out), impact))
        ranked.sort(key=RankedQuote.sort_key)
        return ranked

    def select_best_route(
        self,
        quotes: Sequence[QuoteResult],
        amount_in: int,
        *,
        decimals_in: int,
        decimals_out: int,
    ) -> Route:
        ranked = self.rank(quotes, decimals_in=decimals_in, decimals_out=decimals_out)
        if not ranked:
            counts = failure_counts(quotes)
            ok = sum(1 for q in quotes if q.ok)
            if ok:
                counts["price_impact_cap"] = ok
            raise AllRoutesExhausted(f"no viable route among {len(quotes)} quotes", counts)
        return self._single(ranked[0], int(amount_in))

    def _single(self, best: RankedQuote, amount_in: int) -> Route:
        q = best.quote
        return Route(
            legs=(RouteLeg(q, int(q.amount_in), int(q.amount_out), Decimal(1)),),
            amount_in=int(amount_in),
            amount_out=int(q.amount_out),
            rate=best.rate,
            price_impact=best.price_impact,
        )

    def within_tolerance(self, a: RankedQuote, b: RankedQuote) -> bool:
        if a.rate <= 0:
            return False
        return (a.rate - b.rate) / a.rate <= self.split_tolerance

    async def propose_split(
        self,
        ranked: Sequence[RankedQuote],
        amount_in: int,
        requote: Requote,
        *,
        decimals_in: int,
        decimals_out: int,
    ) -> Optional[Route]:
        """Greedy two-way split between the two best routes.

        Volume moves in fixed increments to whichever leg pays more for the
        next increment. Once the marginal rates agree within the convergence
        tolerance, the remaining increments are shared evenly. The integer
        remainder goes to the first leg. Returns None when the split does
        not beat the best single route.
        """
        if len(ranked) < 2 or self.split_increments < 2:
            return None
        first, second = ranked[0], ranked[1]
        if not self.within_tolerance(first, second):
            return None
        amount_in = int(amount_in)
        step = amount_in // self.split_increments
        if step <= 0:
            return None

        legs = (first.quote, second.quote)
        # Output per leg, keyed by allocated size; seeded with the full-size quotes.
        outs: List[Dict[int, int]] = [{0: 0, int(q.amount_in): int(q.amount_out)} for q in legs]

        async def out_at(i: int, size: int) -> int:
            if size not in outs[i]:
                res = await requote(legs[i], size)
                outs[i][size] = int(res.amount_out) if res.ok else 0
            return outs[i][size]

        alloc = [0, 0]
        done = 0
        while done < self.split_increments:
            m0 = await out_at(0, alloc[0] + step) - await out_at(0, alloc[0])
            m1 = await out_at(1, alloc[1] + step) - await out_at(1, alloc[1])
            hi = max(m0, m1)
            if hi > 0 and alloc[0] and alloc[1] and Decimal(abs(m0 - m1)) / Decimal(hi) <= self.convergence_tolerance:
                left = self.split_increments - done
                alloc[0] += step * ((left + 1) // 2)
                alloc[1] += step * (left // 2)
                done = self.split_increments
                break
            alloc[0 if m0 >= m1 else 1] += step
            done += 1
        alloc[0] += amount_in - step * self.split_increments

        if not alloc[0] or not alloc[1]:
            return None
        final = [await requote(legs[0], alloc[0]), await requote(legs[1], alloc[1])]
        if not all(r.ok for r in final):
            return None
        total_out = sum(int(r.amount_out) for r in final)
        if total_out <= int(first.quote.amount_out):
            logger.debug("split %s/%s does not beat single route", alloc[0], alloc[1])
            return None

        frac0 = Decimal(alloc[0]) / Decimal(amount_in)
        route_legs = (
            RouteLeg(final[0], alloc[0], int(final[0].amount_out), frac0),
            RouteLeg(final[1], alloc[1], int(final[1].amount_out), Decimal(1) - frac0),
        )
        rate = rate_of(amount_in, total_out, decimals_in, decimals_out)
        impact = None
        if first.quote.reference_amount_in and first.quote.reference_amount_out:
            ref = rate_of(first.quote.reference_amount_in, first.quote.reference_amount_out, decimals_in, decimals_out)
            impact = price_impact(rate, ref)
        logger.info("split route %s: %s/%s -> %s", "+".join(q.route_id for q in legs), alloc[0], alloc[1], total_out)
        return Route(route_legs, amount_in, total_out, rate, impact)

    async def best_route(
        self,
        quotes: Sequence[QuoteResult],
        amount_in: int,
        *,
        decimals_in: int,
        decimals_out: int,
        requote: Optional[Requote] = None,
        split: Optional[bool] = None,
    ) -> Route:
        route = self.select_best_route(quotes, amount_in, decimals_in=decimals_in, decimals_out=decimals_out)
        use_split = self.split_enabled if split is None else bool(split)
        if not use_split or requote is None:
            return route
        ranked = self.rank(quotes, decimals_in=decimals_in, decimals_out=decimals_out)
        proposal = await self.propose_split(
            ranked, amount_in, requote, decimals_in=decimals_in, decimals_out=decimals_out
        )
        return proposal or route
