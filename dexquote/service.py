from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from eth_utils import to_checksum_address

from dexquote import config
from dexquote.chain_config import ChainConfig, load_chain_config
from dexquote.dex.registry import build_adapters
from dexquote.dex.types import Path, QuoteResult, Token, make_path
from dexquote.engine import QuoteEngine
from dexquote.errors import AllRoutesExhausted
from dexquote.pool_catalog import build_catalog
from dexquote.pricing import reference_amount
from dexquote.router import RankedQuote, Route, Router
from dexquote.tokens import TokenRegistry
from infra.rpc import AsyncRPC, Web3ChainClient, get_rpc_urls

logger = logging.getLogger(__name__)

# "SYM" or "0x..." alone, or (token, fee_tier) for the pool leading to the next hop
HopSpec = Union[str, Tuple[str, Optional[int]]]


@dataclass(frozen=True)
class Spread:
    """Two routes for the same trade whose rates differ by `spread` (relative to the lower)."""

    high: RankedQuote
    low: RankedQuote
    spread: Decimal


class QuoteService:
    """getBestQuote and friends over one chain client and one chain config."""

    def __init__(
        self,
        rpc: Any,
        chain: ChainConfig,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        include_testing: bool = True,
        catalog_strategy: Optional[str] = None,
        router: Optional[Router] = None,
        engine_options: Optional[dict] = None,
    ):
        self.rpc = rpc
        self.chain = chain
        self.tokens = TokenRegistry(rpc, chain)
        self.adapters = build_adapters(
            rpc, chain, dexes=dexes, protocols=protocols, include_testing=include_testing
        )
        self.catalog = build_catalog(catalog_strategy, self.adapters, rpc=rpc)
        self.engine = QuoteEngine(
            self.adapters,
            self.catalog,
            intermediates=[to_checksum_address(a) for a in chain.intermediate_addresses()],
            **(engine_options or {}),
        )
        self.router = router or Router()
        self._owns_rpc = False

    @classmethod
    def from_chain(
        cls,
        chain_name: Optional[str] = None,
        *,
        chain_id: Optional[int] = None,
        rpc_url: Optional[str] = None,
        **kwargs: Any,
    ) -> "QuoteService":
        chain = load_chain_config(chain_name, chain_id)
        if chain is None:
            raise ValueError(f"no chain config for '{chain_name or chain_id or config.DEFAULT_CHAIN}'")
        url = rpc_url or get_rpc_urls(chain.rpc_urls)[0]
        svc = cls(AsyncRPC(url), chain, **kwargs)
        svc._owns_rpc = True
        return svc

    @classmethod
    def from_web3(cls, w3: Any, chain: ChainConfig, **kwargs: Any) -> "QuoteService":
        """Reuse a caller-owned synchronous Web3 instance as the chain client."""
        return cls(Web3ChainClient(w3), chain, **kwargs)

    async def __aenter__(self) -> "QuoteService":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_rpc:
            await self.rpc.close()

    async def resolve_pair(self, token_in: str, token_out: str) -> Tuple[Token, Token]:
        tin, tout = await asyncio.gather(self.tokens.resolve(token_in), self.tokens.resolve(token_out))
        if self.tokens.quote_address(tin).lower() == self.tokens.quote_address(tout).lower():
            raise ValueError("token_in and token_out are the same token")
        return tin, tout

    async def gather(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        path: Optional[Sequence[HopSpec]] = None,
    ) -> Tuple[Token, Token, List[QuoteResult]]:
        amount_in = int(amount_in)
        if amount_in <= 0:
            raise ValueError("amount_in must be > 0")
        tin, tout = await self.resolve_pair(token_in, token_out)
        ref = reference_amount(amount_in, tin.decimals) if config.PRICE_IMPACT_ENABLED else None
        quotes = await self.engine.gather_quotes(
            self.tokens.quote_address(tin),
            self.tokens.quote_address(tout),
            amount_in,
            dexes=dexes,
            protocols=protocols,
            reference_amount=ref,
            path=await self.resolve_path(path) if path is not None else None,
        )
        return tin, tout, quotes

    async def resolve_path(self, hops: Sequence[HopSpec]) -> Path:
        """Symbols or addresses (optionally with fee tiers) -> a pool-keyed Path."""
        if len(hops) < 2:
            raise ValueError("path requires at least two tokens")
        ids: List[str] = []
        fees: List[Optional[int]] = []
        for hop in hops:
            token, fee = (hop, None) if isinstance(hop, str) else hop
            ids.append(token)
            fees.append(None if fee is None else int(fee))
        if fees[-1] is not None:
            raise ValueError("last hop must not carry a fee tier")
        resolved = await asyncio.gather(*(self.tokens.resolve(t) for t in ids))
        return make_path([self.tokens.quote_address(t) for t in resolved], fees[:-1])

    async def get_best_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        path: Optional[Sequence[HopSpec]] = None,
        split: Optional[bool] = None,
    ) -> Route:
        """Best route for amount_in (raw units of token_in).

        Raises TokenNotFound / TokenMetadataUnavailable for unusable tokens and
        AllRoutesExhausted when no candidate produced a quote.
        """
        tin, tout, quotes = await self.gather(
            token_in, token_out, amount_in, dexes=dexes, protocols=protocols, path=path
        )
        try:
            route = await self.router.best_route(
                quotes,
                amount_in,
                decimals_in=tin.decimals,
                decimals_out=tout.decimals,
                requote=self.engine.requote,
                split=split,
            )
        except AllRoutesExhausted as e:
            logger.warning(
                "no route %s -> %s for %s: %d attempts, failures=%s",
                tin.symbol or tin.address,
                tout.symbol or tout.address,
                amount_in,
                len(quotes),
                e.failures,
            )
            raise
        logger.debug("best route %s rate=%s", route.route_id, route.rate)
        return route

    async def compare_quotes(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        path: Optional[Sequence[HopSpec]] = None,
    ) -> List[RankedQuote]:
        """Every successful quote with its normalized rate, best first."""
        tin, tout, quotes = await self.gather(
            token_in, token_out, amount_in, dexes=dexes, protocols=protocols, path=path
        )
        return self.router.rank(quotes, decimals_in=tin.decimals, decimals_out=tout.decimals)

    async def find_spreads(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_spread: float = 0.0,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        path: Optional[Sequence[HopSpec]] = None,
    ) -> List[Spread]:
        """Rate gaps between the best routes of different dexes, largest first."""
        ranked = await self.compare_quotes(
            token_in, token_out, amount_in, dexes=dexes, protocols=protocols, path=path
        )
        best_per_dex: List[RankedQuote] = []
        seen = set()
        for r in ranked:
            if r.quote.dex_id not in seen:
                seen.add(r.quote.dex_id)
                best_per_dex.append(r)

        threshold = Decimal(str(min_spread))
        spreads: List[Spread] = []
        for high, low in itertools.combinations(best_per_dex, 2):
            if low.rate <= 0:
                continue
            gap = (high.rate - low.rate) / low.rate
            if gap >= threshold:
                spreads.append(Spread(high, low, gap))
        spreads.sort(key=lambda s: (-s.spread, s.high.quote.route_id, s.low.quote.route_id))
        return spreads
