from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from eth_abi import encode

from dexquote import config
from dexquote.chain_config import KIND_V2
from dexquote.dex.base import DEXAdapter, hex_to_bytes, selector
from dexquote.dex.types import PoolCandidate
from infra.metrics import METRICS
from infra.rpc import RPCError

logger = logging.getLogger(__name__)

ZERO_ADDR = "0x0000000000000000000000000000000000000000"

STRATEGY_STATIC = "static"
STRATEGY_DISCOVERED = "discovered"

_SEL_GET_PAIR = selector("getPair(address,address)")
_SEL_GET_POOL = selector("getPool(address,address,uint24)")

CacheKey = Tuple[str, str, str, Optional[int]]


def _decode_address(raw: Any) -> Optional[str]:
    blob = hex_to_bytes(raw)
    if len(blob) < 32:
        return None
    return "0x" + blob[12:32].hex()


def _encode_get_pair(token0: str, token1: str) -> str:
    return "0x" + _SEL_GET_PAIR + encode(["address", "address"], [token0, token1]).hex()


def _encode_get_pool(token0: str, token1: str, fee: int) -> str:
    return "0x" + _SEL_GET_POOL + encode(["address", "address", "uint24"], [token0, token1, int(fee)]).hex()


def _select(adapters: Mapping[str, DEXAdapter], dexes: Optional[Iterable[str]]) -> List[DEXAdapter]:
    wanted = {str(d).strip().lower() for d in (dexes or []) if str(d).strip()}
    return [a for dex_id, a in sorted(adapters.items()) if not wanted or dex_id in wanted]


class StaticCatalog:
    """Every configured (dex, fee tier) combination, without asking the chain."""

    strategy = STRATEGY_STATIC

    def __init__(self, adapters: Mapping[str, DEXAdapter]):
        self.adapters = dict(adapters)

    async def candidates(
        self,
        token_a: str,
        token_b: str,
        *,
        dexes: Optional[Iterable[str]] = None,
    ) -> List[PoolCandidate]:
        out: List[PoolCandidate] = []
        for adapter in _select(self.adapters, dexes):
            out.extend(adapter.candidates(token_a, token_b))
        return out


class DiscoveredCatalog:
    """Factory lookups (getPair / getPool); zero-address answers are dropped.

    Answers, including "does not exist", are cached for ttl_s seconds. Expired
    entries are swept on write, at most once per ttl_s. A lookup
    that fails in transport is not cached and its candidate is skipped.
    """

    strategy = STRATEGY_DISCOVERED

    def __init__(
        self,
        rpc: Any,
        adapters: Mapping[str, DEXAdapter],
        *,
        ttl_s: Optional[float] = None,
        timeout_s: Optional[float] = None,
    ):
        self.rpc = rpc
        self.adapters = dict(adapters)
        self.ttl_s = float(ttl_s if ttl_s is not None else config.CATALOG_DISCOVERY_TTL_S)
        self.timeout_s = timeout_s
        self._cache: Dict[CacheKey, Tuple[str, float]] = {}
        self._pruned_at = float("-inf")

    def _cache_get(self, key: CacheKey) -> Optional[str]:
        entry = self._cache.get(key)
        if entry is None:
            METRICS.inc("pool_discovery_cache_misses", 1)
            return None
        addr, ts = entry
        if time.monotonic() - ts > self.ttl_s:
            self._cache.pop(key, None)
            METRICS.inc("pool_discovery_cache_misses", 1)
            return None
        METRICS.inc("pool_discovery_cache_hits", 1)
        if addr == ZERO_ADDR:
            METRICS.inc("pool_discovery_negative_cache_hits", 1)
        return addr

    def _cache_put(self, key: CacheKey, addr: str) -> None:
        now = time.monotonic()
        if now - self._pruned_at >= max(self.ttl_s, 0.0):
            stale = [k for k, (_a, ts) in self._cache.items() if now - ts > self.ttl_s]
            for k in stale:
                del self._cache[k]
            if stale:
                METRICS.inc("pool_discovery_cache_evictions", len(stale))
            self._pruned_at = now
        self._cache[key] = (addr, now)

    def clear(self) -> None:
        self._cache.clear()

    async def _lookup(self, adapter: DEXAdapter, cand: PoolCandidate) -> Optional[str]:
        token0, token1 = sorted((cand.token_in.lower(), cand.token_out.lower()))
        key: CacheKey = (adapter.dex_id, token0, token1, cand.fee_tier)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        if cand.kind == KIND_V2:
            data = _encode_get_pair(token0, token1)
        else:
            data = _encode_get_pool(token0, token1, int(cand.fee_tier or 0))
        METRICS.inc("pool_discovery_requests_total", 1)
        try:
            with METRICS.timed("pool_discovery_latency_ms"):
                raw = await self.rpc.eth_call(cand.factory, data, timeout_s=self.timeout_s)
        except RPCError as e:
            logger.warning("%s factory lookup failed for %s: %s", adapter.dex_id, cand.label(), e)
            return None
        addr = _decode_address(raw)
        if addr is None:
            logger.warning("%s factory returned undecodable answer for %s", adapter.dex_id, cand.label())
            return None
        self._cache_put(key, addr)
        if addr == ZERO_ADDR:
            METRICS.inc_reason("pool_missing_keys", cand.label(), 1)
        return addr

    async def candidates(
        self,
        token_a: str,
        token_b: str,
        *,
        dexes: Optional[Iterable[str]] = None,
    ) -> List[PoolCandidate]:
        pending: List[Tuple[DEXAdapter, PoolCandidate]] = []
        out: List[PoolCandidate] = []
        for adapter in _select(self.adapters, dexes):
            for cand in adapter.candidates(token_a, token_b):
                if cand.factory:
                    pending.append((adapter, cand))
                else:
                    # No factory to ask; quote it like the static catalog would.
                    out.append(cand)

        found = await asyncio.gather(*(self._lookup(a, c) for a, c in pending))
        for (_adapter, cand), pool in zip(pending, found):
            if pool is None or pool == ZERO_ADDR:
                continue
            out.append(
                PoolCandidate(
                    dex_id=cand.dex_id,
                    kind=cand.kind,
                    token_in=cand.token_in,
                    token_out=cand.token_out,
                    fee_tier=cand.fee_tier,
                    contract=cand.contract,
                    factory=cand.factory,
                    pool=pool,
                )
            )
        return out


def build_catalog(
    strategy: Optional[str],
    adapters: Mapping[str, DEXAdapter],
    *,
    rpc: Any = None,
    ttl_s: Optional[float] = None,
    timeout_s: Optional[float] = None,
):
    name = str(strategy or config.CATALOG_STRATEGY).strip().lower()
    if name == STRATEGY_STATIC:
        return StaticCatalog(adapters)
    if name == STRATEGY_DISCOVERED:
        if rpc is None:
            raise ValueError("discovered catalog requires a chain client")
        return DiscoveredCatalog(rpc, adapters, ttl_s=ttl_s, timeout_s=timeout_s)
    raise ValueError(f"unknown catalog strategy '{strategy}'")
