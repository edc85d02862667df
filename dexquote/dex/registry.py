from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from dexquote.chain_config import KIND_V2, KIND_V3, ChainConfig
from dexquote.dex.base import DEXAdapter
from dexquote.dex.concentrated import ConcentratedLiquidityAdapter
from dexquote.dex.constant_product import ConstantProductAdapter

logger = logging.getLogger(__name__)


def _clean(items: Optional[Iterable[str]]) -> List[str]:
    out: List[str] = []
    if not items:
        return out
    for d in items:
        name = str(d).strip().lower()
        if name:
            out.append(name)
    return out


def build_adapters(
    rpc: Any,
    chain: ChainConfig,
    *,
    dexes: Optional[Iterable[str]] = None,
    protocols: Optional[Iterable[str]] = None,
    include_testing: bool = True,
) -> Dict[str, DEXAdapter]:
    """Instantiate one adapter per enabled dex deployment of the chain."""
    wanted = set(_clean(dexes))
    kinds = set(_clean(protocols))
    adapters: Dict[str, DEXAdapter] = {}
    for dex_id, dex in chain.active_dexes(include_testing=include_testing).items():
        if wanted and dex_id not in wanted:
            continue
        if kinds and dex.kind not in kinds:
            continue
        if dex.kind == KIND_V2 and dex.router:
            adapters[dex_id] = ConstantProductAdapter(
                rpc,
                dex_id=dex_id,
                router=dex.router,
                factory=dex.factory,
                fee_bps=dex.fee_bps,
                gas_estimate=dex.gas_estimate,
            )
        elif dex.kind == KIND_V3 and dex.quoter:
            adapters[dex_id] = ConcentratedLiquidityAdapter(
                rpc,
                dex_id=dex_id,
                quoter=dex.quoter,
                factory=dex.factory,
                fee_tiers=dex.fee_tiers,
                multihop=dex.multihop,
                gas_estimate=dex.gas_estimate,
            )
        else:
            logger.warning("skipping dex %s: incomplete %s deployment", dex_id, dex.kind)
    missing = wanted - set(adapters)
    if missing:
        logger.warning("requested dexes not available on %s: %s", chain.name, sorted(missing))
    return adapters
