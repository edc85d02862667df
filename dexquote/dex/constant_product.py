from __future__ import annotations

from typing import Any, List, Optional

from eth_abi import decode, encode
from eth_utils import to_checksum_address

from dexquote import config
from dexquote.chain_config import KIND_V2
from dexquote.dex import path_codec
from dexquote.dex.base import DEXAdapter, check_amount, hex_to_bytes, raw_fingerprint, selector
from dexquote.dex.types import Path, PoolCandidate, QuoteResult, make_path
from dexquote.errors import AdapterMismatch


class ConstantProductAdapter(DEXAdapter):
    """Uniswap V2-style router quoting via getAmountsOut(uint256,address[]).

    A path of more than two addresses is a multi-hop quote in a single call.
    """

    kind = KIND_V2

    def __init__(
        self,
        rpc: Any,
        *,
        dex_id: str,
        router: str,
        factory: Optional[str] = None,
        fee_bps: int = 30,
        gas_estimate: Optional[int] = None,
    ):
        super().__init__(rpc, dex_id=dex_id, gas_estimate=gas_estimate or config.V2_GAS_ESTIMATE)
        self.router = to_checksum_address(router)
        self.factory = to_checksum_address(factory) if factory else None
        self.fee_bps = int(fee_bps)
        self._sel_get_amounts_out = selector("getAmountsOut(uint256,address[])")

    def candidates(self, token_in: str, token_out: str) -> List[PoolCandidate]:
        return [
            PoolCandidate(
                dex_id=self.dex_id,
                kind=self.kind,
                token_in=token_in,
                token_out=token_out,
                fee_tier=None,
                contract=self.router,
                factory=self.factory,
            )
        ]

    async def _get_amounts_out(self, amount_in: int, addresses: List[str], *, timeout_s: Optional[float]) -> tuple:
        params = encode(["uint256", "address[]"], [int(amount_in), addresses])
        data = "0x" + self._sel_get_amounts_out + params.hex()
        raw = await self.rpc.eth_call(self.router, data, timeout_s=timeout_s)
        amounts = decode(["uint256[]"], hex_to_bytes(raw))[0]
        if len(amounts) != len(addresses):
            raise AdapterMismatch(f"getAmountsOut returned {len(amounts)} amounts for {len(addresses)} tokens")
        return amounts, raw

    async def _quote_path(self, path: Path, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        addresses = path_codec.address_list(path)
        amounts, raw = await self._get_amounts_out(amount_in, addresses, timeout_s=timeout_s)
        amount_out = check_amount(amounts[-1])
        return QuoteResult.success(
            self.dex_id,
            self.kind,
            make_path(addresses),
            amount_in,
            amount_out,
            gas_estimate=int(self.gas_estimate) * (len(addresses) - 1),
            fee_bps=self.fee_bps,
            adapter=f"{self.dex_id}_router",
            hop_amounts=[int(a) for a in amounts],
            **raw_fingerprint(raw),
        )

    async def _quote_single(self, candidate: PoolCandidate, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        return await self._quote_path(self.single_hop_path(candidate), amount_in, timeout_s=timeout_s)
