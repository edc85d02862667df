from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from dexquote import config
from dexquote.dex.types import Path, PoolCandidate, QuoteResult
from dexquote.errors import AdapterMismatch, NoLiquidity, QuoteError, TransportError
from infra.rpc import CallReverted, InvalidCall, RPCTransportError

logger = logging.getLogger(__name__)


def selector(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


def hex_to_bytes(raw_hex: Optional[str]) -> bytes:
    if not raw_hex:
        return b""
    hx = raw_hex[2:] if raw_hex.startswith("0x") else raw_hex
    return bytes.fromhex(hx)


def raw_fingerprint(raw_hex: Optional[str]) -> dict:
    if not raw_hex:
        return {"raw_len": None, "raw_prefix": None}
    hx = raw_hex[2:] if raw_hex.startswith("0x") else raw_hex
    return {"raw_len": len(hx) // 2, "raw_prefix": "0x" + hx[:32] if hx else "0x"}


def classify_call_error(err: BaseException) -> QuoteError:
    """Map a chain-client or decoding failure onto the quote taxonomy."""
    if isinstance(err, QuoteError):
        return err
    if isinstance(err, CallReverted):
        reason = err.reason or "reverted without reason"
        return NoLiquidity(reason)
    if isinstance(err, InvalidCall):
        return AdapterMismatch(str(err))
    if isinstance(err, (DecodingError, ValueError, OverflowError)):
        return AdapterMismatch(f"undecodable response: {err}")
    if isinstance(err, (RPCTransportError, asyncio.TimeoutError)):
        return TransportError(str(err) or type(err).__name__)
    return TransportError(f"{type(err).__name__}: {err}")


def check_amount(amount_out: int) -> int:
    amount_out = int(amount_out)
    if amount_out > int(config.QUOTE_SANITY_MAX_AMOUNT):
        raise AdapterMismatch(f"nonsensical amount decoded: {amount_out}")
    if amount_out <= 0:
        raise NoLiquidity("zero output")
    return amount_out


class DEXAdapter:
    """One pool family on one deployment (router or quoter address)."""

    dex_id: str
    kind: str

    def __init__(self, rpc: Any, *, dex_id: str, gas_estimate: Optional[int] = None):
        self.rpc = rpc
        self.dex_id = str(dex_id)
        self.gas_estimate = gas_estimate

    def candidates(self, token_in: str, token_out: str) -> List[PoolCandidate]:
        """Static candidates: every configured tier for this pair."""
        raise NotImplementedError

    async def _quote_single(self, candidate: PoolCandidate, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        raise NotImplementedError

    async def _quote_path(self, path: Path, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        raise NotImplementedError

    async def quote_single_hop(
        self,
        candidate: PoolCandidate,
        amount_in: int,
        *,
        timeout_s: Optional[float] = None,
    ) -> QuoteResult:
        path = self.single_hop_path(candidate)
        try:
            return await self._quote_single(candidate, int(amount_in), timeout_s=timeout_s)
        except Exception as e:
            return self._failure(path, amount_in, e)

    async def quote_multi_hop(self, path: Path, amount_in: int, *, timeout_s: Optional[float] = None) -> QuoteResult:
        try:
            return await self._quote_path(path, int(amount_in), timeout_s=timeout_s)
        except Exception as e:
            return self._failure(path, amount_in, e)

    def single_hop_path(self, candidate: PoolCandidate) -> Path:
        return ((candidate.token_in, candidate.fee_tier), (candidate.token_out, None))

    def _failure(self, path: Path, amount_in: int, err: BaseException) -> QuoteResult:
        qe = classify_call_error(err)
        logger.debug("%s quote failed (%s): %s", self.dex_id, qe.kind, qe)
        return QuoteResult.failed(self.dex_id, self.kind, path, int(amount_in), qe.kind, str(qe))
