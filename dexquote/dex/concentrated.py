# dexquote/dex/concentrated.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from eth_abi import decode, encode
from eth_utils import to_checksum_address

from dexquote import config
from dexquote.chain_config import KIND_V3
from dexquote.dex import path_codec
from dexquote.dex.base import (
    DEXAdapter,
    check_amount,
    classify_call_error,
    hex_to_bytes,
    raw_fingerprint,
    selector,
)
from dexquote.dex.types import Path, PoolCandidate, QuoteResult, path_fees, path_tokens
from dexquote.errors import AdapterMismatch, NoLiquidity, TransportError
from infra.rpc import CallReverted, ERROR_STRING_SELECTOR, PANIC_SELECTOR

logger = logging.getLogger(__name__)

# QuoterV2: quoteExactInputSingle((tokenIn, tokenOut, amountIn, fee, sqrtPriceLimitX96))
SHAPE_TUPLE = "tuple"
# Quoter v1: quoteExactInputSingle(tokenIn, tokenOut, fee, amountIn, sqrtPriceLimitX96)
SHAPE_POSITIONAL = "positional"
SINGLE_SHAPES = (SHAPE_TUPLE, SHAPE_POSITIONAL)

SIG_SINGLE = {
    SHAPE_TUPLE: "quoteExactInputSingle((address,address,uint256,uint24,uint160))",
    SHAPE_POSITIONAL: "quoteExactInputSingle(address,address,uint24,uint256,uint160)",
}
SIG_PATH = "quoteExactInput(bytes,uint256)"

MULTIHOP_AUTO = "auto"
MULTIHOP_PATH = "path"
MULTIHOP_CHAINED = "chained"

_PUSH4 = b"\x63"


@dataclass
class QuoterCapabilities:
    """What one quoter contract accepts. Probed once, then reused."""

    # Known selectors found in the dispatcher; None when the bytecode tells
    # us nothing (proxies) and shapes must be confirmed by trial calls.
    declared: Optional[Set[str]] = None
    single_shape: Optional[str] = None
    rejected: Set[str] = field(default_factory=set)
    multihop: Optional[bool] = None


def scan_dispatcher(code: bytes, selectors: Dict[str, str]) -> Optional[Set[str]]:
    """Return the names whose selector is pushed by the dispatcher, or None.

    Solidity dispatchers compare calldata against PUSH4 <selector>.
    """
    found = {name for name, sel in selectors.items() if _PUSH4 + bytes.fromhex(sel) in code}
    return found or None


def _decode_single(shape: str, blob: bytes) -> Tuple[int, Optional[int]]:
    if shape == SHAPE_TUPLE:
        # QuoterV2 returns exactly 4 words; anything shorter is the wrong shape.
        if len(blob) < 32 * 4:
            raise AdapterMismatch(f"QuoterV2 returned short blob: {len(blob)} bytes")
        amount_out, _sqrt_price_after, _ticks_crossed, gas_estimate = decode(
            ["uint256", "uint160", "uint32", "uint256"], blob[: 32 * 4]
        )
        return int(amount_out), int(gas_estimate)
    if len(blob) >= 32 * 4:
        amount_out, _sqrt_price_after, _ticks_crossed, gas_estimate = decode(
            ["uint256", "uint160", "uint32", "uint256"], blob[: 32 * 4]
        )
        return int(amount_out), int(gas_estimate)
    if len(blob) >= 32:
        return int(decode(["uint256"], blob[:32])[0]), None
    raise AdapterMismatch(f"quoter returned {len(blob)} bytes")


def _revert_return_amount(err: CallReverted) -> Optional[int]:
    """Quoter v1 returns its result through revert data (one bare word)."""
    data = (err.data or "").lower()
    if not data or data.startswith(ERROR_STRING_SELECTOR) or data.startswith(PANIC_SELECTOR):
        return None
    blob = hex_to_bytes(data)
    if len(blob) != 32:
        return None
    return int.from_bytes(blob, "big")


class ConcentratedLiquidityAdapter(DEXAdapter):
    kind = KIND_V3

    def __init__(
        self,
        rpc: Any,
        *,
        dex_id: str,
        quoter: str,
        factory: Optional[str] = None,
        fee_tiers: Optional[Sequence[int]] = None,
        multihop: str = MULTIHOP_AUTO,
        gas_estimate: Optional[int] = None,
    ):
        super().__init__(rpc, dex_id=dex_id, gas_estimate=gas_estimate or config.V3_GAS_ESTIMATE)
        self.quoter = to_checksum_address(quoter)
        self.factory = to_checksum_address(factory) if factory else None
        self.fee_tiers: Tuple[int, ...] = tuple(int(t) for t in (fee_tiers or config.FEE_TIERS))
        self.multihop = str(multihop or MULTIHOP_AUTO)
        self._selectors = {name: selector(sig) for name, sig in SIG_SINGLE.items()}
        self._sel_path = selector(SIG_PATH)
        self._caps: Optional[QuoterCapabilities] = None
        self._shape_lock = asyncio.Lock()
        self._dead: Optional[str] = None

    def candidates(self, token_in: str, token_out: str) -> List[PoolCandidate]:
        return [
            PoolCandidate(
                dex_id=self.dex_id,
                kind=self.kind,
                token_in=token_in,
                token_out=token_out,
                fee_tier=int(fee),
                contract=self.quoter,
                factory=self.factory,
            )
            for fee in self.fee_tiers
        ]

    async def capabilities(self, *, timeout_s: Optional[float] = None) -> QuoterCapabilities:
        """One-time bytecode scan of the quoter, cached for the adapter's lifetime."""
        if self._dead:
            raise AdapterMismatch(self._dead)
        if self._caps is not None:
            return self._caps
        async with self._shape_lock:
            if self._dead:
                raise AdapterMismatch(self._dead)
            if self._caps is not None:
                return self._caps
            try:
                code = hex_to_bytes(await self.rpc.get_code(self.quoter, timeout_s=timeout_s))
            except Exception as e:
                # not cached; the next call scans again
                raise classify_call_error(e) from e
            if not code:
                self._dead = f"no contract deployed at quoter {self.quoter}"
                logger.warning("%s: %s", self.dex_id, self._dead)
                raise AdapterMismatch(self._dead)
            names = dict(self._selectors)
            names["path"] = self._sel_path
            declared = scan_dispatcher(code, names)
            caps = QuoterCapabilities(declared=declared)
            if declared is not None:
                caps.multihop = "path" in declared
                shapes = [s for s in SINGLE_SHAPES if s in declared]
                if len(shapes) == 1:
                    caps.single_shape = shapes[0]
            logger.info(
                "%s quoter %s shapes: declared=%s single_shape=%s multihop=%s",
                self.dex_id,
                self.quoter,
                sorted(declared) if declared else None,
                caps.single_shape,
                caps.multihop,
            )
            self._caps = caps
            return caps

    def _shape_order(self, caps: QuoterCapabilities) -> List[str]:
        if caps.single_shape:
            return [caps.single_shape]
        return [
            s
            for s in SINGLE_SHAPES
            if s not in caps.rejected and (caps.declared is None or s in caps.declared)
        ]

    def _encode_single(self, shape: str, token_in: str, token_out: str, fee: int, amount_in: int) -> str:
        if shape == SHAPE_TUPLE:
            params = encode(
                ["(address,address,uint256,uint24,uint160)"],
                [(token_in, token_out, int(amount_in), int(fee), 0)],
            )
        else:
            params = encode(
                ["address", "address", "uint24", "uint256", "uint160"],
                [token_in, token_out, int(fee), int(amount_in), 0],
            )
        return "0x" + self._selectors[shape] + params.hex()

    async def _call_single(
        self,
        shape: str,
        token_in: str,
        token_out: str,
        fee: int,
        amount_in: int,
        *,
        timeout_s: Optional[float],
    ) -> Tuple[int, Optional[int], Optional[str]]:
        data = self._encode_single(shape, token_in, token_out, fee, amount_in)
        try:
            raw = await self.rpc.eth_call(self.quoter, data, timeout_s=timeout_s)
        except CallReverted as e:
            if shape == SHAPE_POSITIONAL:
                amount = _revert_return_amount(e)
                if amount is not None:
                    return amount, None, e.data
            raise
        try:
            amount_out, gas = _decode_single(shape, hex_to_bytes(raw))
        except AdapterMismatch:
            raise
        except Exception as e:
            raise AdapterMismatch(f"undecodable {shape} response: {e}") from e
        return amount_out, gas, raw

    async def _quote_single(self, candidate: PoolCandidate, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        if candidate.fee_tier is None:
            raise AdapterMismatch("concentrated-liquidity quote requires a fee tier")
        caps = await self.capabilities(timeout_s=timeout_s)
        shapes = self._shape_order(caps)
        if not shapes:
            raise AdapterMismatch(f"quoter {self.quoter} accepts no known quoteExactInputSingle shape")

        last_err: Exception = NoLiquidity("no quote")
        revert_err: Optional[Exception] = None
        for i, shape in enumerate(shapes):
            try:
                amount_out, gas, raw = await self._call_single(
                    shape,
                    candidate.token_in,
                    candidate.token_out,
                    int(candidate.fee_tier),
                    amount_in,
                    timeout_s=timeout_s,
                )
            except Exception as e:
                qe = classify_call_error(e)
                if isinstance(qe, TransportError):
                    raise qe from e
                last_err = qe
                if isinstance(qe, AdapterMismatch):
                    # Negative result is cached; this shape is never retried.
                    caps.rejected.add(shape)
                    logger.info("%s quoter %s rejects %s shape: %s", self.dex_id, self.quoter, shape, qe)
                    continue
                revert_err = qe
                if caps.single_shape is None and i + 1 < len(shapes):
                    # Unconfirmed shape reverted; the fallback shape decides.
                    continue
                break
            else:
                amount_out = check_amount(amount_out)
                if caps.single_shape is None:
                    caps.single_shape = shape
                    logger.info("%s quoter %s confirmed %s shape", self.dex_id, self.quoter, shape)
                return QuoteResult.success(
                    self.dex_id,
                    self.kind,
                    self.single_hop_path(candidate),
                    amount_in,
                    amount_out,
                    gas_estimate=gas if gas is not None else self.gas_estimate,
                    fee_tier=int(candidate.fee_tier),
                    fee_bps=int(candidate.fee_tier) // 100,
                    adapter=f"{self.dex_id}_quoter_{shape}",
                    **raw_fingerprint(raw),
                )
        raise revert_err or last_err

    async def _call_path(self, path: Path, amount_in: int, *, timeout_s: Optional[float]) -> Tuple[int, Optional[int], str]:
        params = encode(["bytes", "uint256"], [path_codec.encode(path), int(amount_in)])
        raw = await self.rpc.eth_call(self.quoter, "0x" + self._sel_path + params.hex(), timeout_s=timeout_s)
        blob = hex_to_bytes(raw)
        try:
            if len(blob) == 32:
                return int(decode(["uint256"], blob)[0]), None, raw
            amount_out, _prices, _ticks, gas = decode(["uint256", "uint160[]", "uint32[]", "uint256"], blob)
        except Exception as e:
            raise AdapterMismatch(f"undecodable quoteExactInput response: {e}") from e
        return int(amount_out), int(gas), raw

    async def _quote_chained(self, path: Path, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        tokens = path_tokens(path)
        fees = path_fees(path)
        amount = int(amount_in)
        hop_amounts = [amount]
        gas_total = 0
        for i, fee in enumerate(fees):
            hop = PoolCandidate(self.dex_id, self.kind, tokens[i], tokens[i + 1], fee, self.quoter, self.factory)
            res = await self._quote_single(hop, amount, timeout_s=timeout_s)
            amount = int(res.amount_out)
            hop_amounts.append(amount)
            gas_total += int(res.gas_estimate or 0)
        return QuoteResult.success(
            self.dex_id,
            self.kind,
            path,
            amount_in,
            amount,
            gas_estimate=gas_total or None,
            composition=MULTIHOP_CHAINED,
            hop_amounts=hop_amounts,
            adapter=f"{self.dex_id}_quoter_chained",
        )

    async def _quote_path(self, path: Path, amount_in: int, *, timeout_s: Optional[float]) -> QuoteResult:
        if len(path) == 2:
            tin, fee = path[0]
            cand = PoolCandidate(self.dex_id, self.kind, tin, path[1][0], fee, self.quoter, self.factory)
            return await self._quote_single(cand, amount_in, timeout_s=timeout_s)
        if self.multihop == MULTIHOP_CHAINED:
            return await self._quote_chained(path, amount_in, timeout_s=timeout_s)

        caps = await self.capabilities(timeout_s=timeout_s)
        if caps.multihop is False:
            if self.multihop == MULTIHOP_PATH:
                raise AdapterMismatch(f"quoter {self.quoter} has no quoteExactInput")
            return await self._quote_chained(path, amount_in, timeout_s=timeout_s)

        try:
            amount_out, gas, raw = await self._call_path(path, amount_in, timeout_s=timeout_s)
        except Exception as e:
            qe = classify_call_error(e)
            if isinstance(qe, AdapterMismatch):
                caps.multihop = False
                if self.multihop == MULTIHOP_AUTO:
                    logger.info(
                        "%s quoter %s rejects byte-path quotes (%s); composing single-hop quotes instead",
                        self.dex_id,
                        self.quoter,
                        qe,
                    )
                    return await self._quote_chained(path, amount_in, timeout_s=timeout_s)
            raise qe from e

        caps.multihop = True
        return QuoteResult.success(
            self.dex_id,
            self.kind,
            path,
            amount_in,
            check_amount(amount_out),
            gas_estimate=gas if gas is not None else self.gas_estimate * (len(path) - 1),
            composition=MULTIHOP_PATH,
            adapter=f"{self.dex_id}_quoter_path",
            **raw_fingerprint(raw),
        )
