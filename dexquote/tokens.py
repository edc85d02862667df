from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from eth_abi import decode
from eth_utils import is_hex_address, to_checksum_address

from dexquote import config
from dexquote.chain_config import ChainConfig
from dexquote.dex.base import hex_to_bytes
from dexquote.dex.types import Token
from dexquote.errors import TokenMetadataUnavailable, TokenNotFound
from infra.rpc import CallReverted, RPCError

logger = logging.getLogger(__name__)

DECIMALS_SELECTOR = "0x313ce567"
SYMBOL_SELECTOR = "0x95d89b41"


def _decode_symbol(hex_data: Optional[str]) -> Optional[str]:
    blob = hex_to_bytes(hex_data)
    if len(blob) < 32:
        return None
    try:
        # Dynamic string: offset | length | data
        return decode(["string"], blob)[0].strip() or None
    except Exception:
        pass
    try:
        # Older tokens return bytes32
        return blob[:32].rstrip(b"\x00").decode("utf-8", errors="ignore").strip() or None
    except Exception:
        return None


class TokenRegistry:
    """Token id -> Token(decimals, symbol), cached for the session.

    Decimals come from trusted chain config or the token's decimals() call;
    they are never defaulted. Concurrent lookups of the same token share one
    in-flight fetch.
    """

    def __init__(
        self,
        rpc: Any,
        chain: Optional[ChainConfig] = None,
        *,
        timeout_s: Optional[float] = None,
        trust_config: bool = True,
    ):
        self.rpc = rpc
        self.chain = chain
        self.timeout_s = timeout_s
        self.trust_config = bool(trust_config)
        self._cache: Dict[str, Token] = {}
        self._inflight: Dict[str, "asyncio.Future[Token]"] = {}
        self.fetches = 0

    def is_native(self, token_id: str) -> bool:
        t = str(token_id or "").strip()
        if t.lower() == config.NATIVE_TOKEN_SENTINEL.lower():
            return True
        return self.chain is not None and t.upper() == self.chain.native_symbol

    def canonical(self, token_id: str) -> str:
        """Symbol or address -> checksum address (native -> sentinel)."""
        t = str(token_id or "").strip()
        if self.is_native(t):
            return to_checksum_address(config.NATIVE_TOKEN_SENTINEL)
        if self.chain is not None:
            t = self.chain.token_address(t)
        if not is_hex_address(t):
            raise TokenNotFound(f"unknown token '{token_id}'")
        return to_checksum_address(t)

    def quote_address(self, token: Token) -> str:
        """Address pools are keyed by: the wrapped token stands in for native."""
        if not token.is_native:
            return token.address
        wrapped = self.chain.wrapped_native_address() if self.chain is not None else None
        if not wrapped or not is_hex_address(wrapped):
            raise TokenNotFound("native asset has no wrapped token configured")
        return to_checksum_address(wrapped)

    def cached(self, token_id: str) -> Optional[Token]:
        return self._cache.get(self.canonical(token_id))

    async def resolve(self, token_id: str) -> Token:
        addr = self.canonical(token_id)
        hit = self._cache.get(addr)
        if hit is not None:
            return hit
        return await self._join(addr)

    async def refresh(self, token_id: str) -> Token:
        addr = self.canonical(token_id)
        self._cache.pop(addr, None)
        return await self._join(addr)

    async def _join(self, addr: str) -> Token:
        fut = self._inflight.get(addr)
        if fut is None:
            fut = asyncio.ensure_future(self._fetch(addr))
            self._inflight[addr] = fut

            def _done(f: "asyncio.Future[Token]", key: str = addr) -> None:
                if self._inflight.get(key) is f:
                    self._inflight.pop(key, None)

            fut.add_done_callback(_done)
        # A cancelled waiter must not cancel the shared fetch.
        return await asyncio.shield(fut)

    async def _fetch(self, addr: str) -> Token:
        if addr.lower() == config.NATIVE_TOKEN_SENTINEL.lower():
            sym = self.chain.native_symbol if self.chain is not None else None
            token = Token(addr, int(config.NATIVE_DECIMALS), sym, is_native=True)
            self._cache[addr] = token
            return token

        symbol = self.chain.symbol_for(addr) if self.chain is not None else None
        if self.trust_config and self.chain is not None:
            trusted = self.chain.trusted_decimals(addr)
            if trusted is not None:
                token = Token(addr, int(trusted), symbol)
                self._cache[addr] = token
                return token

        self.fetches += 1
        try:
            code = await self.rpc.get_code(addr, timeout_s=self.timeout_s)
        except RPCError as e:
            raise TokenMetadataUnavailable(f"{addr}: code lookup failed: {e}") from e
        if not hex_to_bytes(code):
            raise TokenNotFound(f"no contract deployed at {addr}")

        try:
            raw = await self.rpc.eth_call(addr, DECIMALS_SELECTOR, timeout_s=self.timeout_s)
            decimals = int(decode(["uint256"], hex_to_bytes(raw)[:32])[0])
        except CallReverted as e:
            raise TokenMetadataUnavailable(f"{addr}: decimals() reverted") from e
        except RPCError as e:
            raise TokenMetadataUnavailable(f"{addr}: decimals() failed: {e}") from e
        except Exception as e:
            raise TokenMetadataUnavailable(f"{addr}: decimals() undecodable: {e}") from e
        if decimals > 255:
            raise TokenMetadataUnavailable(f"{addr}: decimals() out of range: {decimals}")

        if symbol is None:
            try:
                symbol = _decode_symbol(await self.rpc.eth_call(addr, SYMBOL_SELECTOR, timeout_s=self.timeout_s))
            except RPCError:
                symbol = None

        token = Token(addr, decimals, symbol)
        self._cache[addr] = token
        logger.debug("resolved token %s (%s) decimals=%d", addr, symbol, decimals)
        return token
