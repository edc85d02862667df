"""Concentrated-liquidity path encoding.

Wire format: token0 (20 bytes) | fee0 (3 bytes, big-endian) | token1 | ... | tokenN.
Constant-product routers take the plain address list instead.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from eth_utils import is_hex_address, to_canonical_address, to_checksum_address

from dexquote.dex.types import Path, PathHop

ADDR_SIZE = 20
FEE_SIZE = 3
MAX_FEE = 2**24 - 1


def encode(hops: Sequence[Tuple[str, Optional[int]]]) -> bytes:
    if len(hops) < 2:
        raise ValueError("path requires at least two tokens")
    parts: List[bytes] = []
    last = len(hops) - 1
    for i, (token, fee) in enumerate(hops):
        if not is_hex_address(token):
            raise ValueError(f"invalid token address: {token}")
        parts.append(to_canonical_address(token))
        if i == last:
            if fee is not None:
                raise ValueError("last hop must not carry a fee tier")
            break
        if fee is None or not 0 <= int(fee) <= MAX_FEE:
            raise ValueError(f"fee tier out of uint24 range: {fee}")
        parts.append(int(fee).to_bytes(FEE_SIZE, "big"))
    return b"".join(parts)


def decode(data: bytes) -> Path:
    blob = bytes(data)
    step = ADDR_SIZE + FEE_SIZE
    if len(blob) < ADDR_SIZE + step or (len(blob) - ADDR_SIZE) % step != 0:
        raise ValueError(f"malformed path of {len(blob)} bytes")
    hops: List[PathHop] = []
    i = 0
    while i + step <= len(blob):
        token = to_checksum_address(blob[i : i + ADDR_SIZE])
        fee = int.from_bytes(blob[i + ADDR_SIZE : i + step], "big")
        hops.append((token, fee))
        i += step
    hops.append((to_checksum_address(blob[i : i + ADDR_SIZE]), None))
    return tuple(hops)


def address_list(path: Path) -> List[str]:
    """Constant-product "path": the ordered token addresses."""
    return [to_checksum_address(token) for token, _ in path]
