import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from dexquote.chain_config import parse_chain_config
from infra.metrics import METRICS
from infra.rpc import CallReverted

ZERO = "0x0000000000000000000000000000000000000000"


def addr(n: int) -> str:
    return to_checksum_address("0x" + f"{n:040x}")


TOKEN_A = addr(0xA0)  # 18 decimals
TOKEN_B = addr(0xB0)  # 8 decimals
HUB = addr(0xC0)  # wrapped native, 18 decimals
V2_ROUTER = addr(0x1001)
V2_FACTORY = addr(0x1002)
V3_QUOTER = addr(0x2001)
V3_FACTORY = addr(0x2002)

SIG_GET_AMOUNTS_OUT = "getAmountsOut(uint256,address[])"
SIG_TUPLE = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"
SIG_POSITIONAL = "quoteExactInputSingle(address,address,uint24,uint256,uint160)"
SIG_PATH = "quoteExactInput(bytes,uint256)"
SIG_GET_PAIR = "getPair(address,address)"
SIG_GET_POOL = "getPool(address,address,uint24)"
SIG_DECIMALS = "decimals()"
SIG_SYMBOL = "symbol()"


def sel(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


def words(types: List[str], values: List[Any]) -> str:
    return "0x" + encode(types, values).hex()


def dispatcher_code(*sigs: str) -> str:
    """Minimal bytecode whose dispatcher pushes the given selectors."""
    body = "6080604052"
    for s in sigs:
        body += "63" + sel(s) + "14"
    return "0x" + body + "00"


Handler = Callable[[bytes], Any]


class FakeChain:
    """In-memory read-only chain client keyed by (address, selector)."""

    def __init__(self) -> None:
        self.code: Dict[str, str] = {}
        self.handlers: Dict[Tuple[str, str], Handler] = {}
        self.calls: List[Tuple[str, str]] = []
        self.code_calls: List[str] = []

    def set_code(self, address: str, code: str = "0x6001") -> None:
        self.code[address.lower()] = code

    def on(self, address: str, sig: str, handler: Handler) -> None:
        self.handlers[(address.lower(), sel(sig))] = handler

    def count(self, address: str, sig: str) -> int:
        key = (address.lower(), sel(sig))
        return sum(1 for c in self.calls if c == key)

    async def eth_call(self, to: str, data: str, block: str = "latest", *, timeout_s: Optional[float] = None) -> str:
        hx = data[2:] if data.startswith("0x") else data
        key = (to.lower(), hx[:8])
        self.calls.append(key)
        await asyncio.sleep(0)
        handler = self.handlers.get(key)
        if handler is None:
            raise CallReverted("execution reverted", None)
        out = handler(bytes.fromhex(hx[8:]))
        if asyncio.iscoroutine(out):
            out = await out
        return out

    async def get_code(self, address: str, block: str = "latest", *, timeout_s: Optional[float] = None) -> str:
        self.code_calls.append(address.lower())
        await asyncio.sleep(0)
        return self.code.get(address.lower(), "0x")

    async def close(self) -> None:
        return None


def v2_pool(rate_fn: Callable[[int], int]) -> Handler:
    """getAmountsOut handler applying rate_fn to each hop."""

    def handler(args: bytes) -> str:
        amount_in, path = decode(["uint256", "address[]"], args)
        amounts = [int(amount_in)]
        for _ in path[1:]:
            amounts.append(int(rate_fn(amounts[-1])))
        return words(["uint256[]"], [amounts])

    return handler


def quoter_v2(table: Dict[int, Callable[[int], int]], gas: int = 90_000) -> Handler:
    """QuoterV2 tuple-shape handler; fee tiers missing from table revert."""

    def handler(args: bytes) -> str:
        ((_tin, _tout, amount_in, fee, _limit),) = decode(["(address,address,uint256,uint24,uint160)"], args)
        fn = table.get(int(fee))
        if fn is None:
            raise CallReverted("execution reverted", None)
        return words(["uint256", "uint160", "uint32", "uint256"], [int(fn(int(amount_in))), 0, 1, gas])

    return handler


def chain_data(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "chain_id": 31337,
        "name": "testchain",
        "rpc_urls": ["http://127.0.0.1:8545"],
        "native_symbol": "ETH",
        "wrapped_native": "WETH",
        "tokens": {"TKA": TOKEN_A, "TKB": TOKEN_B, "WETH": HUB},
        "token_decimals": {"TKA": 18, "TKB": 8, "WETH": 18},
        "intermediates": ["WETH"],
        "dexes": {
            "testswap_v2": {"kind": "v2", "router": V2_ROUTER, "factory": V2_FACTORY, "fee_bps": 30},
            "testswap_v3": {
                "kind": "v3",
                "quoter": V3_QUOTER,
                "factory": V3_FACTORY,
                "fee_tiers": [500, 3000],
                "multihop": "auto",
            },
        },
    }
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    METRICS.reset()


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def chain_cfg():
    return parse_chain_config(chain_data())
