from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

# One path element: the token and the fee tier of the pool leading to the
# next token (None on the last element and for constant-product hops).
PathHop = Tuple[str, Optional[int]]
Path = Tuple[PathHop, ...]


def make_path(tokens: Sequence[str], fees: Optional[Sequence[Optional[int]]] = None) -> Path:
    if len(tokens) < 2:
        raise ValueError("path requires at least two tokens")
    fee_list = list(fees) if fees is not None else [None] * (len(tokens) - 1)
    if len(fee_list) != len(tokens) - 1:
        raise ValueError("path requires exactly one fee slot per hop")
    hops = [(str(t), None if f is None else int(f)) for t, f in zip(tokens[:-1], fee_list)]
    hops.append((str(tokens[-1]), None))
    return tuple(hops)


def path_tokens(path: Path) -> Tuple[str, ...]:
    return tuple(t for t, _ in path)


def path_fees(path: Path) -> Tuple[Optional[int], ...]:
    return tuple(f for _, f in path[:-1])


@dataclass(frozen=True)
class Token:
    address: str
    decimals: int
    symbol: Optional[str] = None
    is_native: bool = False

    def __post_init__(self) -> None:
        if not 0 <= int(self.decimals) <= 255:
            raise ValueError(f"decimals out of range: {self.decimals}")


@dataclass(frozen=True)
class PoolCandidate:
    dex_id: str
    kind: str
    token_in: str
    token_out: str
    fee_tier: Optional[int] = None
    contract: Optional[str] = None  # router (v2) or quoter (v3)
    factory: Optional[str] = None
    pool: Optional[str] = None  # set by discovery

    def label(self) -> str:
        if self.fee_tier is None:
            return f"{self.dex_id}:{self.token_in}/{self.token_out}"
        return f"{self.dex_id}:{self.token_in}/{self.token_out}:{self.fee_tier}"


@dataclass(frozen=True)
class QuoteRequest:
    """One gather: a token pair and size, optionally pinned to a hop path.

    Path fee slots left as None are filled per dex (every configured tier
    for concentrated-liquidity dexes, ignored by constant-product ones).
    """

    token_in: str
    token_out: str
    amount_in: int
    path: Optional[Path] = None

    def __post_init__(self) -> None:
        if int(self.amount_in) <= 0:
            raise ValueError("amount_in must be > 0")
        if self.path is None:
            return
        if len(self.path) < 2:
            raise ValueError("path requires at least two tokens")
        if self.path[0][0].lower() != self.token_in.lower() or self.path[-1][0].lower() != self.token_out.lower():
            raise ValueError("path must start at token_in and end at token_out")
        if self.path[-1][1] is not None:
            raise ValueError("last hop must not carry a fee tier")
        tokens = [t.lower() for t, _ in self.path]
        if len(set(tokens)) != len(tokens):
            raise ValueError("path visits a token twice")


@dataclass(frozen=True)
class QuoteResult:
    dex_id: str
    kind: str
    path: Path
    amount_in: int
    amount_out: int = 0
    status: str = STATUS_SUCCESS
    failure: Optional[str] = None
    error: Optional[str] = None
    gas_estimate: Optional[int] = None
    reference_amount_in: Optional[int] = None
    reference_amount_out: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(
        cls,
        dex_id: str,
        kind: str,
        path: Path,
        amount_in: int,
        amount_out: int,
        *,
        gas_estimate: Optional[int] = None,
        **meta: Any,
    ) -> "QuoteResult":
        return cls(
            dex_id=dex_id,
            kind=kind,
            path=path,
            amount_in=int(amount_in),
            amount_out=int(amount_out),
            gas_estimate=gas_estimate,
            meta=dict(meta),
        )

    @classmethod
    def failed(cls, dex_id: str, kind: str, path: Path, amount_in: int, failure: str, error: str = "") -> "QuoteResult":
        return cls(
            dex_id=dex_id,
            kind=kind,
            path=path,
            amount_in=int(amount_in),
            status=STATUS_FAILED,
            failure=str(failure),
            error=str(error) or None,
        )

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def token_in(self) -> str:
        return self.path[0][0]

    @property
    def token_out(self) -> str:
        return self.path[-1][0]

    @property
    def hop_count(self) -> int:
        return len(self.path) - 1

    @property
    def route_id(self) -> str:
        parts = []
        for token, fee in self.path:
            parts.append(token.lower() if fee is None else f"{token.lower()}@{fee}")
        return f"{self.dex_id}:" + ">".join(parts)
