from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Optional, Union

from dexquote import config
from dexquote.dex.types import QuoteResult

# Enough digits for uint256 amounts on both sides of a division.
_PRECISION = 96


@dataclass(frozen=True)
class NormalizedQuote:
    rate: Decimal  # token_out units per token_in unit
    raw: int  # amount_out as returned on-chain
    amount_in: Decimal
    amount_out: Decimal


def from_raw(raw: int, decimals: int) -> Decimal:
    """Raw integer -> token units. Exact; no rounding."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(int(raw)).scaleb(-int(decimals))


def to_raw(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Token units -> raw integer. Refuses amounts finer than the token allows."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid amount '{amount}'") from e
    if not value.is_finite():
        raise ValueError(f"invalid amount '{amount}'")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = value.scaleb(int(decimals))
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount '{amount}' has more than {decimals} fractional digits")
    return int(scaled)


def rate_of(amount_in: int, amount_out: int, decimals_in: int, decimals_out: int) -> Decimal:
    if int(amount_in) <= 0:
        raise ValueError("amount_in must be > 0")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return from_raw(amount_out, decimals_out) / from_raw(amount_in, decimals_in)


def normalize(result: QuoteResult, decimals_in: int, decimals_out: int) -> NormalizedQuote:
    if not result.ok:
        raise ValueError(f"cannot normalize a failed quote ({result.failure})")
    return NormalizedQuote(
        rate=rate_of(result.amount_in, result.amount_out, decimals_in, decimals_out),
        raw=int(result.amount_out),
        amount_in=from_raw(result.amount_in, decimals_in),
        amount_out=from_raw(result.amount_out, decimals_out),
    )


def reference_amount(amount_in: int, decimals_in: int) -> int:
    """Fixed per-token size quoted as the no-impact baseline.

    Independent of the request size, so impact grows with amount_in on any
    route whose rate falls with size. Requests below the baseline are their
    own reference.
    """
    baseline = 10 ** max(0, int(decimals_in) - int(config.PRICE_IMPACT_REFERENCE_DECIMALS))
    return max(1, min(int(amount_in), baseline))


def price_impact(rate: Decimal, reference_rate: Decimal) -> Optional[Decimal]:
    """1 - rate / reference_rate, floored at zero. None without a usable reference."""
    if reference_rate is None or reference_rate <= 0:
        return None
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        impact = Decimal(1) - (Decimal(rate) / Decimal(reference_rate))
    return impact if impact > 0 else Decimal(0)


def quote_price_impact(result: QuoteResult, decimals_in: int, decimals_out: int) -> Optional[Decimal]:
    if not result.ok or not result.reference_amount_in or not result.reference_amount_out:
        return None
    ref = rate_of(result.reference_amount_in, result.reference_amount_out, decimals_in, decimals_out)
    return price_impact(rate_of(result.amount_in, result.amount_out, decimals_in, decimals_out), ref)
