from dexquote.dex.base import DEXAdapter, classify_call_error
from dexquote.dex.concentrated import ConcentratedLiquidityAdapter
from dexquote.dex.constant_product import ConstantProductAdapter
from dexquote.dex.registry import build_adapters
from dexquote.dex.types import PoolCandidate, QuoteRequest, QuoteResult, Token

__all__ = [
    "DEXAdapter",
    "classify_call_error",
    "ConcentratedLiquidityAdapter",
    "ConstantProductAdapter",
    "build_adapters",
    "PoolCandidate",
    "QuoteRequest",
    "QuoteResult",
    "Token",
]
