from __future__ import annotations

from typing import Dict, Optional

NO_LIQUIDITY = "no_liquidity"
ADAPTER_MISMATCH = "adapter_mismatch"
TRANSPORT_ERROR = "transport_error"


class QuoteError(Exception):
    kind = "quote_error"


class TokenNotFound(QuoteError):
    kind = "token_not_found"


class TokenMetadataUnavailable(QuoteError):
    kind = "token_metadata_unavailable"


class NoLiquidity(QuoteError):
    """Pool missing, empty, or the quote reverted. Expected and non-fatal."""

    kind = NO_LIQUIDITY


class AdapterMismatch(QuoteError):
    """The contract does not accept the ABI shape we used."""

    kind = ADAPTER_MISMATCH


class TransportError(QuoteError):
    """Network failure or timeout. Retryable."""

    kind = TRANSPORT_ERROR


class AllRoutesExhausted(QuoteError):
    """Every candidate failed; carries the failure counts by kind."""

    kind = "all_routes_exhausted"

    def __init__(self, message: str, failures: Optional[Dict[str, int]] = None):
        super().__init__(message)
        self.failures = dict(failures or {})
