# dexquote/config.py
# Module-level defaults. Chain deployments (tokens, dexes) live in
# dexquote/configs/chains/<name>.json; RPC URLs can be overridden with
# RPC_URLS / RPC_URL and the chain with CHAIN_NAME / CHAIN_ID.

# Default chain when neither CHAIN_NAME nor CHAIN_ID is set.
DEFAULT_CHAIN = "hyperevm"

# Fallback RPC list (chain config rpc_urls take precedence).
RPC_URLS = [
    "https://rpc.hyperliquid.xyz/evm",
]

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 0.5
RPC_TIMEOUT_MAX_S = 10.0
RPC_DEFAULT_TIMEOUT_S = 4.0

# Transport-level retries inside AsyncRPC (HTTP 429/5xx only). The quote
# engine does its own single linear retry on top, so keep this at 0.
RPC_RETRY_COUNT = 0
RPC_BACKOFF_BASE_S = 0.35
RPC_RATE_LIMIT_BACKOFF_S = 0.35

# Quote engine
QUOTE_MAX_INFLIGHT = 16  # concurrent quote attempts
QUOTE_ATTEMPT_TIMEOUT_S = 5.0
QUOTE_TRANSPORT_RETRIES = 1
QUOTE_RETRY_BACKOFF_S = 0.25  # linear: attempt * backoff

# Decoded amounts above this are treated as garbage from a wrong ABI shape.
QUOTE_SANITY_MAX_AMOUNT = 10**40

# Pool catalog: "static" quotes every configured (dex, fee tier);
# "discovered" asks factories first and drops zero-address pools.
CATALOG_STRATEGY = "static"
CATALOG_DISCOVERY_TTL_S = 300.0

# Concentrated-liquidity fee tiers (hundredths of a bip)
FEE_TIERS = [100, 500, 3000, 10000]  # 0.01%, 0.05%, 0.3%, 1%

# Synthetic multi-hop routes through the chain's intermediate tokens.
MULTIHOP_ENABLED = True
MULTIHOP_MAX_HOPS = 3  # 2 = one intermediate, 3 = two intermediates
MULTIHOP_MAX_PATHS_PER_DEX = 16

# Price impact baseline: a fixed 10**(decimals_in - PRICE_IMPACT_REFERENCE_DECIMALS)
# raw units (0.0001 token), capped at amount_in.
PRICE_IMPACT_ENABLED = True
PRICE_IMPACT_REFERENCE_DECIMALS = 4

# Drop routes whose price impact exceeds this many bps (0 = disabled).
MAX_PRICE_IMPACT_BPS = 0

# Split routing across the two best candidates.
SPLIT_ROUTING_ENABLED = False
SPLIT_RATE_TOLERANCE = 0.005  # top two within 0.5%
SPLIT_INCREMENTS = 10
SPLIT_CONVERGENCE_TOLERANCE = 0.0005

# Default gas hints when a quoter does not report one.
V2_GAS_ESTIMATE = 120_000
V3_GAS_ESTIMATE = 180_000

# Native asset sentinel and precision.
NATIVE_TOKEN_SENTINEL = "0xEeeeeEeeeEeEeEeEeEeeEEEeeeeEeeeeeeeEEeE"
NATIVE_DECIMALS = 18
