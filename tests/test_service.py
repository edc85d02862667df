from decimal import Decimal

import pytest
from eth_abi import decode

from dexquote.chain_config import parse_chain_config
from dexquote.dex import path_codec
from dexquote.errors import AllRoutesExhausted, TokenNotFound
from dexquote.service import QuoteService

from conftest import (
    HUB,
    SIG_GET_AMOUNTS_OUT,
    SIG_PATH,
    SIG_TUPLE,
    TOKEN_A,
    TOKEN_B,
    V2_ROUTER,
    V3_QUOTER,
    chain_data,
    dispatcher_code,
    quoter_v2,
    v2_pool,
    words,
)

ONE_A = 10**18


def _service(fake_chain, cfg=None, **engine) -> QuoteService:
    engine.setdefault("multihop_enabled", False)
    engine.setdefault("backoff_s", 0.0)
    return QuoteService(fake_chain, cfg or parse_chain_config(chain_data()), engine_options=engine)


def _v3_tiers(tiers):
    data = chain_data()
    data["dexes"]["testswap_v3"]["fee_tiers"] = list(tiers)
    return parse_chain_config(data)


@pytest.mark.asyncio
async def test_nine_failures_one_success(fake_chain) -> None:
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))  # every tier reverts
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x // 4))
    svc = _service(fake_chain, _v3_tiers([100, 200, 300, 400, 500, 600, 700, 800, 900]))
    tin, tout, quotes = await svc.gather("TKA", "TKB", ONE_A)
    assert len(quotes) == 10
    assert sum(1 for q in quotes if q.ok) == 1

    route = await svc.get_best_quote("TKA", "TKB", ONE_A)
    assert route.best.dex_id == "testswap_v2"
    assert route.amount_out == ONE_A // 4


@pytest.mark.asyncio
async def test_decimals_normalized_end_to_end(fake_chain) -> None:
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x * 5 * 10**6 // ONE_A))
    svc = _service(fake_chain)
    route = await svc.get_best_quote("TKA", "TKB", ONE_A, dexes=["testswap_v2"])
    assert route.amount_out == 5 * 10**6
    assert route.rate == Decimal("0.05")

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x * 5 * 10**7 // ONE_A))
    route = await svc.get_best_quote("TKA", "TKB", ONE_A, dexes=["testswap_v2"])
    assert route.rate == Decimal("0.5")


@pytest.mark.asyncio
async def test_lower_fee_tier_wins_on_output(fake_chain) -> None:
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    fake_chain.on(V3_QUOTER, SIG_TUPLE, quoter_v2({500: lambda _x: 100, 3000: lambda _x: 99}))
    svc = _service(fake_chain)
    route = await svc.get_best_quote("TKA", "TKB", ONE_A, protocols=["v3"])
    assert route.best.meta["fee_tier"] == 500
    assert route.amount_out == 100


@pytest.mark.asyncio
async def test_all_routes_exhausted(fake_chain) -> None:
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    svc = _service(fake_chain)
    with pytest.raises(AllRoutesExhausted) as exc:
        await svc.get_best_quote("TKA", "TKB", ONE_A)
    assert exc.value.failures == {"no_liquidity": 3}


@pytest.mark.asyncio
async def test_unknown_token(fake_chain) -> None:
    svc = _service(fake_chain)
    with pytest.raises(TokenNotFound):
        await svc.get_best_quote("NOPE", "TKB", ONE_A)
    with pytest.raises(ValueError):
        await svc.get_best_quote("TKA", "TKA", ONE_A)
    with pytest.raises(ValueError):
        await svc.get_best_quote("TKA", "TKB", 0)


@pytest.mark.asyncio
async def test_native_input_quotes_wrapped_token(fake_chain) -> None:
    seen = []
    inner = v2_pool(lambda x: x // 2)

    def router(args: bytes) -> str:
        _amount, path = decode(["uint256", "address[]"], args)
        seen.append(path[0].lower())
        return inner(args)

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, router)
    svc = _service(fake_chain)
    route = await svc.get_best_quote("ETH", "TKB", ONE_A, dexes=["testswap_v2"])
    assert route.amount_out == ONE_A // 2
    assert set(seen) == {HUB.lower()}


@pytest.mark.asyncio
async def test_multi_hop_route_through_hub(fake_chain) -> None:
    def router(args: bytes) -> str:
        amount_in, path = decode(["uint256", "address[]"], args)
        # Direct pair is thin; the hub legs are deep.
        factor = 1 if len(path) == 2 else 3
        amounts = [int(amount_in)]
        for _ in path[1:]:
            amounts.append(amounts[-1] * factor)
        return words(["uint256[]"], [amounts])

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, router)
    svc = _service(fake_chain, multihop_enabled=True)
    route = await svc.get_best_quote("TKA", "TKB", 10**6, dexes=["testswap_v2"])
    assert route.best.hop_count == 2
    assert route.best.path[1][0] == HUB
    assert route.amount_out == 9 * 10**6


@pytest.mark.asyncio
async def test_compare_and_spreads(fake_chain) -> None:
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x * 10**6 // ONE_A))
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    fake_chain.on(
        V3_QUOTER,
        SIG_TUPLE,
        quoter_v2({500: lambda x: x * 105 * 10**4 // ONE_A, 3000: lambda x: x * 103 * 10**4 // ONE_A}),
    )
    svc = _service(fake_chain)
    ranked = await svc.compare_quotes("TKA", "TKB", ONE_A)
    assert [r.rate for r in ranked] == [Decimal("0.0105"), Decimal("0.0103"), Decimal("0.01")]

    spreads = await svc.find_spreads("TKA", "TKB", ONE_A, 0.01)
    assert len(spreads) == 1
    assert spreads[0].high.quote.dex_id == "testswap_v3"
    assert spreads[0].low.quote.dex_id == "testswap_v2"
    assert spreads[0].spread == Decimal("0.05")
    assert await svc.find_spreads("TKA", "TKB", ONE_A, 0.06) == []


@pytest.mark.asyncio
async def test_split_through_service(fake_chain) -> None:
    def curve(depth: int):
        return lambda x: (x * depth) // (depth + x)

    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    fake_chain.on(V3_QUOTER, SIG_TUPLE, quoter_v2({500: curve(10**18), 3000: curve(10**18 - 10**15)}))
    svc = _service(fake_chain)
    route = await svc.get_best_quote("TKA", "TKB", ONE_A, protocols=["v3"], split=True)
    assert route.is_split
    assert sum(leg.amount_in for leg in route.legs) == ONE_A
    single = await svc.get_best_quote("TKA", "TKB", ONE_A, protocols=["v3"], split=False)
    assert route.amount_out > single.amount_out


@pytest.mark.asyncio
async def test_price_impact_grows_with_trade_size(fake_chain) -> None:
    depth = 10**18

    def falling(x: int) -> int:
        # rate falls from 2 towards 1 as size grows
        return x + (x * depth) // (depth + x)

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(falling))
    svc = _service(fake_chain)
    small = await svc.get_best_quote("TKA", "TKB", 100 * ONE_A, dexes=["testswap_v2"])
    large = await svc.get_best_quote("TKA", "TKB", 10**26, dexes=["testswap_v2"])
    assert small.rate > large.rate
    # both measured against the same fixed 0.0001 TKA baseline
    assert small.best.reference_amount_in == large.best.reference_amount_in == 10**14
    assert large.price_impact >= small.price_impact > 0


@pytest.mark.asyncio
async def test_explicit_path_is_quoted_and_ranked(fake_chain) -> None:
    def router(args: bytes) -> str:
        amount_in, path = decode(["uint256", "address[]"], args)
        amounts = [int(amount_in)]
        for _ in path[1:]:
            amounts.append(amounts[-1] * 3)
        return words(["uint256[]"], [amounts])

    def quote_path(args: bytes) -> str:
        raw_path, amount_in = decode(["bytes", "uint256"], args)
        hops = path_codec.decode(raw_path)
        assert hops[0][1] == 500
        factor = 5 if hops[1][1] == 500 else 4
        return words(["uint256", "uint160[]", "uint32[]", "uint256"], [amount_in * factor, [0, 0], [1, 1], 150_000])

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, router)
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE, SIG_PATH))
    fake_chain.on(V3_QUOTER, SIG_PATH, quote_path)
    svc = _service(fake_chain)
    # second hop fee left open: every configured v3 tier is tried
    path = [("TKA", 500), "WETH", "TKB"]
    ranked = await svc.compare_quotes("TKA", "TKB", 10**6, path=path)
    assert [r.quote.amount_out for r in ranked] == [9 * 10**6, 5 * 10**6, 4 * 10**6]
    assert all(r.quote.hop_count == 2 and r.quote.path[1][0] == HUB for r in ranked)
    assert [r.quote.path[1][1] for r in ranked[1:]] == [500, 3000]

    route = await svc.get_best_quote("TKA", "TKB", 10**6, path=path, protocols=["v3"])
    assert route.best.route_id == f"testswap_v3:{TOKEN_A.lower()}@500>{HUB.lower()}@500>{TOKEN_B.lower()}"
    # no direct-pair attempts when the path is pinned
    assert fake_chain.count(V3_QUOTER, SIG_TUPLE) == 0


@pytest.mark.asyncio
async def test_explicit_path_validation(fake_chain) -> None:
    svc = _service(fake_chain)
    with pytest.raises(ValueError):
        await svc.get_best_quote("TKA", "TKB", ONE_A, path=["TKA"])
    with pytest.raises(ValueError):
        await svc.get_best_quote("TKA", "TKB", ONE_A, path=["TKB", "WETH", "TKA"])
    with pytest.raises(ValueError):
        await svc.get_best_quote("TKA", "TKB", ONE_A, path=["TKA", ("TKB", 500)])
    with pytest.raises(TokenNotFound):
        await svc.get_best_quote("TKA", "TKB", ONE_A, path=["TKA", "NOPE", "TKB"])
