import asyncio

import pytest

from dexquote.dex.concentrated import ConcentratedLiquidityAdapter
from dexquote.dex.constant_product import ConstantProductAdapter
from dexquote.dex.types import make_path
from dexquote.engine import QuoteEngine
from dexquote.pool_catalog import StaticCatalog
from infra.metrics import METRICS
from infra.rpc import RPCTransportError

from conftest import (
    HUB,
    SIG_GET_AMOUNTS_OUT,
    SIG_PATH,
    SIG_TUPLE,
    TOKEN_A,
    TOKEN_B,
    V2_ROUTER,
    V3_QUOTER,
    dispatcher_code,
    quoter_v2,
    v2_pool,
    words,
)


def _engine(fake_chain, *, v3_tiers=(500, 3000), **kw) -> QuoteEngine:
    adapters = {
        "testswap_v2": ConstantProductAdapter(fake_chain, dex_id="testswap_v2", router=V2_ROUTER),
        "testswap_v3": ConcentratedLiquidityAdapter(
            fake_chain, dex_id="testswap_v3", quoter=V3_QUOTER, fee_tiers=list(v3_tiers)
        ),
    }
    kw.setdefault("multihop_enabled", False)
    kw.setdefault("backoff_s", 0.0)
    return QuoteEngine(adapters, StaticCatalog(adapters), **kw)


@pytest.mark.asyncio
async def test_one_failure_does_not_discard_others(fake_chain) -> None:
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    fake_chain.on(V3_QUOTER, SIG_TUPLE, quoter_v2({500: lambda x: x * 2}))
    engine = _engine(fake_chain)
    results = await engine.gather_quotes(TOKEN_A, TOKEN_B, 100)
    assert len(results) == 3
    ok = [r for r in results if r.ok]
    assert [(r.dex_id, r.meta["fee_tier"]) for r in ok] == [("testswap_v3", 500)]
    assert sorted(r.failure for r in results if not r.ok) == ["no_liquidity", "no_liquidity"]
    assert METRICS.snapshot()["reason_counters"]["quote_failures_by_kind"] == {"no_liquidity": 2}


@pytest.mark.asyncio
async def test_amount_must_be_positive(fake_chain) -> None:
    with pytest.raises(ValueError):
        await _engine(fake_chain).gather_quotes(TOKEN_A, TOKEN_B, 0)


@pytest.mark.asyncio
async def test_hanging_call_times_out(fake_chain) -> None:
    async def hang(_a: bytes) -> str:
        await asyncio.sleep(10)
        return words(["uint256[]"], [[1, 1]])

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, hang)
    engine = _engine(fake_chain, attempt_timeout_s=0.05, retries=0)
    results = await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, dexes=["testswap_v2"])
    assert [r.failure for r in results] == ["transport_error"]
    assert "timed out" in results[0].error


@pytest.mark.asyncio
async def test_transport_error_retried_once(fake_chain) -> None:
    attempts = {"n": 0}
    inner = v2_pool(lambda x: x * 3)

    def flaky(args: bytes) -> str:
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise RPCTransportError("502")
        return inner(args)

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, flaky)
    results = await _engine(fake_chain).gather_quotes(TOKEN_A, TOKEN_B, 100, protocols=["v2"])
    assert [r.amount_out for r in results] == [300]
    assert attempts["n"] == 2
    snap = METRICS.snapshot("quote_")
    assert snap["counters"]["quote_retries_total"] == 1
    assert snap["counters"]["quote_attempts_total"] == 2
    assert snap["histograms"]["quote_attempt_latency_ms"]["count"] == 2
    assert "rpc_requests_total" not in snap["counters"]


@pytest.mark.asyncio
async def test_transport_error_reported_after_retry(fake_chain) -> None:
    def down(_a: bytes) -> str:
        raise RPCTransportError("502")

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, down)
    results = await _engine(fake_chain, retries=1).gather_quotes(TOKEN_A, TOKEN_B, 100, protocols=["v2"])
    assert [r.failure for r in results] == ["transport_error"]
    assert fake_chain.count(V2_ROUTER, SIG_GET_AMOUNTS_OUT) == 2


@pytest.mark.asyncio
async def test_no_liquidity_is_not_retried(fake_chain) -> None:
    results = await _engine(fake_chain).gather_quotes(TOKEN_A, TOKEN_B, 100, protocols=["v2"])
    assert [r.failure for r in results] == ["no_liquidity"]
    assert fake_chain.count(V2_ROUTER, SIG_GET_AMOUNTS_OUT) == 1


@pytest.mark.asyncio
async def test_synthetic_paths_through_intermediates(fake_chain) -> None:
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x // 2))
    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE, SIG_PATH))
    engine = _engine(fake_chain, v3_tiers=(500,), multihop_enabled=True, intermediates=[HUB, TOKEN_A], max_hops=2)
    attempts = await engine.plan(TOKEN_A, TOKEN_B)
    routes = sorted(a.label for a in attempts)
    assert f"testswap_v2:{TOKEN_A}>{HUB}>{TOKEN_B}" in routes
    assert f"testswap_v3:{TOKEN_A}>{HUB}>{TOKEN_B}" in routes
    # Endpoints are never used as intermediates.
    assert len(attempts) == 4

    results = await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, dexes=["testswap_v2"])
    by_hops = {r.hop_count: r.amount_out for r in results if r.ok}
    assert by_hops == {1: 50, 2: 25}


@pytest.mark.asyncio
async def test_paths_per_dex_are_capped(fake_chain) -> None:
    hubs = [f"0x{n:040x}" for n in range(0xF0, 0xF4)]
    engine = _engine(
        fake_chain,
        v3_tiers=(100, 500, 3000),
        multihop_enabled=True,
        intermediates=hubs,
        max_hops=3,
        max_paths_per_dex=5,
    )
    attempts = await engine.plan(TOKEN_A, TOKEN_B, protocols=["v3"])
    multi = [a for a in attempts if a.candidate is None]
    assert len(multi) == 5
    assert len(attempts) - len(multi) == 3


@pytest.mark.asyncio
async def test_reference_quotes_attached(fake_chain) -> None:
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: (x * 1000) // (1000 + x)))
    engine = _engine(fake_chain)
    (res,) = await engine.gather_quotes(TOKEN_A, TOKEN_B, 1000, dexes=["testswap_v2"], reference_amount=10)
    assert res.amount_out == 500
    assert (res.reference_amount_in, res.reference_amount_out) == (10, 9)

    (same,) = await engine.gather_quotes(TOKEN_A, TOKEN_B, 10, dexes=["testswap_v2"], reference_amount=10)
    assert (same.reference_amount_in, same.reference_amount_out) == (10, 9)


@pytest.mark.asyncio
async def test_requote_same_route(fake_chain) -> None:
    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, v2_pool(lambda x: x * 2))
    engine = _engine(fake_chain)
    (res,) = await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, dexes=["testswap_v2"])
    again = await engine.requote(res, 7)
    assert again.route_id == res.route_id
    assert again.amount_out == 14


@pytest.mark.asyncio
async def test_cancel_abandons_outstanding_calls(fake_chain) -> None:
    started = asyncio.Event()
    finished = []

    async def slow(_a: bytes) -> str:
        started.set()
        await asyncio.sleep(5)
        finished.append(True)
        return words(["uint256[]"], [[1, 1]])

    fake_chain.on(V2_ROUTER, SIG_GET_AMOUNTS_OUT, slow)
    engine = _engine(fake_chain, attempt_timeout_s=30)
    task = asyncio.ensure_future(engine.gather_quotes(TOKEN_A, TOKEN_B, 100, dexes=["testswap_v2"]))
    await asyncio.wait_for(started.wait(), 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert finished == []


@pytest.mark.asyncio
async def test_concurrency_is_bounded(fake_chain) -> None:
    live = {"now": 0, "peak": 0}
    inner = quoter_v2({t: (lambda x: x) for t in (100, 500, 3000, 10000)})

    async def tracked(args: bytes) -> str:
        live["now"] += 1
        live["peak"] = max(live["peak"], live["now"])
        await asyncio.sleep(0.01)
        live["now"] -= 1
        return inner(args)

    fake_chain.set_code(V3_QUOTER, dispatcher_code(SIG_TUPLE))
    fake_chain.on(V3_QUOTER, SIG_TUPLE, tracked)
    engine = _engine(fake_chain, v3_tiers=(100, 500, 3000, 10000), max_inflight=2)
    results = await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, protocols=["v3"])
    assert len([r for r in results if r.ok]) == 4
    assert live["peak"] <= 2


def test_plan_path_fills_open_fee_slots(fake_chain) -> None:
    engine = _engine(fake_chain, v3_tiers=(100, 500, 3000), max_paths_per_dex=4)
    attempts = engine.plan_path(make_path([TOKEN_A, HUB, TOKEN_B], [None, None]))
    v2 = [a for a in attempts if a.adapter.dex_id == "testswap_v2"]
    v3 = [a for a in attempts if a.adapter.dex_id == "testswap_v3"]
    assert [a.path for a in v2] == [make_path([TOKEN_A, HUB, TOKEN_B])]
    assert len(v3) == 4
    assert all(a.candidate is None for a in attempts)

    pinned = engine.plan_path(make_path([TOKEN_A, HUB, TOKEN_B], [500, 3000]), protocols=["v3"])
    assert [a.path for a in pinned] == [make_path([TOKEN_A, HUB, TOKEN_B], [500, 3000])]


@pytest.mark.asyncio
async def test_explicit_path_must_match_pair(fake_chain) -> None:
    engine = _engine(fake_chain)
    with pytest.raises(ValueError):
        await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, path=make_path([TOKEN_B, TOKEN_A]))
    with pytest.raises(ValueError):
        await engine.gather_quotes(TOKEN_A, TOKEN_B, 100, path=make_path([TOKEN_A, TOKEN_A, TOKEN_B]))
    assert fake_chain.calls == []
