from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Dict, List, Optional, Sequence

from dexquote import config
from dexquote.artifacts import append_jsonl, configure_logging
from dexquote.chain_config import KIND_V2, KIND_V3, load_chain_config, validate_chain_config
from dexquote.errors import AllRoutesExhausted, QuoteError
from dexquote.pricing import from_raw, to_raw
from dexquote.service import QuoteService
from infra.metrics import METRICS

logger = logging.getLogger(__name__)

PROTOCOL_ALIASES = {
    "v2": KIND_V2,
    "uniswap-v2": KIND_V2,
    "constant-product": KIND_V2,
    "v3": KIND_V3,
    "uniswap-v3": KIND_V3,
    "concentrated-liquidity": KIND_V3,
}


def _csv(raw: Optional[str]) -> List[str]:
    return [x.strip() for x in str(raw or "").split(",") if x.strip()]


def _hop_token(hop: Any) -> str:
    return hop if isinstance(hop, str) else hop[0]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dexquote", description="Best-rate quotes across DEX pools")
    parser.add_argument("--tokens", type=str, default="", help="token pair, e.g. WHYPE,UBTC (symbols or addresses)")
    parser.add_argument("--amount", type=str, default="1", help="input amount in token units")
    parser.add_argument("--network", type=str, default="", help=f"chain config name (default: {config.DEFAULT_CHAIN})")
    parser.add_argument("--rpc-url", type=str, default="", help="override the RPC endpoint")
    parser.add_argument("--dex", type=str, default="", help="comma-separated dex ids to include")
    parser.add_argument("--protocol", type=str, default="", help="v2|v3 (uniswap-v2|uniswap-v3 accepted)")
    parser.add_argument("--path", type=str, default="", help="pin the hop path, e.g. WHYPE,USDT0@500,UBTC")
    parser.add_argument("--active-only", action="store_true", help="skip dexes marked as testing")
    parser.add_argument("--split", action="store_true", help="allow splitting across the two best routes")
    parser.add_argument("--compare", action="store_true", help="print every successful quote")
    parser.add_argument("--arbitrage", action="store_true", help="report rate spreads between dexes")
    parser.add_argument("--min-spread", type=float, default=0.01, help="minimum spread for --arbitrage (0.01 = 1%%)")
    parser.add_argument("--monitor", action="store_true", help="repeat the query every --interval seconds")
    parser.add_argument("--interval", type=float, default=30.0, help="monitor interval in seconds")
    parser.add_argument("--count", type=int, default=0, help="stop monitoring after N rounds (0 = forever)")
    parser.add_argument("--output", type=str, default="", help="append results to this JSONL file")
    parser.add_argument("--json", action="store_true", help="print JSON instead of text")
    parser.add_argument("--config", action="store_true", help="print the chain config summary and exit")
    parser.add_argument("--log-level", type=str, default="WARNING", help="logging level")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.dexes = [d.lower() for d in _csv(args.dex)]
    protocols = []
    for p in _csv(args.protocol):
        kind = PROTOCOL_ALIASES.get(p.lower())
        if kind is None:
            parser.error(f"unknown protocol '{p}'")
        protocols.append(kind)
    args.protocols = protocols
    hops: List[Any] = []
    for item in _csv(args.path):
        token, sep, fee = item.partition("@")
        if not sep:
            hops.append(token.strip())
            continue
        try:
            hops.append((token.strip(), int(fee)))
        except ValueError:
            parser.error(f"bad fee tier in --path hop '{item}'")
    args.hops = hops
    args.pair = _csv(args.tokens)
    if hops and not args.pair:
        args.pair = [_hop_token(hops[0]), _hop_token(hops[-1])]
    if not args.config and len(args.pair) != 2:
        parser.error("--tokens needs exactly two tokens, e.g. --tokens WHYPE,UBTC")
    if args.interval <= 0:
        parser.error("--interval must be > 0")
    return args


def _config_summary(network: str) -> Dict[str, Any]:
    chain = load_chain_config(network or None)
    if chain is None:
        raise ValueError(f"no chain config for '{network or config.DEFAULT_CHAIN}'")
    return {
        "name": chain.name,
        "chain_id": chain.chain_id,
        "rpc_urls": chain.rpc_urls,
        "native": chain.native_symbol,
        "wrapped_native": chain.wrapped_native,
        "tokens": {k: v for k, v in sorted(chain.tokens.items())},
        "intermediates": chain.intermediates,
        "dexes": {
            dex_id: {"kind": d.kind, "status": d.status, "fee_tiers": list(d.fee_tiers), "multihop": d.multihop}
            for dex_id, d in sorted(chain.dexes.items())
        },
        "errors": validate_chain_config(chain),
    }


async def run_once(svc: QuoteService, args: argparse.Namespace) -> Dict[str, Any]:
    token_in, token_out = args.pair
    tin, tout = await svc.resolve_pair(token_in, token_out)
    amount_in = to_raw(args.amount, tin.decimals)
    label_in = tin.symbol or tin.address
    label_out = tout.symbol or tout.address
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "network": svc.chain.name,
        "token_in": label_in,
        "token_out": label_out,
        "amount_in": str(args.amount),
    }
    kw = {"dexes": args.dexes or None, "protocols": args.protocols or None, "path": args.hops or None}

    if args.compare:
        ranked = await svc.compare_quotes(token_in, token_out, amount_in, **kw)
        out["quotes"] = [
            {
                "route_id": r.quote.route_id,
                "dex": r.quote.dex_id,
                "amount_out": str(from_raw(r.quote.amount_out, tout.decimals)),
                "rate": str(r.rate),
                "price_impact": None if r.price_impact is None else str(r.price_impact),
                "hops": r.quote.hop_count,
            }
            for r in ranked
        ]
    if args.arbitrage:
        spreads = await svc.find_spreads(token_in, token_out, amount_in, args.min_spread, **kw)
        out["spreads"] = [
            {
                "high": s.high.quote.route_id,
                "high_rate": str(s.high.rate),
                "low": s.low.quote.route_id,
                "low_rate": str(s.low.rate),
                "spread": str(s.spread),
            }
            for s in spreads
        ]
    if not args.compare and not args.arbitrage:
        try:
            route = await svc.get_best_quote(token_in, token_out, amount_in, split=args.split or None, **kw)
        except AllRoutesExhausted as e:
            out["error"] = str(e)
            out["failures"] = e.failures
        else:
            out["route"] = route.to_dict()
            out["amount_out"] = str(from_raw(route.amount_out, tout.decimals))
            out["rate"] = str(route.rate)
    return out


def _print_text(res: Dict[str, Any]) -> None:
    head = f"{res['amount_in']} {res['token_in']} -> {res['token_out']} on {res['network']}"
    print(head)
    if "route" in res:
        route = res["route"]
        print(f"  best: {res['amount_out']} {res['token_out']} (rate {res['rate']})")
        for leg in route["legs"]:
            path = " > ".join(t if f is None else f"{t} [{f}]" for t, f in leg["path"])
            print(f"    {leg['dex']} {leg['fraction']}: {path}")
        if route.get("price_impact") is not None:
            print(f"  price impact: {route['price_impact']}")
    if "error" in res:
        print(f"  no route: {res['error']} {res.get('failures')}")
    for q in res.get("quotes", []):
        print(f"  {q['rate']:>28}  {q['amount_out']:>24}  {q['route_id']}")
    for s in res.get("spreads", []):
        print(f"  spread {s['spread']}: {s['high']} ({s['high_rate']}) vs {s['low']} ({s['low_rate']})")


def _emit(res: Dict[str, Any], args: argparse.Namespace) -> None:
    if args.json:
        print(json.dumps(res, default=str))
    else:
        _print_text(res)
    if args.output:
        append_jsonl(args.output, res)


async def _run(args: argparse.Namespace) -> int:
    svc = QuoteService.from_chain(
        args.network or None,
        rpc_url=args.rpc_url or None,
        include_testing=not args.active_only,
    )
    rounds = 0
    exit_code = 0
    async with svc:
        while True:
            try:
                res = await run_once(svc, args)
            except (QuoteError, ValueError) as e:
                logger.error("%s", e)
                res = {"ts": int(time.time()), "error": f"{type(e).__name__}: {e}"}
                exit_code = 1
            _emit(res, args)
            logger.debug("quote metrics: %s", json.dumps(METRICS.snapshot("quote_"), default=str))
            if "error" in res and not args.monitor:
                exit_code = 1
            rounds += 1
            if not args.monitor or (args.count and rounds >= args.count):
                break
            await asyncio.sleep(args.interval)
    logger.info("metrics: %s", json.dumps(METRICS.snapshot(), default=str))
    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    if args.config:
        try:
            summary = _config_summary(args.network)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 2
        print(json.dumps(summary, indent=2))
        return 1 if summary["errors"] else 0
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
