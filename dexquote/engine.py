from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dexquote import config
from dexquote.chain_config import KIND_V3
from dexquote.dex.base import DEXAdapter
from dexquote.dex.types import Path, PoolCandidate, QuoteRequest, QuoteResult, make_path, path_fees, path_tokens
from dexquote.errors import TRANSPORT_ERROR
from infra.metrics import METRICS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attempt:
    """One quote to request: a direct pool candidate or a synthetic path."""

    adapter: DEXAdapter
    path: Path
    candidate: Optional[PoolCandidate] = None

    @property
    def label(self) -> str:
        if self.candidate is not None:
            return self.candidate.label()
        return f"{self.adapter.dex_id}:" + ">".join(t for t, _ in self.path)


def _clean(items: Optional[Iterable[str]]) -> set:
    return {str(x).strip().lower() for x in (items or []) if str(x).strip()}


class QuoteEngine:
    """Fans quote attempts out over adapters with bounded concurrency.

    Each attempt gets its own timeout and at most `retries` linear-backoff
    retries on TransportError. Failures come back as failed QuoteResults;
    nothing but cancellation escapes gather_quotes.
    """

    def __init__(
        self,
        adapters: Mapping[str, DEXAdapter],
        catalog: Any,
        *,
        intermediates: Sequence[str] = (),
        max_inflight: Optional[int] = None,
        attempt_timeout_s: Optional[float] = None,
        retries: Optional[int] = None,
        backoff_s: Optional[float] = None,
        multihop_enabled: Optional[bool] = None,
        max_hops: Optional[int] = None,
        max_paths_per_dex: Optional[int] = None,
    ):
        self.adapters = dict(adapters)
        self.catalog = catalog
        self.intermediates = [str(x) for x in intermediates]
        self.max_inflight = int(max_inflight if max_inflight is not None else config.QUOTE_MAX_INFLIGHT)
        self.attempt_timeout_s = float(
            attempt_timeout_s if attempt_timeout_s is not None else config.QUOTE_ATTEMPT_TIMEOUT_S
        )
        self.retries = max(0, int(retries if retries is not None else config.QUOTE_TRANSPORT_RETRIES))
        self.backoff_s = float(backoff_s if backoff_s is not None else config.QUOTE_RETRY_BACKOFF_S)
        self.multihop_enabled = bool(config.MULTIHOP_ENABLED if multihop_enabled is None else multihop_enabled)
        self.max_hops = int(max_hops if max_hops is not None else config.MULTIHOP_MAX_HOPS)
        self.max_paths_per_dex = int(
            max_paths_per_dex if max_paths_per_dex is not None else config.MULTIHOP_MAX_PATHS_PER_DEX
        )
        self._sem = asyncio.Semaphore(max(1, self.max_inflight))

    def select_adapters(
        self,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
    ) -> Dict[str, DEXAdapter]:
        wanted = _clean(dexes)
        kinds = _clean(protocols)
        out: Dict[str, DEXAdapter] = {}
        for dex_id, adapter in sorted(self.adapters.items()):
            if wanted and dex_id not in wanted:
                continue
            if kinds and adapter.kind not in kinds:
                continue
            out[dex_id] = adapter
        return out

    def _token_sequences(self, token_in: str, token_out: str) -> List[Tuple[str, ...]]:
        if not self.multihop_enabled or self.max_hops < 2:
            return []
        ends = {token_in.lower(), token_out.lower()}
        hubs: List[str] = []
        for h in self.intermediates:
            if h.lower() not in ends and h.lower() not in {x.lower() for x in hubs}:
                hubs.append(h)
        seqs: List[Tuple[str, ...]] = [(token_in, h, token_out) for h in hubs]
        if self.max_hops >= 3:
            seqs.extend((token_in, a, b, token_out) for a, b in itertools.permutations(hubs, 2))
        return seqs

    async def plan(
        self,
        token_in: str,
        token_out: str,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
    ) -> List[Attempt]:
        """Direct candidates from the catalog plus synthetic multi-hop paths."""
        adapters = self.select_adapters(dexes=dexes, protocols=protocols)
        if not adapters:
            return []
        dex_ids = list(adapters)
        seqs = self._token_sequences(token_in, token_out)

        pairs: List[Tuple[str, str]] = [(token_in, token_out)]
        seen = {(token_in.lower(), token_out.lower())}
        for seq in seqs:
            for a, b in zip(seq[:-1], seq[1:]):
                if (a.lower(), b.lower()) not in seen:
                    seen.add((a.lower(), b.lower()))
                    pairs.append((a, b))
        found = await asyncio.gather(*(self.catalog.candidates(a, b, dexes=dex_ids) for a, b in pairs))
        by_pair: Dict[Tuple[str, str], List[PoolCandidate]] = {
            (a.lower(), b.lower()): cands for (a, b), cands in zip(pairs, found)
        }

        attempts: List[Attempt] = []
        for cand in by_pair[(token_in.lower(), token_out.lower())]:
            adapter = adapters.get(cand.dex_id)
            if adapter is not None:
                attempts.append(Attempt(adapter, adapter.single_hop_path(cand), cand))

        for dex_id, adapter in adapters.items():
            budget = self.max_paths_per_dex
            for seq in seqs:
                if budget <= 0:
                    break
                tiers: List[List[Optional[int]]] = []
                for a, b in zip(seq[:-1], seq[1:]):
                    hop = [c.fee_tier for c in by_pair.get((a.lower(), b.lower()), []) if c.dex_id == dex_id]
                    if not hop:
                        break
                    tiers.append(hop)
                else:
                    for fees in itertools.product(*tiers):
                        if budget <= 0:
                            break
                        attempts.append(Attempt(adapter, make_path(seq, fees)))
                        budget -= 1
        return attempts

    def plan_path(
        self,
        path: Path,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
    ) -> List[Attempt]:
        """Attempts for one caller-pinned path, one per dex and open fee choice."""
        tokens = path_tokens(path)
        fees = path_fees(path)
        attempts: List[Attempt] = []
        for adapter in self.select_adapters(dexes=dexes, protocols=protocols).values():
            if adapter.kind != KIND_V3:
                attempts.append(Attempt(adapter, make_path(tokens)))
                continue
            tiers = getattr(adapter, "fee_tiers", ())
            choices = [[f] if f is not None else list(tiers) for f in fees]
            for n, combo in enumerate(itertools.product(*choices)):
                if n >= self.max_paths_per_dex:
                    break
                attempts.append(Attempt(adapter, make_path(tokens, combo)))
        return attempts

    async def _call(self, attempt: Attempt, amount_in: int) -> QuoteResult:
        if attempt.candidate is not None:
            return await attempt.adapter.quote_single_hop(attempt.candidate, amount_in, timeout_s=self.attempt_timeout_s)
        return await attempt.adapter.quote_multi_hop(attempt.path, amount_in, timeout_s=self.attempt_timeout_s)

    async def run_attempt(self, attempt: Attempt, amount_in: int) -> QuoteResult:
        res = None
        for n in range(self.retries + 1):
            if n:
                METRICS.inc("quote_retries_total", 1)
                await asyncio.sleep(self.backoff_s * n)
            METRICS.inc("quote_attempts_total", 1)
            with METRICS.timed("quote_attempt_latency_ms"):
                async with self._sem:
                    try:
                        res = await asyncio.wait_for(self._call(attempt, amount_in), timeout=self.attempt_timeout_s)
                    except asyncio.TimeoutError:
                        res = QuoteResult.failed(
                            attempt.adapter.dex_id,
                            attempt.adapter.kind,
                            attempt.path,
                            amount_in,
                            TRANSPORT_ERROR,
                            f"timed out after {self.attempt_timeout_s:.2f}s",
                        )
            if res.ok or res.failure != TRANSPORT_ERROR:
                break
        if not res.ok:
            METRICS.inc_reason("quote_failures_by_kind", str(res.failure), 1)
            logger.debug("%s failed: %s (%s)", attempt.label, res.failure, res.error)
        return res

    async def _run_all(self, attempts: Sequence[Attempt], amount_in: int) -> List[QuoteResult]:
        if not attempts:
            return []
        results = await asyncio.gather(
            *(self.run_attempt(a, amount_in) for a in attempts),
            return_exceptions=True,
        )
        out: List[QuoteResult] = []
        for attempt, r in zip(attempts, results):
            if isinstance(r, QuoteResult):
                out.append(r)
                continue
            if isinstance(r, asyncio.CancelledError):
                raise r
            logger.warning("%s raised unexpectedly: %r", attempt.label, r)
            out.append(
                QuoteResult.failed(
                    attempt.adapter.dex_id, attempt.adapter.kind, attempt.path, amount_in, TRANSPORT_ERROR, repr(r)
                )
            )
        return out

    async def gather_quotes(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        *,
        dexes: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        reference_amount: Optional[int] = None,
        path: Optional[Path] = None,
    ) -> List[QuoteResult]:
        """Quote every candidate and synthetic path; one result per attempt.

        With path, only that hop sequence is quoted, through each selected dex.
        With reference_amount, each successful route is also quoted at that
        size and the pair is attached as reference_amount_in/out.
        """
        request = QuoteRequest(token_in, token_out, int(amount_in), path)
        amount_in = int(request.amount_in)
        if request.path is not None:
            attempts = self.plan_path(request.path, dexes=dexes, protocols=protocols)
        else:
            attempts = await self.plan(token_in, token_out, dexes=dexes, protocols=protocols)
        results = await self._run_all(attempts, amount_in)
        ok = sum(1 for r in results if r.ok)
        logger.debug("gathered %d quotes for %s->%s (%d ok)", len(results), token_in, token_out, ok)

        if reference_amount is None or not ok:
            return results
        ref = int(reference_amount)
        if ref >= amount_in:
            # The request is no larger than the baseline; it is its own reference.
            return [
                dataclasses.replace(r, reference_amount_in=r.amount_in, reference_amount_out=r.amount_out)
                if r.ok
                else r
                for r in results
            ]

        ok_idx = [i for i, r in enumerate(results) if r.ok]
        ref_attempts = [Attempt(attempts[i].adapter, results[i].path) for i in ok_idx]
        ref_results = await self._run_all(ref_attempts, ref)
        for i, rr in zip(ok_idx, ref_results):
            if rr.ok:
                results[i] = dataclasses.replace(
                    results[i], reference_amount_in=rr.amount_in, reference_amount_out=rr.amount_out
                )
        return results

    async def requote(self, result: QuoteResult, amount_in: int) -> QuoteResult:
        """Quote the same route again at a different size."""
        adapter = self.adapters.get(result.dex_id)
        if adapter is None:
            raise KeyError(f"no adapter for dex '{result.dex_id}'")
        return await self.run_attempt(Attempt(adapter, result.path), int(amount_in))
