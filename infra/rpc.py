# infra/rpc.py

from __future__ import annotations

import asyncio
import os
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from eth_abi import decode
from web3 import Web3

from dexquote import config
from infra.metrics import METRICS


ERROR_STRING_SELECTOR = "0x08c379a0"
PANIC_SELECTOR = "0x4e487b71"

# JSON-RPC codes for "the request itself is malformed"
_INVALID_REQUEST_CODES = (-32600, -32602)


class RPCError(Exception):
    """Base class for chain client failures."""


class RPCTransportError(RPCError):
    """Timeout, HTTP error, connection failure or a non-revert node error."""


class InvalidCall(RPCError):
    """The node rejected the call shape (bad params / bad request)."""


class CallReverted(RPCError):
    """eth_call executed and reverted."""

    def __init__(self, message: str, data: Optional[str] = None):
        super().__init__(message)
        self.data = data
        self.reason = decode_revert_reason(data)


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def _split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    # Accept comma or newline separated lists.
    parts: List[str] = []
    for chunk in str(raw).replace("\n", ",").split(","):
        u = _normalize_url(chunk)
        if u:
            parts.append(u)
    return parts


def get_rpc_urls(chain_urls: Optional[Sequence[str]] = None) -> List[str]:
    """Return RPC URL candidates in priority order.

    Order:
      1) env RPC_URLS (comma/newline list)
      2) env RPC_URL
      3) chain config rpc_urls (if given)
      4) dexquote.config.RPC_URLS
    """

    urls: List[str] = []
    urls.extend(_split_urls(os.getenv("RPC_URLS")))
    single = os.getenv("RPC_URL")
    if single:
        urls.append(_normalize_url(single))
    urls.extend([_normalize_url(u) for u in (chain_urls or []) if str(u).strip()])
    if not urls:
        urls = [_normalize_url(u) for u in config.RPC_URLS if str(u).strip()]

    # De-dupe while preserving order
    out: List[str] = []
    seen = set()
    for u in urls:
        if u in seen:
            continue
        seen.add(u)
        out.append(u)
    return out


def _hex_to_bytes(hex_data: Optional[str]) -> bytes:
    if not hex_data:
        return b""
    hx = hex_data[2:] if hex_data.startswith("0x") else hex_data
    return bytes.fromhex(hx)


def decode_revert_reason(data: Optional[str]) -> Optional[str]:
    """Decode Error(string) / Panic(uint256) revert payloads, else None."""
    if not data or not isinstance(data, str):
        return None
    hx = data if data.startswith("0x") else "0x" + data
    hx = hx.lower()
    try:
        if hx.startswith(ERROR_STRING_SELECTOR):
            return str(decode(["string"], _hex_to_bytes(hx[10:]))[0])
        if hx.startswith(PANIC_SELECTOR):
            code = int(decode(["uint256"], _hex_to_bytes(hx[10:]))[0])
            return f"panic(0x{code:x})"
    except Exception:
        return None
    return None


def _extract_revert_hex(ed: Any) -> Optional[str]:
    # Node implementations nest revert data differently.
    if isinstance(ed, str):
        return ed
    if isinstance(ed, dict):
        if isinstance(ed.get("data"), str):
            return ed["data"]
        if isinstance(ed.get("result"), str):
            return ed["result"]
        for _k, v in ed.items():
            if isinstance(v, dict):
                if isinstance(v.get("return"), str):
                    return v["return"]
                if isinstance(v.get("data"), str):
                    return v["data"]
    return None


def classify_rpc_error(err: Any) -> RPCError:
    """Map a JSON-RPC error object onto a client exception."""
    if not isinstance(err, dict):
        return RPCTransportError(f"rpc_error:{err}")
    code = err.get("code")
    message = str(err.get("message") or "")
    revert_hex = _extract_revert_hex(err.get("data"))
    if code == 3 or "revert" in message.lower():
        return CallReverted(message or "execution reverted", revert_hex)
    if code in _INVALID_REQUEST_CODES:
        return InvalidCall(f"invalid_call({code}): {message}")
    return RPCTransportError(f"rpc_error({code}): {message}")


def _clamp_timeout(timeout_s: Optional[float], default_s: float) -> float:
    to_s = float(timeout_s) if timeout_s is not None else float(default_s)
    min_t = float(config.RPC_TIMEOUT_MIN_S)
    max_t = max(min_t, float(config.RPC_TIMEOUT_MAX_S))
    return max(min_t, min(max_t, to_s))


class AsyncRPC:
    """Async read-only JSON-RPC client with:
    - persistent aiohttp session
    - per-call timeouts (clamped to RPC_TIMEOUT_MIN_S..RPC_TIMEOUT_MAX_S)
    - optional retries for HTTP 429/5xx
    - typed errors: CallReverted / InvalidCall / RPCTransportError
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
        max_connections: int = 50,
    ):
        self.url = _normalize_url(url)
        if default_timeout_s is None:
            default_timeout_s = float(config.RPC_DEFAULT_TIMEOUT_S)
        if max_retries is None:
            max_retries = int(config.RPC_RETRY_COUNT)
        if backoff_base_s is None:
            backoff_base_s = float(config.RPC_BACKOFF_BASE_S)
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = int(max_retries)
        self.backoff_base_s = float(backoff_base_s)
        self.max_connections = int(max_connections)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

        self._inflight = 0
        self._ok = 0
        self._fail = 0
        self._lat_ewma_ms = 350.0

    async def __aenter__(self) -> "AsyncRPC":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        # Limit total sockets to avoid flooding a public RPC.
        self._connector = aiohttp.TCPConnector(limit=self.max_connections, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=self._connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._connector:
            await self._connector.close()
        self._connector = None

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> Any:
        async with session.post(self.url, json=payload) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise aiohttp.ClientResponseError(
                    request_info=resp.request_info,
                    history=resp.history,
                    status=resp.status,
                    message=text,
                    headers=resp.headers,
                )
            return await resp.json()

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        """Perform a JSON-RPC call.

        Reverts and malformed-call errors are raised immediately; only
        transport failures (timeouts, 429/5xx, connection errors) are retried.
        """

        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        to_s = _clamp_timeout(timeout_s, self.default_timeout_s)
        host = _url_host(self.url)
        last_err: Optional[str] = None

        self._inflight += 1
        try:
            for attempt in range(self.max_retries + 1):
                t0 = time.perf_counter()
                METRICS.inc("rpc_requests_total", 1)
                METRICS.inc_reason("rpc_requests_by_method", method, 1)
                try:
                    data = await asyncio.wait_for(self._post(session, payload), timeout=to_s)
                    dt_ms = (time.perf_counter() - t0) * 1000.0
                    METRICS.observe("rpc_latency_ms", dt_ms)
                    METRICS.observe(f"rpc_latency_ms:{host}", dt_ms)
                    self._lat_ewma_ms = 0.8 * self._lat_ewma_ms + 0.2 * dt_ms

                    if isinstance(data, dict) and "error" in data:
                        err = classify_rpc_error(data["error"])
                        if not isinstance(err, RPCTransportError):
                            # The node answered; the call itself failed.
                            self._ok += 1
                            raise err
                        last_err = str(err)
                    elif isinstance(data, dict) and "result" in data:
                        self._ok += 1
                        return data["result"]
                    else:
                        last_err = "malformed_response"
                except asyncio.TimeoutError:
                    last_err = f"timeout({to_s}s)"
                except aiohttp.ClientResponseError as e:
                    last_err = f"http_{e.status}"
                    if e.status not in (429, 500, 502, 503, 504):
                        break
                except (aiohttp.ClientError, ValueError) as e:
                    last_err = f"{type(e).__name__}: {e}"

                if attempt < self.max_retries:
                    sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                    if last_err and "http_429" in last_err:
                        sleep_s += float(config.RPC_RATE_LIMIT_BACKOFF_S)
                    await asyncio.sleep(sleep_s)

            self._fail += 1
            METRICS.inc_reason("rpc_fail_by_reason", (last_err or "unknown").split("(")[0], 1)
            raise RPCTransportError(f"{method} failed on {host}: {last_err}")
        finally:
            self._inflight = max(0, self._inflight - 1)

    def stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": self.url,
                "inflight": self._inflight,
                "ok": self._ok,
                "fail": self._fail,
                "lat_ms": round(float(self._lat_ewma_ms), 1),
            }
        ]

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
    ) -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block], timeout_s=timeout_s)

    async def get_code(self, address: str, block: str = "latest", *, timeout_s: Optional[float] = None) -> str:
        return await self.call("eth_getCode", [address, block], timeout_s=timeout_s)

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_blockNumber", [], timeout_s=timeout_s)
        return int(res, 16)


class Web3ChainClient:
    """Read-only client over an existing synchronous Web3 instance.

    Exposes the same eth_call / get_code surface as AsyncRPC; the blocking
    provider calls run in a worker thread.
    """

    def __init__(self, w3: Web3):
        self.w3 = w3

    @classmethod
    def from_url(cls, url: str, *, timeout_s: Optional[float] = None) -> "Web3ChainClient":
        to_s = float(timeout_s if timeout_s is not None else config.RPC_DEFAULT_TIMEOUT_S)
        provider = Web3.HTTPProvider(_normalize_url(url), request_kwargs={"timeout": to_s})
        return cls(Web3(provider))

    async def close(self) -> None:
        return None

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
    ) -> str:
        from web3.exceptions import ContractLogicError

        tx = {"to": Web3.to_checksum_address(to), "data": data}
        try:
            raw = await asyncio.to_thread(self.w3.eth.call, tx, block)
        except ContractLogicError as e:
            revert_hex = e.data if isinstance(getattr(e, "data", None), str) else None
            raise CallReverted(str(e) or "execution reverted", revert_hex) from e
        except ValueError as e:
            # web3 surfaces JSON-RPC error objects as ValueError(dict)
            err = e.args[0] if e.args else None
            raise classify_rpc_error(err) from e
        except Exception as e:
            raise RPCTransportError(f"{type(e).__name__}: {e}") from e
        return "0x" + bytes(raw).hex()

    async def get_code(self, address: str, block: str = "latest", *, timeout_s: Optional[float] = None) -> str:
        try:
            code = await asyncio.to_thread(self.w3.eth.get_code, Web3.to_checksum_address(address), block)
        except Exception as e:
            raise RPCTransportError(f"{type(e).__name__}: {e}") from e
        return "0x" + bytes(code).hex()

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        try:
            return int(await asyncio.to_thread(lambda: self.w3.eth.block_number))
        except Exception as e:
            raise RPCTransportError(f"{type(e).__name__}: {e}") from e
