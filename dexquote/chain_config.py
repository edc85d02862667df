from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dexquote import config

KIND_V2 = "v2"  # constant-product
KIND_V3 = "v3"  # concentrated-liquidity

MULTIHOP_MODES = ("auto", "path", "chained")
DEX_STATUSES = ("active", "testing", "deprecated")

CHAINS_DIR = Path(__file__).resolve().parent / "configs" / "chains"


@dataclass(frozen=True)
class DexConfig:
    dex_id: str
    kind: str
    router: Optional[str] = None
    quoter: Optional[str] = None
    factory: Optional[str] = None
    fee_tiers: Tuple[int, ...] = ()
    fee_bps: int = 30
    multihop: str = "auto"
    gas_estimate: Optional[int] = None
    status: str = "active"


@dataclass(frozen=True)
class ChainConfig:
    chain_id: Optional[int]
    name: str
    rpc_urls: List[str]
    tokens: Dict[str, Optional[str]]
    token_decimals: Dict[str, int]
    dexes: Dict[str, DexConfig]
    native_symbol: str = "ETH"
    wrapped_native: Optional[str] = None
    intermediates: List[str] = field(default_factory=list)

    def token_address(self, token: str) -> str:
        """Return the configured address for a symbol, else the input unchanged."""
        t = str(token or "").strip()
        addr = self.tokens.get(t.upper())
        return addr if addr else t

    def symbol_for(self, address: str) -> Optional[str]:
        a = str(address or "").lower()
        for sym, addr in self.tokens.items():
            if addr and addr.lower() == a:
                return sym
        return None

    def trusted_decimals(self, address: str) -> Optional[int]:
        sym = self.symbol_for(address)
        if sym is None:
            return None
        return self.token_decimals.get(sym)

    def wrapped_native_address(self) -> Optional[str]:
        if not self.wrapped_native:
            return None
        return self.token_address(self.wrapped_native)

    def intermediate_addresses(self) -> List[str]:
        out: List[str] = []
        for sym in self.intermediates:
            addr = self.token_address(sym)
            if addr and addr.startswith("0x"):
                out.append(addr)
        return out

    def active_dexes(self, *, include_testing: bool = True) -> Dict[str, DexConfig]:
        allowed = {"active", "testing"} if include_testing else {"active"}
        return {k: v for k, v in self.dexes.items() if v.status in allowed}


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _normalize_tokens(raw: Any) -> Dict[str, Optional[str]]:
    out: Dict[str, Optional[str]] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k:
            continue
        key = str(k).upper()
        if v is None:
            out[key] = None
            continue
        val = str(v).strip()
        out[key] = val if val else None
    return out


def _normalize_token_decimals(raw: Any) -> Dict[str, int]:
    out: Dict[str, int] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k:
            continue
        try:
            out[str(k).upper()] = int(v)
        except (TypeError, ValueError):
            continue
    return out


def _opt_addr(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _normalize_dexes(raw: Any) -> Dict[str, DexConfig]:
    out: Dict[str, DexConfig] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k or not isinstance(v, dict):
            continue
        dex_id = str(k).strip().lower()
        kind = str(v.get("kind") or KIND_V2).strip().lower()
        tiers = v.get("fee_tiers")
        if tiers is None and kind == KIND_V3:
            tiers = config.FEE_TIERS
        gas = v.get("gas_estimate")
        out[dex_id] = DexConfig(
            dex_id=dex_id,
            kind=kind,
            router=_opt_addr(v.get("router")),
            quoter=_opt_addr(v.get("quoter")),
            factory=_opt_addr(v.get("factory")),
            fee_tiers=tuple(int(t) for t in (tiers or [])),
            fee_bps=int(v.get("fee_bps", 30)),
            multihop=str(v.get("multihop") or "auto").strip().lower(),
            gas_estimate=int(gas) if gas is not None else None,
            status=str(v.get("status") or "active").strip().lower(),
        )
    return out


def parse_chain_config(data: Dict[str, Any], *, name: str = "") -> ChainConfig:
    chain_id_val = None
    try:
        if data.get("chain_id") is not None:
            chain_id_val = int(data.get("chain_id"))
    except (TypeError, ValueError):
        chain_id_val = None

    wrapped = data.get("wrapped_native")
    return ChainConfig(
        chain_id=chain_id_val,
        name=str(data.get("name") or name or "unknown").strip().lower(),
        rpc_urls=[str(x).strip() for x in (data.get("rpc_urls") or []) if str(x).strip()],
        tokens=_normalize_tokens(data.get("tokens")),
        token_decimals=_normalize_token_decimals(data.get("token_decimals")),
        dexes=_normalize_dexes(data.get("dexes")),
        native_symbol=str(data.get("native_symbol") or "ETH").strip().upper(),
        wrapped_native=str(wrapped).strip().upper() if wrapped else None,
        intermediates=[str(x).strip().upper() for x in (data.get("intermediates") or []) if str(x).strip()],
    )


def _chain_id_index(base_dir: Path) -> Dict[int, Path]:
    index: Dict[int, Path] = {}
    for path in sorted(base_dir.glob("*.json")):
        data = _read_json(path)
        if isinstance(data, dict) and data.get("chain_id") is not None:
            try:
                index[int(data["chain_id"])] = path
            except (TypeError, ValueError):
                continue
    return index


def load_chain_config(
    chain_name: Optional[str] = None,
    chain_id: Optional[int] = None,
    *,
    base_dir: Optional[Path] = None,
) -> Optional[ChainConfig]:
    base = Path(base_dir) if base_dir is not None else CHAINS_DIR
    name = str(chain_name or os.getenv("CHAIN_NAME") or "").strip().lower()
    cid = chain_id
    chain_id_env = os.getenv("CHAIN_ID")
    if cid is None and chain_id_env:
        try:
            cid = int(chain_id_env)
        except ValueError:
            cid = None

    candidates: List[Path] = []
    if name:
        candidates.append(base / f"{name}.json")
    if cid is not None:
        by_id = _chain_id_index(base).get(int(cid))
        if by_id is not None:
            candidates.append(by_id)
    if not candidates:
        candidates.append(base / f"{config.DEFAULT_CHAIN}.json")

    for path in candidates:
        if not path.exists():
            continue
        data = _read_json(path)
        if isinstance(data, dict):
            return parse_chain_config(data, name=path.stem)
    return None


def validate_chain_config(cfg: ChainConfig, *, strategy: Optional[str] = None) -> List[str]:
    errors: List[str] = []
    strategy = strategy or config.CATALOG_STRATEGY
    if not cfg.dexes:
        errors.append(f"chain '{cfg.name}' has no dexes")
    for sym, dec in cfg.token_decimals.items():
        if not 0 <= int(dec) <= 255:
            errors.append(f"token '{sym}' decimals out of range: {dec}")
        if sym not in cfg.tokens:
            errors.append(f"token '{sym}' has decimals but no address")
    if cfg.wrapped_native and not cfg.tokens.get(cfg.wrapped_native):
        errors.append(f"wrapped native '{cfg.wrapped_native}' has no address")
    for sym in cfg.intermediates:
        if not cfg.tokens.get(sym):
            errors.append(f"intermediate '{sym}' has no address")

    for dex_id, dex in cfg.dexes.items():
        if dex.kind not in (KIND_V2, KIND_V3):
            errors.append(f"dex '{dex_id}' has unknown kind '{dex.kind}'")
            continue
        if dex.status not in DEX_STATUSES:
            errors.append(f"dex '{dex_id}' has unknown status '{dex.status}'")
        if dex.kind == KIND_V2 and not dex.router:
            errors.append(f"v2 dex '{dex_id}' has no router")
        if dex.kind == KIND_V3:
            if not dex.quoter:
                errors.append(f"v3 dex '{dex_id}' has no quoter")
            if not dex.fee_tiers:
                errors.append(f"v3 dex '{dex_id}' has no fee tiers")
            for tier in dex.fee_tiers:
                if not 0 < int(tier) < 2**24:
                    errors.append(f"v3 dex '{dex_id}' fee tier out of uint24 range: {tier}")
            if dex.multihop not in MULTIHOP_MODES:
                errors.append(f"v3 dex '{dex_id}' has unknown multihop mode '{dex.multihop}'")
        if strategy == "discovered" and not dex.factory:
            errors.append(f"dex '{dex_id}' has no factory (required for discovered catalog)")
    return errors
