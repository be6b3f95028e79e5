"""Environment-driven configuration for the paywall gateway.

Env vars:
  - PAYWALL_DOMAIN: domain this gateway protects (default: localhost)
  - PAYWALL_RPC_URL: ledger JSON-RPC endpoint (default: Sui testnet fullnode)
  - PAYWALL_CONTRACT_JSON / PAYWALL_CONTRACT_FILE: contract identifiers as a
    JSON object {"packageId", "treasuryId", "passCounterId", "registryId"}
  - PAYWALL_PACKAGE_ID, PAYWALL_TREASURY_ID, PAYWALL_PASS_COUNTER_ID,
    PAYWALL_REGISTRY_ID: individual overrides for the above
  - PAYWALL_RESOURCE_ENTRIES_JSON: {"<domain><path>": "<entry id>"} fast path
  - PAYWALL_BLOB_ENDPOINTS: comma-separated blob aggregator base URLs
  - PAYWALL_BLOB_TIMEOUT_SECONDS, PAYWALL_LEDGER_TIMEOUT_SECONDS
  - PAYWALL_LEDGER_MAX_ATTEMPTS, PAYWALL_LEDGER_BACKOFF_SECONDS
  - PAYWALL_FRESHNESS_WINDOW_MS (default 300000)
  - PAYWALL_DECRYPTION_URL, PAYWALL_SERVER_SIDE_DECRYPT
  - PAYWALL_CONSUME_AFTER_DELIVERY (default on)
  - PAYWALL_DEV_MODE: use in-memory ledger/blob/decryption backends
  - PAYWALL_MAX_REQUEST_BYTES (default 1048576)

Malformed values fail closed: a RuntimeError naming the variable is raised
at startup rather than silently falling back to a default.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .crypto import is_valid_address
from .models import normalize_resource_path

DEFAULT_RPC_URL = "https://fullnode.testnet.sui.io:443"
DEFAULT_BLOB_ENDPOINTS = (
    "https://aggregator.walrus-testnet.walrus.space",
    "https://wal-aggregator-testnet.staketab.org",
    "https://walrus-testnet-aggregator.nodes.guru",
)
DEFAULT_FRESHNESS_WINDOW_MS = 5 * 60 * 1000
DEFAULT_CLOCK_ID = "0x6"

ENV_CONTRACT_JSON = "PAYWALL_CONTRACT_JSON"
ENV_CONTRACT_FILE = "PAYWALL_CONTRACT_FILE"


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or "").strip() or default


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise RuntimeError(f"{name} must be a boolean (1/0/true/false), got {v!r}")


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    v = (os.getenv(name, "") or "").strip()
    if not v:
        return default
    try:
        n = int(v)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {v!r}")
    if n < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {n}")
    return n


def _env_float(name: str, default: float) -> float:
    v = (os.getenv(name, "") or "").strip()
    if not v:
        return default
    try:
        f = float(v)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (seconds), got {v!r}")
    if f <= 0:
        raise RuntimeError(f"{name} must be positive, got {f}")
    return f


def _load_json_object(json_env: str, file_env: Optional[str] = None) -> Optional[Dict[str, Any]]:
    raw = (os.getenv(json_env, "") or "").strip()
    path = (os.getenv(file_env, "") or "").strip() if file_env else ""
    if not raw and not path:
        return None
    source = json_env if raw else file_env
    try:
        if raw:
            data = json.loads(raw)
        else:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
    except (OSError, ValueError) as e:
        raise RuntimeError(f"Failed to load {source}: {e}") from e
    if not isinstance(data, dict):
        raise RuntimeError(f"{source} must contain a JSON object")
    return data


def resource_key(domain: str, resource_path: str) -> str:
    """Key used by the fast-path entry map: ``<domain><path>``."""
    return f"{domain}{normalize_resource_path(resource_path)}"


@dataclass(frozen=True)
class ContractIdentifiers:
    """Ledger object ids of the deployed paywall contract."""

    package_id: str
    treasury_id: str
    pass_counter_id: str
    registry_id: str
    clock_id: str = DEFAULT_CLOCK_ID

    def validate(self) -> None:
        for name in ("package_id", "treasury_id", "pass_counter_id", "registry_id"):
            value = getattr(self, name)
            if not is_valid_address(value):
                raise RuntimeError(f"contract identifier {name} is not a valid object id: {value!r}")

    def to_challenge_dict(self) -> Dict[str, str]:
        return {
            "packageId": self.package_id,
            "treasuryId": self.treasury_id,
            "passCounterId": self.pass_counter_id,
            "registryId": self.registry_id,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContractIdentifiers":
        def pick(*keys: str) -> str:
            for k in keys:
                if data.get(k):
                    return str(data[k]).strip()
            return ""

        return cls(
            package_id=pick("packageId", "package_id"),
            treasury_id=pick("treasuryId", "treasury_id"),
            pass_counter_id=pick("passCounterId", "pass_counter_id"),
            registry_id=pick("registryId", "registry_id"),
            clock_id=pick("clockId", "clock_id") or DEFAULT_CLOCK_ID,
        )

    @classmethod
    def from_env(cls) -> "ContractIdentifiers":
        data = _load_json_object(ENV_CONTRACT_JSON, ENV_CONTRACT_FILE) or {}
        base = cls.from_mapping(data)
        return cls(
            package_id=_env_str("PAYWALL_PACKAGE_ID", base.package_id),
            treasury_id=_env_str("PAYWALL_TREASURY_ID", base.treasury_id),
            pass_counter_id=_env_str("PAYWALL_PASS_COUNTER_ID", base.pass_counter_id),
            registry_id=_env_str("PAYWALL_REGISTRY_ID", base.registry_id),
            clock_id=base.clock_id,
        )


@dataclass
class GatewayConfig:
    domain: str
    contract: ContractIdentifiers
    rpc_url: str = DEFAULT_RPC_URL
    resource_entries: Dict[str, str] = field(default_factory=dict)
    blob_endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_BLOB_ENDPOINTS))
    blob_timeout_seconds: float = 10.0
    ledger_timeout_seconds: float = 10.0
    ledger_max_attempts: int = 3
    ledger_backoff_seconds: float = 0.25
    freshness_window_ms: int = DEFAULT_FRESHNESS_WINDOW_MS
    decryption_url: str = ""
    server_side_decrypt: bool = False
    consume_after_delivery: bool = True
    dev_mode: bool = False
    max_request_bytes: int = 1048576

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        dev_mode = _env_bool("PAYWALL_DEV_MODE", False)
        contract = ContractIdentifiers.from_env()
        if not dev_mode:
            contract.validate()

        entries_raw = _load_json_object("PAYWALL_RESOURCE_ENTRIES_JSON") or {}
        entries: Dict[str, str] = {}
        for k, v in entries_raw.items():
            domain, sep, path = str(k).partition("/")
            key = resource_key(domain, sep + path) if sep else str(k)
            entries[key] = str(v)

        endpoints_raw = _env_str("PAYWALL_BLOB_ENDPOINTS")
        endpoints = [e.strip().rstrip("/") for e in endpoints_raw.split(",") if e.strip()] if endpoints_raw \
            else list(DEFAULT_BLOB_ENDPOINTS)

        return cls(
            domain=_env_str("PAYWALL_DOMAIN", "localhost"),
            contract=contract,
            rpc_url=_env_str("PAYWALL_RPC_URL", DEFAULT_RPC_URL),
            resource_entries=entries,
            blob_endpoints=endpoints,
            blob_timeout_seconds=_env_float("PAYWALL_BLOB_TIMEOUT_SECONDS", 10.0),
            ledger_timeout_seconds=_env_float("PAYWALL_LEDGER_TIMEOUT_SECONDS", 10.0),
            ledger_max_attempts=_env_int("PAYWALL_LEDGER_MAX_ATTEMPTS", 3, minimum=1),
            ledger_backoff_seconds=_env_float("PAYWALL_LEDGER_BACKOFF_SECONDS", 0.25),
            freshness_window_ms=_env_int("PAYWALL_FRESHNESS_WINDOW_MS", DEFAULT_FRESHNESS_WINDOW_MS, minimum=1),
            decryption_url=_env_str("PAYWALL_DECRYPTION_URL"),
            server_side_decrypt=_env_bool("PAYWALL_SERVER_SIDE_DECRYPT", False),
            consume_after_delivery=_env_bool("PAYWALL_CONSUME_AFTER_DELIVERY", True),
            dev_mode=dev_mode,
            max_request_bytes=_env_int("PAYWALL_MAX_REQUEST_BYTES", 1048576, minimum=1),
        )
