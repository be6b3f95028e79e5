"""Capability ledger clients.

The ledger is the single source of truth for resource descriptors and
capability tokens. Every read here goes to the ledger; nothing is mirrored
locally.

Two implementations share one interface:

* SuiLedgerClient: Sui JSON-RPC over urllib. Reads are retried with
  exponential backoff on network errors and HTTP 408/429/5xx. Writes build
  the transaction server-side (unsafe_* methods, retried like reads), sign it
  locally and submit it exactly once; a submission that times out is treated
  as failed.
* InMemoryLedger: same contract semantics behind one lock, for dev mode and
  tests.

All transport failures are mapped to PaywallError before leaving this module.
"""

from __future__ import annotations

import abc
import base64
import itertools
import json
import logging
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Union

import base58

from .challenge import price_to_smallest_unit, smallest_unit_to_price
from .config import DEFAULT_CLOCK_ID as CLOCK_ID, ContractIdentifiers, resource_key
from .crypto import (
    addresses_equal,
    blake2b256,
    canonical_request_message,
    is_valid_address,
    normalize_address,
    verify_personal_message,
)
from .errors import (
    PW_E_EXHAUSTED,
    PW_E_LEDGER_UNAVAILABLE,
    PW_E_PAYMENT_REJECTED,
    PW_E_RESOURCE_NOT_FOUND,
    PW_E_TOKEN_NOT_FOUND,
    PW_E_UNAUTHORIZED,
    PaywallError,
    paywall_error,
)
from .models import (
    CapabilityToken,
    PaymentObject,
    RequestArtifact,
    ResourceDescriptor,
    normalize_resource_path,
)
from .signing import Signer

logger = logging.getLogger("paywall_gateway.ledger")

SUI_COIN_TYPE = "0x2::sui::SUI"
STRING_TYPE = "0x1::string::String"
DEFAULT_GAS_BUDGET = 10_000_000
PASS_EVENT_PAGE = 100


@dataclass(frozen=True)
class PaymentProof:
    """The payer's key and the value-bearing object it pays with."""

    payer: Signer
    payment_object_id: str


# Either the owner's key, or a request artifact carrying the owner's signature.
OwnerProof = Union[Signer, RequestArtifact]


@dataclass(frozen=True)
class ObjectRef:
    """Reference to a ledger object as a transaction input.

    Shared objects carry `initial_shared_version`; owned and immutable
    objects are referenced by (version, digest).
    """

    object_id: str
    version: int
    digest: bytes = b""
    initial_shared_version: Optional[int] = None

    @property
    def shared(self) -> bool:
        return self.initial_shared_version is not None


class LedgerClient(abc.ABC):
    """Capability ledger interface."""

    # True when consume_token accepts a RequestArtifact signed by the owner
    # in place of the owner's key.
    accepts_delegated_consume = False

    @abc.abstractmethod
    def lookup_resource(self, domain: str, resource_path: str) -> ResourceDescriptor:
        """Resolve an active resource. Raises PaywallError(ResourceNotFound)."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_resource(self, entry_id: str) -> Optional[ResourceDescriptor]:
        raise NotImplementedError

    @abc.abstractmethod
    def fetch_token(self, token_id: str) -> Optional[CapabilityToken]:
        """Point read of current token state; None when absent or not a token."""
        raise NotImplementedError

    @abc.abstractmethod
    def find_tokens(self, owner: str, domain: str, resource_path: str) -> List[CapabilityToken]:
        """Current state of passes `owner` bought for (domain, resource_path), most recent first."""
        raise NotImplementedError

    @abc.abstractmethod
    def purchase_token(
        self,
        resource: ResourceDescriptor,
        payment_proof: PaymentProof,
        requested_uses: int,
        requested_expiry_ms: int,
        nonce: str,
    ) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def consume_token(self, token_id: str, owner_proof: OwnerProof) -> int:
        """Decrement remaining uses and return the new value."""
        raise NotImplementedError

    @abc.abstractmethod
    def list_payment_objects(self, owner: str) -> List[PaymentObject]:
        raise NotImplementedError

    @abc.abstractmethod
    def split_payment_object(self, owner_signer: Signer, object_id: str, amount: int) -> str:
        """Split `amount` off `object_id` into a new object owned by the signer."""
        raise NotImplementedError

    @abc.abstractmethod
    def object_ref(self, object_id: str) -> ObjectRef:
        raise NotImplementedError


def _check_purchase_args(requested_uses: int, requested_expiry_ms: int, nonce: str) -> None:
    if int(requested_uses) <= 0:
        raise paywall_error(PW_E_PAYMENT_REJECTED, "requested uses must be positive")
    if int(requested_expiry_ms) < 0:
        raise paywall_error(PW_E_PAYMENT_REJECTED, "requested expiry must be >= 0")
    if not nonce:
        raise paywall_error(PW_E_PAYMENT_REJECTED, "purchase requires a challenge nonce")


# ---------------------------
# Sui JSON-RPC
# ---------------------------

def _move_string(value: Any) -> str:
    """Decode a Move `String` / `vector<u8>` as rendered by JSON-RPC."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return bytes(int(b) for b in value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        if "bytes" in value:
            raw = value["bytes"]
            if isinstance(raw, str):
                try:
                    return base64.b64decode(raw, validate=True).decode("utf-8")
                except ValueError:
                    return raw
            return _move_string(raw)
        fields = value.get("fields")
        if isinstance(fields, dict):
            return _move_string(fields.get("bytes"))
    return str(value)


def _move_int(value: Any) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _object_data(result: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(result, dict) or result.get("error"):
        return None
    data = result.get("data")
    return data if isinstance(data, dict) else None


def _object_fields(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    content = data.get("content")
    if not isinstance(content, dict):
        return None
    fields = content.get("fields")
    return fields if isinstance(fields, dict) else None


class SuiLedgerClient(LedgerClient):
    """Sui JSON-RPC ledger client."""

    def __init__(
        self,
        rpc_url: str,
        contract: ContractIdentifiers,
        *,
        resource_entries: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.25,
        gas_budget: int = DEFAULT_GAS_BUDGET,
    ):
        self.rpc_url = rpc_url
        self.contract = contract
        self.resource_entries = dict(resource_entries or {})
        self.timeout_seconds = float(timeout_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = float(backoff_seconds)
        self.gas_budget = int(gas_budget)
        self._ids = itertools.count(1)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status in (408, 429) or (500 <= status <= 599)

    def _rpc(self, method: str, params: List[Any], *, retry: bool = True) -> Any:
        payload = json.dumps(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        ).encode("utf-8")
        attempts = self.max_attempts if retry else 1
        last_err = ""

        for attempt in range(1, attempts + 1):
            req = urllib.request.Request(
                self.rpc_url,
                data=payload,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    body = json.loads(resp.read().decode("utf-8"))
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                last_err = f"HTTP {status}"
                if self._is_retryable_status(status) and attempt < attempts:
                    time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                    continue
                raise paywall_error(
                    PW_E_LEDGER_UNAVAILABLE,
                    "ledger request failed",
                    retryable=self._is_retryable_status(status),
                    method=method,
                    error=last_err,
                ) from e
            except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as e:
                last_err = f"{type(e).__name__}: {e}"
                if attempt < attempts:
                    time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                    continue
                raise paywall_error(
                    PW_E_LEDGER_UNAVAILABLE,
                    "ledger unreachable",
                    method=method,
                    attempts=attempt,
                    error=last_err,
                ) from e

            if not isinstance(body, dict):
                raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "malformed ledger response", method=method)
            if body.get("error"):
                err = body["error"]
                raise paywall_error(
                    PW_E_LEDGER_UNAVAILABLE,
                    "ledger rejected request",
                    retryable=False,
                    method=method,
                    error=err.get("message") if isinstance(err, dict) else str(err),
                )
            return body.get("result")

        # range() above always returns or raises
        raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "ledger unreachable", method=method, error=last_err)

    # -- reads ---------------------------------------------------------------

    def _get_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        result = self._rpc(
            "sui_getObject",
            [object_id, {"showType": True, "showOwner": True, "showContent": True}],
        )
        return _object_data(result)

    def _dynamic_field_value(self, parent_id: str, key: str) -> Any:
        result = self._rpc("suix_getDynamicFieldObject", [parent_id, {"type": STRING_TYPE, "value": key}])
        data = _object_data(result)
        if data is None:
            return None
        fields = _object_fields(data)
        return fields.get("value") if fields else None

    @staticmethod
    def _table_id(table: Any) -> Optional[str]:
        # Table<K, V> renders as {"type": ..., "fields": {"id": {"id": "0x.."}, "size": ".."}}
        if not isinstance(table, dict):
            return None
        fields = table.get("fields", table)
        uid = fields.get("id") if isinstance(fields, dict) else None
        if isinstance(uid, dict):
            uid = uid.get("id")
        return str(uid) if uid else None

    def _descriptor_from_object(self, entry_id: str, data: Dict[str, Any]) -> Optional[ResourceDescriptor]:
        fields = _object_fields(data)
        if not fields:
            return None
        price_mist = _move_int(fields.get("price"))
        return ResourceDescriptor(
            domain=_move_string(fields.get("domain")),
            resource_path=normalize_resource_path(_move_string(fields.get("resource"))),
            content_locator=_move_string(fields.get("walrus_cid")),
            decryption_policy_id=_move_string(fields.get("seal_policy")),
            price=smallest_unit_to_price(price_mist) if price_mist > 0 else "0",
            receiver_address=str(fields.get("receiver") or ""),
            max_uses_per_token=_move_int(fields.get("max_uses")),
            validity_duration_ms=_move_int(fields.get("validity_duration")),
            active=fields.get("active") is not False,
            entry_id=entry_id,
            owner=str(fields.get("owner") or ""),
            created_at_ms=_move_int(fields.get("created_at")),
        )

    def get_resource(self, entry_id: str) -> Optional[ResourceDescriptor]:
        if not is_valid_address(entry_id):
            return None
        data = self._get_object(entry_id)
        if data is None:
            return None
        return self._descriptor_from_object(entry_id, data)

    def _resolve_entry_id(self, domain: str, resource_path: str) -> Optional[str]:
        registry = self._get_object(self.contract.registry_id)
        fields = _object_fields(registry) if registry else None
        if not fields:
            logger.warning("Registry object %s not found or has no content", self.contract.registry_id)
            return None
        outer_id = self._table_id(fields.get("resources"))
        if not outer_id:
            return None
        inner_id = self._table_id(self._dynamic_field_value(outer_id, domain))
        if not inner_id:
            return None
        path = normalize_resource_path(resource_path)
        candidates = [path] if path == "/" else [path, path + "/"]
        for candidate in candidates:
            value = self._dynamic_field_value(inner_id, candidate)
            if isinstance(value, str) and value:
                return value
        return None

    def lookup_resource(self, domain: str, resource_path: str) -> ResourceDescriptor:
        path = normalize_resource_path(resource_path)
        try:
            descriptor: Optional[ResourceDescriptor] = None
            fast_id = self.resource_entries.get(resource_key(domain, path))
            if fast_id:
                descriptor = self.get_resource(fast_id)
                if descriptor is not None and not descriptor.matches(domain, path):
                    logger.warning("Configured entry %s does not describe %s%s; ignoring", fast_id, domain, path)
                    descriptor = None
            if descriptor is None:
                entry_id = self._resolve_entry_id(domain, path)
                descriptor = self.get_resource(entry_id) if entry_id else None
        except PaywallError as e:
            if e.code != PW_E_LEDGER_UNAVAILABLE:
                raise
            raise paywall_error(
                PW_E_RESOURCE_NOT_FOUND,
                "resource resolution timed out",
                retryable=True,
                http_status=503,
            ) from e

        if descriptor is None or not descriptor.active:
            raise paywall_error(PW_E_RESOURCE_NOT_FOUND, "resource not registered", domain=domain, resource=path)
        return descriptor

    def _access_pass_type(self) -> str:
        return f"{normalize_address(self.contract.package_id)}::paywall::AccessPass"

    def fetch_token(self, token_id: str) -> Optional[CapabilityToken]:
        if not is_valid_address(token_id):
            return None
        data = self._get_object(token_id)
        if data is None:
            return None
        obj_type = str(data.get("type") or "")
        # Only passes minted by this package count; any other package could
        # define a struct with the same name and fields.
        if not self._same_type(obj_type, self._access_pass_type()):
            logger.info("Object %s is not an access pass (type=%s)", token_id, obj_type)
            return None
        fields = _object_fields(data)
        if not fields:
            return None
        owner = str(fields.get("owner") or "")
        if not owner:
            obj_owner = data.get("owner")
            if isinstance(obj_owner, dict):
                owner = str(obj_owner.get("AddressOwner") or "")
        return CapabilityToken(
            token_id=token_id,
            owner=owner,
            domain=_move_string(fields.get("domain")),
            resource_path=normalize_resource_path(_move_string(fields.get("resource"))),
            remaining_uses=_move_int(fields.get("remaining")),
            expiry_ms=_move_int(fields.get("expiry")),
            nonce=_move_string(fields.get("nonce")),
            price_paid=_move_int(fields.get("price_paid")),
        )

    def _pass_created_in(self, tx_digest: str) -> Optional[str]:
        result = self._rpc("sui_getTransactionBlock", [tx_digest, {"showObjectChanges": True}])
        if not isinstance(result, dict):
            return None
        return self._created_object(result, "::paywall::AccessPass")

    def find_tokens(self, owner: str, domain: str, resource_path: str) -> List[CapabilityToken]:
        # Only the most recent page of purchase events is searched.
        path = normalize_resource_path(resource_path)
        page = self._rpc(
            "suix_queryEvents",
            [{"MoveModule": {"package": self.contract.package_id, "module": "paywall"}}, None, PASS_EVENT_PAGE, True],
        ) or {}
        found: List[CapabilityToken] = []
        seen = set()
        for event in page.get("data") or []:
            if not str(event.get("type") or "").endswith("::paywall::PassPurchased"):
                continue
            parsed = event.get("parsedJson")
            if not isinstance(parsed, dict) or not addresses_equal(str(parsed.get("owner") or ""), owner):
                continue
            if _move_string(parsed.get("domain")) != domain:
                continue
            if normalize_resource_path(_move_string(parsed.get("resource"))) != path:
                continue
            tx_digest = str((event.get("id") or {}).get("txDigest") or "")
            if not tx_digest or tx_digest in seen:
                continue
            seen.add(tx_digest)
            token_id = self._pass_created_in(tx_digest)
            token = self.fetch_token(token_id) if token_id else None
            if token is not None and addresses_equal(token.owner, owner):
                found.append(token)
        return found

    @staticmethod
    def _same_type(actual: str, expected: str) -> bool:
        a_pkg, _, a_rest = actual.partition("::")
        e_pkg, _, e_rest = expected.partition("::")
        return bool(a_rest) and a_rest == e_rest and addresses_equal(a_pkg, e_pkg)

    def list_payment_objects(self, owner: str) -> List[PaymentObject]:
        out: List[PaymentObject] = []
        cursor: Optional[str] = None
        while True:
            page = self._rpc("suix_getCoins", [owner, SUI_COIN_TYPE, cursor, 50]) or {}
            for coin in page.get("data") or []:
                out.append(PaymentObject(object_id=str(coin["coinObjectId"]), value=_move_int(coin.get("balance"))))
            if not page.get("hasNextPage") or not page.get("nextCursor"):
                return out
            cursor = page["nextCursor"]

    def object_ref(self, object_id: str) -> ObjectRef:
        data = self._get_object(object_id)
        if data is None:
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "object not found", retryable=False, object_id=object_id)
        owner = data.get("owner")
        if isinstance(owner, dict) and isinstance(owner.get("Shared"), dict):
            return ObjectRef(
                object_id=object_id,
                version=_move_int(data.get("version")),
                initial_shared_version=_move_int(owner["Shared"].get("initial_shared_version")),
            )
        return ObjectRef(
            object_id=object_id,
            version=_move_int(data.get("version")),
            digest=base58.b58decode(str(data.get("digest") or "")),
        )

    # -- writes --------------------------------------------------------------

    def _execute(self, signer: Signer, tx_bytes_b64: str, action: str) -> Dict[str, Any]:
        tx_bytes = base64.b64decode(tx_bytes_b64)
        signature = signer.sign_transaction(tx_bytes)
        # Submission is never retried: a duplicate purchase would pay twice.
        result = self._rpc(
            "sui_executeTransactionBlock",
            [
                tx_bytes_b64,
                [signature],
                {"showEffects": True, "showObjectChanges": True},
                "WaitForLocalExecution",
            ],
            retry=False,
        )
        if not isinstance(result, dict):
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, f"{action}: malformed execution result")
        status = ((result.get("effects") or {}).get("status") or {})
        if status.get("status") != "success":
            result["_failure"] = str(status.get("error") or "unknown failure")
        return result

    @staticmethod
    def _created_object(result: Dict[str, Any], *type_fragments: str) -> Optional[str]:
        for change in result.get("objectChanges") or []:
            obj_type = str(change.get("objectType") or "")
            if change.get("type") == "created" and all(f in obj_type for f in type_fragments):
                return str(change.get("objectId"))
        return None

    def purchase_token(
        self,
        resource: ResourceDescriptor,
        payment_proof: PaymentProof,
        requested_uses: int,
        requested_expiry_ms: int,
        nonce: str,
    ) -> str:
        _check_purchase_args(requested_uses, requested_expiry_ms, nonce)
        payer = payment_proof.payer
        tx = self._rpc(
            "unsafe_moveCall",
            [
                payer.address,
                self.contract.package_id,
                "paywall",
                "purchase_pass",
                [],
                [
                    payment_proof.payment_object_id,
                    list(resource.domain.encode("utf-8")),
                    list(normalize_resource_path(resource.resource_path).encode("utf-8")),
                    str(int(requested_uses)),
                    str(int(requested_expiry_ms)),
                    list(nonce.encode("utf-8")),
                    resource.receiver_address,
                    self.contract.pass_counter_id,
                ],
                None,
                str(self.gas_budget),
            ],
        )
        if not isinstance(tx, dict) or not tx.get("txBytes"):
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "purchase: ledger did not build a transaction")
        result = self._execute(payer, tx["txBytes"], "purchase")
        if "_failure" in result:
            raise paywall_error(
                PW_E_PAYMENT_REJECTED,
                "purchase transaction aborted",
                error=result["_failure"],
                digest=result.get("digest"),
            )
        token_id = self._created_object(result, "::paywall::AccessPass")
        if not token_id:
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "purchase: no access pass in transaction result",
                                retryable=False, digest=result.get("digest"))
        logger.info("Purchased access pass %s for %s%s", token_id, resource.domain, resource.resource_path)
        return token_id

    def consume_token(self, token_id: str, owner_proof: OwnerProof) -> int:
        token = self.fetch_token(token_id)
        if token is None:
            raise paywall_error(PW_E_TOKEN_NOT_FOUND, "access pass not found", token_id=token_id)
        # consume_pass checks the transaction sender, so only the owner's key works.
        if isinstance(owner_proof, RequestArtifact) or not addresses_equal(owner_proof.address, token.owner):
            raise paywall_error(PW_E_UNAUTHORIZED, "consume requires the pass owner's key", token_id=token_id)
        if token.remaining_uses <= 0:
            raise paywall_error(PW_E_EXHAUSTED, "access pass has no remaining uses", retryable=False,
                                http_status=403, token_id=token_id)
        tx = self._rpc(
            "unsafe_moveCall",
            [owner_proof.address, self.contract.package_id, "paywall", "consume_pass", [], [token_id],
             None, str(self.gas_budget)],
        )
        if not isinstance(tx, dict) or not tx.get("txBytes"):
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "consume: ledger did not build a transaction")
        result = self._execute(owner_proof, tx["txBytes"], "consume")
        if "_failure" in result:
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "consume transaction aborted", retryable=False,
                                error=result["_failure"], digest=result.get("digest"))
        return token.remaining_uses - 1

    def split_payment_object(self, owner_signer: Signer, object_id: str, amount: int) -> str:
        if int(amount) <= 0:
            raise paywall_error(PW_E_PAYMENT_REJECTED, "split amount must be positive")
        owner = owner_signer.address
        # paySui sends `amount` from the coin back to its owner as a new coin;
        # the remainder of the input coin pays for gas.
        tx = self._rpc("unsafe_paySui", [owner, [object_id], [owner], [str(int(amount))], str(self.gas_budget)])
        if not isinstance(tx, dict) or not tx.get("txBytes"):
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "split: ledger did not build a transaction")
        result = self._execute(owner_signer, tx["txBytes"], "split")
        if "_failure" in result:
            raise paywall_error(PW_E_PAYMENT_REJECTED, "split transaction aborted", error=result["_failure"])
        new_id = self._created_object(result, "::coin::Coin<", "::sui::SUI>")
        if not new_id:
            raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "split: no coin in transaction result", retryable=False)
        return new_id


# ---------------------------
# In-memory ledger
# ---------------------------

@dataclass
class _Coin:
    owner: str
    value: int


class InMemoryLedger(LedgerClient):
    """Thread-safe ledger with the paywall contract's semantics.

    Also accepts a RequestArtifact as a consume proof when it carries the
    owner's valid signature for this pass and its scope, so a gateway can
    account usage on the owner's behalf.
    """

    accepts_delegated_consume = True

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: Dict[str, ResourceDescriptor] = {}
        self._index: Dict[str, str] = {}
        self._tokens: Dict[str, CapabilityToken] = {}
        self._coins: Dict[str, _Coin] = {}
        self._versions: Dict[str, int] = {}
        self._shared: Dict[str, int] = {}
        self._nonces: set = set()
        self._seq = itertools.count(1)
        self.balances: Dict[str, int] = {}
        self._versions[CLOCK_ID] = 1
        self._shared[CLOCK_ID] = 1

    def _new_id(self, kind: str) -> str:
        return "0x" + blake2b256(f"{kind}:{next(self._seq)}".encode("utf-8")).hex()

    def _bump(self, object_id: str) -> None:
        self._versions[object_id] = self._versions.get(object_id, 0) + 1

    # -- fixtures ------------------------------------------------------------

    def register_resource(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        """Store a resource (assigning an entry id when missing) and index it."""
        price_to_smallest_unit(resource.price)
        with self._lock:
            entry_id = resource.entry_id or self._new_id("resource")
            stored = replace(
                resource,
                entry_id=entry_id,
                resource_path=normalize_resource_path(resource.resource_path),
            )
            self._resources[entry_id] = stored
            self._index[resource_key(stored.domain, stored.resource_path)] = entry_id
            self._bump(entry_id)
            self._shared.setdefault(entry_id, self._versions[entry_id])
            return stored

    def set_resource_active(self, entry_id: str, active: bool) -> None:
        with self._lock:
            self._resources[entry_id] = replace(self._resources[entry_id], active=bool(active))
            self._bump(entry_id)

    def mint_payment_object(self, owner: str, value: int) -> str:
        with self._lock:
            object_id = self._new_id("coin")
            self._coins[object_id] = _Coin(owner=normalize_address(owner), value=int(value))
            self._bump(object_id)
            return object_id

    # -- LedgerClient ----------------------------------------------------------

    def lookup_resource(self, domain: str, resource_path: str) -> ResourceDescriptor:
        path = normalize_resource_path(resource_path)
        with self._lock:
            entry_id = self._index.get(resource_key(domain, path))
            descriptor = self._resources.get(entry_id) if entry_id else None
        if descriptor is None or not descriptor.active:
            raise paywall_error(PW_E_RESOURCE_NOT_FOUND, "resource not registered", domain=domain, resource=path)
        return descriptor

    def get_resource(self, entry_id: str) -> Optional[ResourceDescriptor]:
        with self._lock:
            return self._resources.get(entry_id)

    def fetch_token(self, token_id: str) -> Optional[CapabilityToken]:
        with self._lock:
            return self._tokens.get(token_id)

    def purchase_token(
        self,
        resource: ResourceDescriptor,
        payment_proof: PaymentProof,
        requested_uses: int,
        requested_expiry_ms: int,
        nonce: str,
    ) -> str:
        _check_purchase_args(requested_uses, requested_expiry_ms, nonce)
        price = price_to_smallest_unit(resource.price)
        payer = normalize_address(payment_proof.payer.address)
        with self._lock:
            current = self._resources.get(resource.entry_id)
            if current is None or not current.active:
                raise paywall_error(PW_E_RESOURCE_NOT_FOUND, "resource not registered", entry_id=resource.entry_id)
            if nonce in self._nonces:
                raise paywall_error(PW_E_PAYMENT_REJECTED, "challenge nonce already used")
            coin = self._coins.get(payment_proof.payment_object_id)
            if coin is None or coin.owner != payer:
                raise paywall_error(PW_E_PAYMENT_REJECTED, "payment object not owned by payer",
                                    payment_object_id=payment_proof.payment_object_id)
            if coin.value < price:
                raise paywall_error(PW_E_PAYMENT_REJECTED, "insufficient payment value",
                                    required=price, provided=coin.value)

            # The whole payment object is transferred to the receiver.
            del self._coins[payment_proof.payment_object_id]
            receiver = normalize_address(current.receiver_address)
            self.balances[receiver] = self.balances.get(receiver, 0) + coin.value
            self._nonces.add(nonce)

            token_id = self._new_id("pass")
            self._tokens[token_id] = CapabilityToken(
                token_id=token_id,
                owner=payer,
                domain=current.domain,
                resource_path=current.resource_path,
                remaining_uses=int(requested_uses),
                expiry_ms=int(requested_expiry_ms),
                nonce=nonce,
                price_paid=coin.value,
            )
            self._bump(token_id)
            return token_id

    @staticmethod
    def _artifact_signed_by_owner(artifact: RequestArtifact, token: CapabilityToken) -> bool:
        if artifact.token_id != token.token_id or not addresses_equal(artifact.signer_address, token.owner):
            return False
        message = canonical_request_message(token.token_id, token.domain, token.resource_path, artifact.timestamp)
        try:
            recovered = verify_personal_message(message, artifact.signature)
        except ValueError:
            return False
        return addresses_equal(recovered, token.owner)

    def consume_token(self, token_id: str, owner_proof: OwnerProof) -> int:
        with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                raise paywall_error(PW_E_TOKEN_NOT_FOUND, "access pass not found", token_id=token_id)
            if isinstance(owner_proof, RequestArtifact):
                authorized = self._artifact_signed_by_owner(owner_proof, token)
            else:
                authorized = addresses_equal(owner_proof.address, token.owner)
            if not authorized:
                raise paywall_error(PW_E_UNAUTHORIZED, "proof does not match pass owner", token_id=token_id)
            if token.remaining_uses <= 0:
                raise paywall_error(PW_E_EXHAUSTED, "access pass has no remaining uses", retryable=False,
                                    http_status=403, token_id=token_id)
            updated = replace(token, remaining_uses=token.remaining_uses - 1)
            self._tokens[token_id] = updated
            self._bump(token_id)
            return updated.remaining_uses

    def find_tokens(self, owner: str, domain: str, resource_path: str) -> List[CapabilityToken]:
        owner_n = normalize_address(owner)
        path = normalize_resource_path(resource_path)
        with self._lock:
            tokens = list(self._tokens.values())
        return [
            t for t in reversed(tokens)
            if t.owner == owner_n and t.domain == domain and t.resource_path == path
        ]

    def list_payment_objects(self, owner: str) -> List[PaymentObject]:
        owner_n = normalize_address(owner)
        with self._lock:
            return [PaymentObject(object_id=oid, value=c.value) for oid, c in self._coins.items() if c.owner == owner_n]

    def split_payment_object(self, owner_signer: Signer, object_id: str, amount: int) -> str:
        owner = normalize_address(owner_signer.address)
        with self._lock:
            coin = self._coins.get(object_id)
            if coin is None or coin.owner != owner:
                raise paywall_error(PW_E_UNAUTHORIZED, "payment object not owned by signer", object_id=object_id)
            if int(amount) <= 0 or coin.value < int(amount):
                raise paywall_error(PW_E_PAYMENT_REJECTED, "insufficient value to split",
                                    required=int(amount), provided=coin.value)
            coin.value -= int(amount)
            self._bump(object_id)
            new_id = self._new_id("coin")
            self._coins[new_id] = _Coin(owner=owner, value=int(amount))
            self._bump(new_id)
            return new_id

    def object_ref(self, object_id: str) -> ObjectRef:
        with self._lock:
            if object_id not in self._versions:
                raise paywall_error(PW_E_LEDGER_UNAVAILABLE, "object not found", retryable=False, object_id=object_id)
            version = self._versions[object_id]
            if object_id in self._shared:
                return ObjectRef(object_id, version, initial_shared_version=self._shared[object_id])
            digest = blake2b256(f"{object_id}:{version}".encode("utf-8"))
            return ObjectRef(object_id, version, digest=digest)
