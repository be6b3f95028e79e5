"""
Decryption authorization and threshold-decryption service clients.

The decryption service releases keys only against an authorization artifact:
the BCS bytes of a transaction kind calling
`<package>::registry::seal_approve(id, resource_entry, access_pass, clock)`.

The bytes used for `fetch_keys` and for `decrypt` must be identical. Every
service implementation here remembers which artifacts it fetched keys for
and raises DecryptionAuthorizationError when `decrypt` is given anything
else. Re-authorization means building a new artifact and calling both
methods again with it.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .bcs import BcsWriter, serialize_bytes
from .config import ContractIdentifiers
from .errors import PW_E_DECRYPTION_AUTHORIZATION, paywall_error
from .ledger import ObjectRef

logger = logging.getLogger("paywall_gateway.decryption")

APPROVE_MODULE = "registry"
APPROVE_FUNCTION = "seal_approve"

# BCS enum variant indices
_TX_KIND_PROGRAMMABLE = 0
_CALL_ARG_PURE = 0
_CALL_ARG_OBJECT = 1
_OBJECT_ARG_OWNED = 0
_OBJECT_ARG_SHARED = 1
_COMMAND_MOVE_CALL = 0
_ARGUMENT_INPUT = 1


def policy_id_bytes(policy_id: str) -> bytes:
    s = (policy_id or "").strip()
    if s.lower().startswith("0x"):
        s = s[2:]
    try:
        raw = bytes.fromhex(s)
    except ValueError as e:
        raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "decryption policy id is not hex",
                            retryable=False) from e
    if not raw:
        raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "empty decryption policy id", retryable=False)
    return raw


@dataclass(frozen=True)
class AuthorizationArtifact:
    tx_bytes: bytes

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.tx_bytes).hexdigest()

    def to_base64(self) -> str:
        return base64.b64encode(self.tx_bytes).decode("ascii")


def _write_object_arg(w: BcsWriter, ref: ObjectRef) -> None:
    w.variant(_CALL_ARG_OBJECT)
    if ref.shared:
        w.variant(_OBJECT_ARG_SHARED).address(ref.object_id).u64(ref.initial_shared_version).bool(False)
    else:
        w.variant(_OBJECT_ARG_OWNED).address(ref.object_id).u64(ref.version).bytes(ref.digest)


def build_authorization_artifact(
    contract: ContractIdentifiers,
    policy_id: str,
    resource_ref: ObjectRef,
    token_ref: ObjectRef,
    clock_ref: ObjectRef,
) -> AuthorizationArtifact:
    """Serialize a single-call programmable transaction kind for seal_approve."""
    w = BcsWriter().variant(_TX_KIND_PROGRAMMABLE)

    w.length(4)
    w.variant(_CALL_ARG_PURE).bytes(serialize_bytes(policy_id_bytes(policy_id)))
    for ref in (resource_ref, token_ref, clock_ref):
        _write_object_arg(w, ref)

    w.length(1)
    w.variant(_COMMAND_MOVE_CALL)
    w.address(contract.package_id).string(APPROVE_MODULE).string(APPROVE_FUNCTION)
    w.length(0)
    w.length(4)
    for i in range(4):
        w.variant(_ARGUMENT_INPUT).u16(i)

    return AuthorizationArtifact(w.to_bytes())


class DecryptionService(Protocol):
    def fetch_keys(self, policy_id: str, tx_bytes: bytes) -> None:
        ...

    def decrypt(self, ciphertext: bytes, tx_bytes: bytes) -> bytes:
        ...


class _ArtifactBinding:
    """Remembers the artifacts keys were fetched for, by digest.

    Concurrent grants on one pass build byte-identical artifacts, so each
    digest carries a count of outstanding fetches; every `decrypt` uses up
    one of them.
    """

    def __init__(self) -> None:
        self._bind_lock = threading.Lock()
        self._bound: Dict[str, Tuple[str, int]] = {}

    def _bind(self, policy_id: str, tx_bytes: bytes) -> None:
        digest = hashlib.sha256(bytes(tx_bytes)).hexdigest()
        with self._bind_lock:
            _, pending = self._bound.get(digest, (policy_id, 0))
            self._bound[digest] = (policy_id, pending + 1)

    def _take(self, tx_bytes: bytes) -> str:
        digest = hashlib.sha256(bytes(tx_bytes)).hexdigest()
        with self._bind_lock:
            entry = self._bound.get(digest)
            if entry is not None:
                policy_id, pending = entry
                if pending > 1:
                    self._bound[digest] = (policy_id, pending - 1)
                else:
                    del self._bound[digest]
        if entry is None:
            raise paywall_error(
                PW_E_DECRYPTION_AUTHORIZATION,
                "decrypt called with an authorization artifact that keys were not fetched for",
                artifact_digest=digest,
            )
        return entry[0]


class HttpDecryptionService(_ArtifactBinding):
    """
    JSON client for a decryption service.

    POST {url}/v1/fetch_keys  {"policyId", "txBytes"}
    POST {url}/v1/decrypt     {"txBytes", "ciphertext"}  -> {"plaintext"}
    (binary fields are base64)
    """

    def __init__(self, url: str, timeout_seconds: float = 10.0):
        super().__init__()
        self.url = url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _post(self, path: str, body: Dict[str, str]) -> Dict[str, object]:
        req = urllib.request.Request(
            f"{self.url}{path}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            status = int(getattr(e, "code", 0) or 0)
            raise paywall_error(
                PW_E_DECRYPTION_AUTHORIZATION,
                "decryption service refused the request",
                retryable=status in (408, 429) or status >= 500 or status == 403,
                path=path,
                status=status,
            ) from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as e:
            raise paywall_error(
                PW_E_DECRYPTION_AUTHORIZATION,
                "decryption service unreachable",
                http_status=503,
                path=path,
                error=f"{type(e).__name__}: {e}",
            ) from e
        if not isinstance(decoded, dict):
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "malformed decryption service response", path=path)
        return decoded

    def fetch_keys(self, policy_id: str, tx_bytes: bytes) -> None:
        self._post("/v1/fetch_keys", {
            "policyId": policy_id,
            "txBytes": base64.b64encode(bytes(tx_bytes)).decode("ascii"),
        })
        self._bind(policy_id, tx_bytes)

    def decrypt(self, ciphertext: bytes, tx_bytes: bytes) -> bytes:
        self._take(tx_bytes)
        decoded = self._post("/v1/decrypt", {
            "txBytes": base64.b64encode(bytes(tx_bytes)).decode("ascii"),
            "ciphertext": base64.b64encode(bytes(ciphertext)).decode("ascii"),
        })
        plaintext = decoded.get("plaintext")
        if not isinstance(plaintext, str):
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "decryption service returned no plaintext")
        try:
            return base64.b64decode(plaintext, validate=True)
        except ValueError as e:
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "decryption service returned invalid base64") from e


_CIPHERTEXT_MAGIC = b"PWE1"
_NONCE_LEN = 12


class InMemoryDecryptionService(_ArtifactBinding):
    """AES-256-GCM stand-in for the threshold service (dev mode and tests).

    Ciphertext layout: magic(4) || len(policy)(1) || policy || nonce(12) || aead
    The policy id is bound as associated data.
    """

    def __init__(self) -> None:
        super().__init__()
        self._keys_lock = threading.Lock()
        self._keys: Dict[bytes, bytes] = {}

    def _key_for(self, policy: bytes, create: bool) -> Optional[bytes]:
        with self._keys_lock:
            key = self._keys.get(policy)
            if key is None and create:
                key = AESGCM.generate_key(bit_length=256)
                self._keys[policy] = key
            return key

    def encrypt(self, policy_id: str, plaintext: bytes) -> bytes:
        policy = policy_id_bytes(policy_id)
        if len(policy) > 255:
            raise ValueError("policy id too long")
        key = self._key_for(policy, create=True)
        nonce = os.urandom(_NONCE_LEN)
        ct = AESGCM(key).encrypt(nonce, bytes(plaintext), policy)
        return _CIPHERTEXT_MAGIC + bytes([len(policy)]) + policy + nonce + ct

    def fetch_keys(self, policy_id: str, tx_bytes: bytes) -> None:
        policy = policy_id_bytes(policy_id)
        # The artifact's first input is the policy id; keys are only released
        # for artifacts that name it.
        if not tx_bytes or serialize_bytes(policy) not in bytes(tx_bytes):
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "authorization artifact does not approve policy",
                                retryable=False)
        if self._key_for(policy, create=False) is None:
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "no key registered for policy", retryable=False)
        self._bind(policy_id, tx_bytes)

    def decrypt(self, ciphertext: bytes, tx_bytes: bytes) -> bytes:
        policy_id = self._take(tx_bytes)
        policy = policy_id_bytes(policy_id)
        data = bytes(ciphertext)
        header = len(_CIPHERTEXT_MAGIC) + 1
        if len(data) < header or not data.startswith(_CIPHERTEXT_MAGIC):
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "ciphertext is not in a known format", retryable=False)
        plen = data[len(_CIPHERTEXT_MAGIC)]
        ct_policy = data[header:header + plen]
        if ct_policy != policy:
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "ciphertext belongs to a different policy",
                                retryable=False)
        nonce = data[header + plen:header + plen + _NONCE_LEN]
        key = self._key_for(policy, create=False)
        try:
            return AESGCM(key).decrypt(nonce, data[header + plen + _NONCE_LEN:], policy)
        except (InvalidTag, ValueError) as e:
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "ciphertext failed authentication",
                                retryable=False) from e
