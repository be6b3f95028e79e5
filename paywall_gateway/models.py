"""
Core data model for the paywall gateway.

These types are read-only snapshots of ledger state (ResourceDescriptor,
CapabilityToken), ephemeral protocol payloads (PaymentChallenge,
RequestArtifact) and verification outcomes. None of them is a second source
of truth for ledger state; they are re-read on every request.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import DenialReason

HEADER_TOKEN_ID = "x-pass-id"
HEADER_SIGNER = "x-signer"
HEADER_SIGNATURE = "x-sig"
HEADER_TIMESTAMP = "x-ts"

HEADER_RESOURCE_ENTRY_ID = "x-resource-entry-id"
HEADER_CONTENT_LOCATOR = "x-content-locator"
HEADER_DECRYPTION_POLICY = "x-decryption-policy"
HEADER_CONTENT_DECRYPTED = "x-content-decrypted"
HEADER_USAGE_ACCOUNTING = "x-usage-accounting"


def normalize_resource_path(path: Optional[str]) -> str:
    """Strip a single trailing slash; the root path stays ``/``."""
    p = (path or "").strip()
    if p in ("", "/"):
        return "/"
    if not p.startswith("/"):
        p = "/" + p
    return p[:-1] if p.endswith("/") else p


@dataclass(frozen=True)
class ResourceDescriptor:
    """Ledger record mapping (domain, resource_path) to content and price.

    `price` is a decimal string in whole ledger units (SUI).
    """

    domain: str
    resource_path: str
    content_locator: str
    decryption_policy_id: str
    price: str
    receiver_address: str
    max_uses_per_token: int = 0
    validity_duration_ms: int = 0
    active: bool = True
    entry_id: str = ""
    owner: str = ""
    created_at_ms: int = 0

    def matches(self, domain: str, resource_path: str) -> bool:
        return (
            self.domain == domain
            and normalize_resource_path(self.resource_path) == normalize_resource_path(resource_path)
        )


@dataclass(frozen=True)
class CapabilityToken:
    """
    On-ledger proof of paid access to one (domain, resource_path).

    `expiry_ms == 0` means the token never expires.
    """

    token_id: str
    owner: str
    domain: str
    resource_path: str
    remaining_uses: int
    expiry_ms: int = 0
    nonce: str = ""
    price_paid: int = 0

    def is_expired(self, now_ms: int) -> bool:
        return self.expiry_ms != 0 and now_ms >= self.expiry_ms

    def is_usable(self, now_ms: int) -> bool:
        return self.remaining_uses > 0 and not self.is_expired(now_ms)


@dataclass(frozen=True)
class PaymentChallenge:
    """Ephemeral 402 payload. Regenerated for every denied request."""

    price: str
    price_in_smallest_unit: int
    receiver_address: str
    contract_identifiers: Dict[str, str]
    domain: str
    resource_path: str
    nonce: str

    def to_body(self) -> Dict[str, Any]:
        return {
            "status": 402,
            "paymentRequired": True,
            "price": self.price,
            "priceInSmallestUnit": str(self.price_in_smallest_unit),
            "receiver": self.receiver_address,
            "domain": self.domain,
            "resource": self.resource_path,
            "nonce": self.nonce,
            "contractIdentifiers": dict(self.contract_identifiers),
        }

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "PaymentChallenge":
        """Parse a 402 body. Raises ValueError when required fields are missing."""
        if not isinstance(body, Mapping):
            raise ValueError("challenge body must be a JSON object")
        missing = [k for k in ("price", "priceInSmallestUnit", "receiver", "domain", "resource", "nonce")
                   if body.get(k) in (None, "")]
        if missing:
            raise ValueError(f"challenge body missing fields: {', '.join(missing)}")
        try:
            smallest = int(str(body["priceInSmallestUnit"]))
        except ValueError as e:
            raise ValueError("priceInSmallestUnit is not an integer") from e
        ids = body.get("contractIdentifiers") or {}
        if not isinstance(ids, Mapping):
            raise ValueError("contractIdentifiers must be a JSON object")
        return cls(
            price=str(body["price"]),
            price_in_smallest_unit=smallest,
            receiver_address=str(body["receiver"]),
            contract_identifiers={str(k): str(v) for k, v in ids.items()},
            domain=str(body["domain"]),
            resource_path=normalize_resource_path(str(body["resource"])),
            nonce=str(body["nonce"]),
        )


@dataclass(frozen=True)
class RequestArtifact:
    """The four request headers that prove token possession.

    Fields hold the raw header strings. Presence is checked by
    `from_headers`; typed parsing happens in the accessors, which raise
    ValueError on malformed values.
    """

    token_id: str
    signer_address: str
    signature: str
    timestamp: str

    REQUIRED_HEADERS = (HEADER_TOKEN_ID, HEADER_SIGNER, HEADER_SIGNATURE, HEADER_TIMESTAMP)

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["RequestArtifact"]:
        """Return the artifact, or None when any required header is missing or blank."""
        lowered = {str(k).lower(): v for k, v in headers.items()}
        values = []
        for name in cls.REQUIRED_HEADERS:
            v = lowered.get(name)
            if v is None or not str(v).strip():
                return None
            values.append(str(v).strip())
        return cls(*values)

    def to_headers(self) -> Dict[str, str]:
        return {
            HEADER_TOKEN_ID: self.token_id,
            HEADER_SIGNER: self.signer_address,
            HEADER_SIGNATURE: self.signature,
            HEADER_TIMESTAMP: self.timestamp,
        }

    def timestamp_ms(self) -> int:
        ts = self.timestamp
        if not ts or not ts.isascii() or not ts.isdigit():
            raise ValueError(f"timestamp is not decimal milliseconds: {ts!r}")
        return int(ts)

    def signature_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.signature.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError("signature is not valid base64") from e


@dataclass(frozen=True)
class VerificationResult:
    granted: bool
    reason: Optional[DenialReason] = None
    token: Optional[CapabilityToken] = None

    @classmethod
    def Granted(cls, token: CapabilityToken) -> "VerificationResult":
        return cls(granted=True, reason=None, token=token)

    @classmethod
    def Denied(cls, reason: DenialReason, token: Optional[CapabilityToken] = None) -> "VerificationResult":
        return cls(granted=False, reason=reason, token=token)


@dataclass(frozen=True)
class PaymentObject:
    """A value-bearing ledger object (coin) owned by the payer."""

    object_id: str
    value: int


@dataclass
class FetchResult:
    """Outcome of PaywallClient.fetch."""

    status: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    token_id: Optional[str] = None
    resource_entry_id: Optional[str] = None
    decrypted: bool = False
