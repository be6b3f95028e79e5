"""Stable error taxonomy for the paywall gateway.

This module defines machine-readable error codes and a single exception type
used across the gateway, the ledger/storage/decryption clients and the client
orchestrator.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages. Details are
  never rendered into 5xx responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class DenialReason(str, Enum):
    """Reasons an access request can be denied, in evaluation order."""

    MISSING_PROOF = "MissingProof"
    TOKEN_NOT_FOUND = "TokenNotFound"
    OWNERSHIP_MISMATCH = "OwnershipMismatch"
    SCOPE_MISMATCH = "ScopeMismatch"
    EXHAUSTED = "Exhausted"
    EXPIRED = "Expired"
    BAD_SIGNATURE = "BadSignature"


# Access (403 once a proof was presented, 402 when none was)
PW_E_MISSING_PROOF = DenialReason.MISSING_PROOF.value
PW_E_TOKEN_NOT_FOUND = DenialReason.TOKEN_NOT_FOUND.value
PW_E_OWNERSHIP_MISMATCH = DenialReason.OWNERSHIP_MISMATCH.value
PW_E_SCOPE_MISMATCH = DenialReason.SCOPE_MISMATCH.value
PW_E_EXHAUSTED = DenialReason.EXHAUSTED.value
PW_E_EXPIRED = DenialReason.EXPIRED.value
PW_E_BAD_SIGNATURE = DenialReason.BAD_SIGNATURE.value

# Upstream / retrieval
PW_E_RESOURCE_NOT_FOUND = "ResourceNotFound"
PW_E_CONTENT_UNAVAILABLE = "ContentUnavailable"
PW_E_DECRYPTION_AUTHORIZATION = "DecryptionAuthorizationError"
PW_E_LEDGER_UNAVAILABLE = "LedgerUnavailable"

# Ledger writes
PW_E_PAYMENT_REJECTED = "PaymentRejected"
PW_E_UNAUTHORIZED = "Unauthorized"

# Configuration / generic
PW_E_INVALID_PRICE = "InvalidPrice"
PW_E_BAD_REQUEST = "BadRequest"
PW_E_INTERNAL = "Internal"

# Default HTTP status per code. Callers may override (e.g. a timed-out
# resource lookup is a 503, not a 404).
DEFAULT_HTTP_STATUS: Dict[str, int] = {
    PW_E_MISSING_PROOF: 402,
    PW_E_TOKEN_NOT_FOUND: 403,
    PW_E_OWNERSHIP_MISMATCH: 403,
    PW_E_SCOPE_MISMATCH: 403,
    PW_E_EXHAUSTED: 403,
    PW_E_EXPIRED: 403,
    PW_E_BAD_SIGNATURE: 403,
    PW_E_RESOURCE_NOT_FOUND: 404,
    PW_E_CONTENT_UNAVAILABLE: 502,
    PW_E_DECRYPTION_AUTHORIZATION: 502,
    PW_E_LEDGER_UNAVAILABLE: 503,
    PW_E_PAYMENT_REJECTED: 402,
    PW_E_UNAUTHORIZED: 403,
    PW_E_INVALID_PRICE: 500,
    PW_E_BAD_REQUEST: 400,
    PW_E_INTERNAL: 500,
}

_RETRYABLE_CODES = frozenset({
    PW_E_MISSING_PROOF,
    PW_E_CONTENT_UNAVAILABLE,
    PW_E_DECRYPTION_AUTHORIZATION,
    PW_E_LEDGER_UNAVAILABLE,
})


@dataclass
class PaywallError(Exception):
    """Base paywall exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self, include_details: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if include_details and self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        # Keep message readable; details are available via .as_dict()
        return f"{self.code}: {self.message}"


class AccessDenied(PaywallError):
    """A 403 from the gateway, surfaced to the caller of the client."""

    def __init__(self, reason: DenialReason, message: str = "", **details: Any):
        super().__init__(
            code=reason.value,
            message=message or f"access denied: {reason.value}",
            retryable=False,
            http_status=403,
            details=details,
        )
        self.reason = reason


def paywall_error(
    code: str,
    message: str,
    *,
    retryable: Optional[bool] = None,
    http_status: Optional[int] = None,
    **details: Any,
) -> PaywallError:
    if retryable is None:
        retryable = code in _RETRYABLE_CODES
    if http_status is None:
        http_status = DEFAULT_HTTP_STATUS.get(code, 400)
    return PaywallError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
