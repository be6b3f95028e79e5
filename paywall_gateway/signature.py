"""Request artifact signature verification.

Purely computational: no ledger reads, no side effects. Ownership of the
token is checked separately by the access verifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import DEFAULT_FRESHNESS_WINDOW_MS
from .crypto import addresses_equal, canonical_request_message, verify_personal_message
from .models import RequestArtifact

logger = logging.getLogger("paywall_gateway.signature")


@dataclass(frozen=True)
class SignatureCheck:
    ok: bool
    error: Optional[str] = None


class SignatureVerifier:
    """
    Verifies a personal-message signature over the canonical request message.

    A timestamp exactly `freshness_window_ms` away from `now_ms` is still
    accepted; one millisecond more is rejected.
    """

    def __init__(self, freshness_window_ms: int = DEFAULT_FRESHNESS_WINDOW_MS):
        if freshness_window_ms <= 0:
            raise ValueError("freshness_window_ms must be positive")
        self.freshness_window_ms = int(freshness_window_ms)

    def verify(
        self,
        token_id: str,
        domain: str,
        resource_path: str,
        timestamp: str,
        signer_address: str,
        signature: str,
        now_ms: int,
    ) -> SignatureCheck:
        artifact = RequestArtifact(
            token_id=str(token_id or "").strip(),
            signer_address=str(signer_address or "").strip(),
            signature=str(signature or "").strip(),
            timestamp=str(timestamp or "").strip(),
        )
        return self.verify_artifact(artifact, domain, resource_path, now_ms)

    def verify_artifact(
        self,
        artifact: RequestArtifact,
        domain: str,
        resource_path: str,
        now_ms: int,
    ) -> SignatureCheck:
        fields = {
            "token_id": artifact.token_id,
            "domain": domain,
            "resource_path": resource_path,
            "timestamp": artifact.timestamp,
            "signer_address": artifact.signer_address,
            "signature": artifact.signature,
        }
        missing = [k for k, v in fields.items() if not v or not str(v).strip()]
        if missing:
            return SignatureCheck(False, f"missing field(s): {', '.join(missing)}")

        try:
            ts = artifact.timestamp_ms()
            signature = artifact.signature_bytes()
        except ValueError as e:
            return SignatureCheck(False, str(e))
        skew = abs(int(now_ms) - ts)
        if skew > self.freshness_window_ms:
            return SignatureCheck(False, f"timestamp outside freshness window ({skew} ms)")

        message = canonical_request_message(artifact.token_id, domain, resource_path, artifact.timestamp)
        try:
            recovered = verify_personal_message(message, signature)
        except ValueError as e:
            return SignatureCheck(False, str(e))

        if not addresses_equal(recovered, artifact.signer_address):
            return SignatureCheck(False, "signature public key does not match signer address")
        return SignatureCheck(True)
