"""
Access verifier: the grant/deny state machine.

Checks run in a fixed, short-circuiting order so that the reported reason is
deterministic and reveals as little as possible:

    Presence -> Existence -> Ownership -> Scope -> Lifetime -> Signature

Lifetime reports Exhausted before Expired. Decisions are never cached: every
call to `verify` reads the token fresh from the ledger because its remaining
uses can change between requests.
"""

from __future__ import annotations

import logging
from typing import Optional

from .crypto import addresses_equal
from .errors import DenialReason
from .ledger import LedgerClient
from .models import (
    CapabilityToken,
    RequestArtifact,
    ResourceDescriptor,
    VerificationResult,
    normalize_resource_path,
)
from .signature import SignatureVerifier

logger = logging.getLogger("paywall_gateway.verifier")


class AccessVerifier:
    def __init__(self, ledger: LedgerClient, signature_verifier: Optional[SignatureVerifier] = None):
        self.ledger = ledger
        self.signature_verifier = signature_verifier or SignatureVerifier()

    def evaluate(
        self,
        resource: ResourceDescriptor,
        token: Optional[CapabilityToken],
        artifact: Optional[RequestArtifact],
        now_ms: int,
    ) -> VerificationResult:
        """Pure decision over a ledger snapshot."""
        if artifact is None:
            return VerificationResult.Denied(DenialReason.MISSING_PROOF)

        if token is None:
            return VerificationResult.Denied(DenialReason.TOKEN_NOT_FOUND)

        if not addresses_equal(token.owner, artifact.signer_address):
            return VerificationResult.Denied(DenialReason.OWNERSHIP_MISMATCH, token)

        if token.domain != resource.domain or (
            normalize_resource_path(token.resource_path) != normalize_resource_path(resource.resource_path)
        ):
            return VerificationResult.Denied(DenialReason.SCOPE_MISMATCH, token)

        if token.remaining_uses <= 0:
            return VerificationResult.Denied(DenialReason.EXHAUSTED, token)
        if token.is_expired(now_ms):
            return VerificationResult.Denied(DenialReason.EXPIRED, token)

        # The signed message binds the path the client requested, which is the
        # resource's normalised path.
        check = self.signature_verifier.verify_artifact(
            artifact,
            domain=resource.domain,
            resource_path=normalize_resource_path(resource.resource_path),
            now_ms=now_ms,
        )
        if not check.ok:
            logger.info("Signature rejected for token %s: %s", artifact.token_id, check.error)
            return VerificationResult.Denied(DenialReason.BAD_SIGNATURE, token)

        return VerificationResult.Granted(token)

    def verify(
        self,
        resource: ResourceDescriptor,
        artifact: Optional[RequestArtifact],
        now_ms: int,
    ) -> VerificationResult:
        """Presence check, then a fresh token read, then `evaluate`.

        Ledger failures propagate as PaywallError(LedgerUnavailable).
        """
        if artifact is None:
            return VerificationResult.Denied(DenialReason.MISSING_PROOF)
        token = self.ledger.fetch_token(artifact.token_id)
        return self.evaluate(resource, token, artifact, now_ms)
