"""Content retrieval after an access grant."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import ContractIdentifiers
from .decryption import AuthorizationArtifact, DecryptionService, build_authorization_artifact
from .errors import PW_E_CONTENT_UNAVAILABLE, PW_E_DECRYPTION_AUTHORIZATION, paywall_error
from .ledger import LedgerClient
from .models import ResourceDescriptor
from .storage import BlobStore

logger = logging.getLogger("paywall_gateway.retriever")


@dataclass(frozen=True)
class RetrievedContent:
    data: bytes
    decrypted: bool
    resource: ResourceDescriptor


class ContentRetriever:
    def __init__(
        self,
        ledger: LedgerClient,
        blob_store: Optional[BlobStore],
        contract: ContractIdentifiers,
        decryption: Optional[DecryptionService] = None,
    ):
        self.ledger = ledger
        self.blob_store = blob_store
        self.contract = contract
        self.decryption = decryption

    def authorization_artifact(self, resource: ResourceDescriptor, token_id: str) -> AuthorizationArtifact:
        return build_authorization_artifact(
            self.contract,
            resource.decryption_policy_id,
            self.ledger.object_ref(resource.entry_id),
            self.ledger.object_ref(token_id),
            self.ledger.object_ref(self.contract.clock_id),
        )

    def decrypt_blob(self, resource: ResourceDescriptor, token_id: str, blob: bytes) -> bytes:
        """Authorize once and decrypt with the very same artifact bytes.

        A failure is surfaced as DecryptionAuthorizationError; calling again
        builds a fresh, internally consistent artifact.
        """
        if self.decryption is None:
            raise paywall_error(PW_E_DECRYPTION_AUTHORIZATION, "no decryption service configured", retryable=False)
        artifact = self.authorization_artifact(resource, token_id)
        tx_bytes = artifact.tx_bytes
        logger.debug("Decrypting %s with authorization %s", resource.entry_id, artifact.digest)
        self.decryption.fetch_keys(resource.decryption_policy_id, tx_bytes)
        return self.decryption.decrypt(blob, tx_bytes)

    def retrieve(self, resource: ResourceDescriptor, token_id: str, decrypt: bool = False) -> RetrievedContent:
        if self.blob_store is None:
            raise paywall_error(PW_E_CONTENT_UNAVAILABLE, "no blob store configured", retryable=False)
        blob = self.blob_store.get(resource.content_locator)
        if not decrypt:
            return RetrievedContent(data=blob, decrypted=False, resource=resource)
        plaintext = self.decrypt_blob(resource, token_id, blob)
        return RetrievedContent(data=plaintext, decrypted=True, resource=resource)
