"""
Client orchestrator: pays for and fetches protected content.

fetch(url) runs an explicit pipeline, each stage with its own failure mode:

    Challenge   (402 body parsed, or the request was not paywalled)
    -> TokenId  (cached or discovered pass re-checked on the ledger, or a new purchase)
    -> SignedArtifact (fresh timestamp, personal-message signature)
    -> Response (200 content; 403 raises AccessDenied, never retried)

Purchases are serialised per signer address so that concurrent fetches do
not select the same payment object. Nothing is retried implicitly: a failed
or timed-out purchase surfaces to the caller, and the next fetch starts
from a fresh challenge (and so a fresh nonce).
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Tuple

from .challenge import price_to_smallest_unit
from .config import ContractIdentifiers
from .crypto import addresses_equal, canonical_request_message
from .decryption import DecryptionService
from .errors import (
    DEFAULT_HTTP_STATUS,
    PW_E_BAD_REQUEST,
    PW_E_CONTENT_UNAVAILABLE,
    PW_E_INTERNAL,
    PW_E_MISSING_PROOF,
    PW_E_PAYMENT_REJECTED,
    AccessDenied,
    DenialReason,
    PaywallError,
    paywall_error,
)
from .ledger import LedgerClient, PaymentProof
from .models import (
    HEADER_CONTENT_DECRYPTED,
    HEADER_RESOURCE_ENTRY_ID,
    HEADER_USAGE_ACCOUNTING,
    CapabilityToken,
    FetchResult,
    PaymentChallenge,
    RequestArtifact,
    normalize_resource_path,
)
from .retriever import ContentRetriever
from .signing import Signer, coerce_signer

logger = logging.getLogger("paywall_gateway.client")

DEFAULT_USES = 10
DEFAULT_GAS_BUFFER = 10_000_000


@dataclass
class HttpResponse:
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> object:
        return json.loads(self.body.decode("utf-8"))


class Transport(Protocol):
    def get(self, url: str, headers: Dict[str, str]) -> HttpResponse:
        ...


class UrllibTransport:
    """Plain HTTP GET over urllib. Non-2xx statuses are returned, not raised."""

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = float(timeout_seconds)

    def get(self, url: str, headers: Dict[str, str]) -> HttpResponse:
        req = urllib.request.Request(url, headers=dict(headers), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                return HttpResponse(
                    status=int(getattr(resp, "status", 200)),
                    body=resp.read(),
                    headers={k.lower(): v for k, v in resp.headers.items()},
                )
        except urllib.error.HTTPError as e:
            return HttpResponse(
                status=int(e.code),
                body=e.read() or b"",
                headers={k.lower(): v for k, v in (e.headers or {}).items()},
            )
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise paywall_error(PW_E_CONTENT_UNAVAILABLE, "gateway unreachable", url=url, error=str(e)) from e


class TokenCache:
    """Best-effort local memory of purchased passes.

    Never authoritative: every hit is re-read from the ledger before use.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str, str], str] = {}

    @staticmethod
    def _key(owner: str, domain: str, resource_path: str) -> Tuple[str, str, str]:
        return owner.lower(), domain, resource_path

    def get(self, owner: str, domain: str, resource_path: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(self._key(owner, domain, resource_path))

    def put(self, owner: str, domain: str, resource_path: str, token_id: str) -> None:
        with self._lock:
            self._entries[self._key(owner, domain, resource_path)] = token_id

    def drop(self, owner: str, domain: str, resource_path: str) -> None:
        with self._lock:
            self._entries.pop(self._key(owner, domain, resource_path), None)


_SIGNER_LOCKS: Dict[str, threading.Lock] = {}
_SIGNER_LOCKS_GUARD = threading.Lock()


def signer_lock(address: str) -> threading.Lock:
    """Process-wide lock serialising payment-object use for one address."""
    key = address.lower()
    with _SIGNER_LOCKS_GUARD:
        lock = _SIGNER_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _SIGNER_LOCKS[key] = lock
        return lock


def _now_ms() -> int:
    return int(time.time() * 1000)


class PaywallClient:
    def __init__(
        self,
        signer: object,
        ledger: LedgerClient,
        transport: Optional[Transport] = None,
        token_cache: Optional[TokenCache] = None,
        *,
        default_uses: int = DEFAULT_USES,
        default_expiry_ms: int = 0,
        gas_buffer: int = DEFAULT_GAS_BUFFER,
        consume_after_access: bool = True,
        decryption: Optional[DecryptionService] = None,
        contract: Optional[ContractIdentifiers] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.signer: Signer = coerce_signer(signer)
        self.ledger = ledger
        self.transport: Transport = transport or UrllibTransport()
        self.token_cache = token_cache or TokenCache()
        self.default_uses = int(default_uses)
        self.default_expiry_ms = int(default_expiry_ms)
        self.gas_buffer = int(gas_buffer)
        self.consume_after_access = bool(consume_after_access)
        self.decryption = decryption
        self.contract = contract
        self.clock = clock or _now_ms

    @property
    def address(self) -> str:
        return self.signer.address

    # -- pipeline stages -------------------------------------------------------

    @staticmethod
    def parse_challenge(response: HttpResponse) -> PaymentChallenge:
        try:
            return PaymentChallenge.from_body(response.json())
        except ValueError as e:
            raise paywall_error(PW_E_BAD_REQUEST, f"malformed payment challenge: {e}") from e

    def _usable(self, token: Optional[CapabilityToken], challenge: PaymentChallenge) -> bool:
        return (
            token is not None
            and addresses_equal(token.owner, self.address)
            and token.domain == challenge.domain
            and normalize_resource_path(token.resource_path) == normalize_resource_path(challenge.resource_path)
            and token.is_usable(self.clock())
        )

    def _cached_token(self, challenge: PaymentChallenge) -> Optional[str]:
        token_id = self.token_cache.get(self.address, challenge.domain, challenge.resource_path)
        if not token_id:
            return None
        if self._usable(self.ledger.fetch_token(token_id), challenge):
            return token_id
        self.token_cache.drop(self.address, challenge.domain, challenge.resource_path)
        return None

    def discover_token(self, challenge: PaymentChallenge) -> Optional[str]:
        """Find a usable pass this address bought earlier, possibly in another process."""
        try:
            tokens = self.ledger.find_tokens(self.address, challenge.domain, challenge.resource_path)
        except PaywallError as e:
            logger.warning("Access pass discovery failed for %s%s: %s", challenge.domain, challenge.resource_path, e)
            return None
        for token in tokens:
            if self._usable(token, challenge):
                self.token_cache.put(self.address, challenge.domain, challenge.resource_path, token.token_id)
                return token.token_id
        return None

    def select_payment_object(self, amount: int) -> str:
        """Exact-value object, else split a larger one, else PaymentRejected.

        Must be called with the signer lock held.
        """
        objects = self.ledger.list_payment_objects(self.address)
        for obj in objects:
            if obj.value == amount:
                return obj.object_id
        for obj in sorted(objects, key=lambda o: o.value):
            if obj.value >= amount + self.gas_buffer:
                logger.info("Splitting %d from payment object %s", amount, obj.object_id)
                return self.ledger.split_payment_object(self.signer, obj.object_id, amount)
        total = sum(o.value for o in objects)
        raise paywall_error(
            PW_E_PAYMENT_REJECTED,
            "insufficient balance for purchase",
            required=amount,
            gas_buffer=self.gas_buffer,
            available=total,
        )

    def acquire_token(self, challenge: PaymentChallenge) -> str:
        cached = self._cached_token(challenge)
        if cached:
            logger.info("Reusing access pass %s for %s%s", cached, challenge.domain, challenge.resource_path)
            return cached

        with signer_lock(self.address):
            # A concurrent fetch may have bought one while we waited.
            cached = self._cached_token(challenge) or self.discover_token(challenge)
            if cached:
                logger.info("Using existing access pass %s for %s%s", cached, challenge.domain, challenge.resource_path)
                return cached

            resource = self.ledger.lookup_resource(challenge.domain, challenge.resource_path)
            if not addresses_equal(resource.receiver_address, challenge.receiver_address):
                raise paywall_error(PW_E_PAYMENT_REJECTED, "challenge receiver does not match ledger record")
            if price_to_smallest_unit(resource.price) != challenge.price_in_smallest_unit:
                raise paywall_error(PW_E_PAYMENT_REJECTED, "challenge price does not match ledger record")

            payment_object_id = self.select_payment_object(challenge.price_in_smallest_unit)
            token_id = self.ledger.purchase_token(
                resource,
                PaymentProof(payer=self.signer, payment_object_id=payment_object_id),
                self.default_uses,
                self.default_expiry_ms,
                challenge.nonce,
            )
            self.token_cache.put(self.address, challenge.domain, challenge.resource_path, token_id)
            return token_id

    def sign_request(self, token_id: str, domain: str, resource_path: str) -> RequestArtifact:
        timestamp = str(self.clock())
        message = canonical_request_message(token_id, domain, resource_path, timestamp)
        return RequestArtifact(
            token_id=token_id,
            signer_address=self.address,
            signature=self.signer.sign_personal_message(message),
            timestamp=timestamp,
        )

    # -- fetch -----------------------------------------------------------------

    def fetch(self, url: str) -> FetchResult:
        first = self.transport.get(url, {})
        if first.status != 402:
            return self._finish(first, None, None)

        challenge = self.parse_challenge(first)
        token_id = self.acquire_token(challenge)
        artifact = self.sign_request(token_id, challenge.domain, challenge.resource_path)
        response = self.transport.get(url, artifact.to_headers())
        return self._finish(response, token_id, challenge)

    def _finish(
        self,
        response: HttpResponse,
        token_id: Optional[str],
        challenge: Optional[PaymentChallenge],
    ) -> FetchResult:
        if response.status == 403:
            if challenge is not None:
                self.token_cache.drop(self.address, challenge.domain, challenge.resource_path)
            raise self._denial(response)

        if response.status == 402:
            # The gateway answers 402 only when no proof was sent at all.
            raise paywall_error(PW_E_MISSING_PROOF, "gateway did not accept the access proof headers",
                                retryable=False)

        if response.status >= 400:
            raise self._upstream_error(response)

        result = FetchResult(
            status=response.status,
            content=response.body,
            headers=dict(response.headers),
            token_id=token_id,
            resource_entry_id=response.headers.get(HEADER_RESOURCE_ENTRY_ID),
            decrypted=response.headers.get(HEADER_CONTENT_DECRYPTED) == "true",
        )
        if token_id is None:
            return result

        if self.consume_after_access and response.headers.get(HEADER_USAGE_ACCOUNTING) != "gateway":
            try:
                remaining = self.ledger.consume_token(token_id, self.signer)
                logger.info("Consumed access pass %s, %d use(s) remaining", token_id, remaining)
            except PaywallError as e:
                logger.warning("Failed to consume access pass %s: %s", token_id, e)

        if self.decryption is not None and not result.decrypted and result.resource_entry_id:
            result.content = self._decrypt(result.resource_entry_id, token_id, result.content)
            result.decrypted = True
        return result

    def _decrypt(self, entry_id: str, token_id: str, blob: bytes) -> bytes:
        resource = self.ledger.get_resource(entry_id)
        if resource is None:
            raise paywall_error(PW_E_BAD_REQUEST, "gateway returned an unknown resource entry id", entry_id=entry_id)
        if self.contract is None:
            raise paywall_error(PW_E_BAD_REQUEST, "client decryption requires contract identifiers")
        retriever = ContentRetriever(self.ledger, None, self.contract, self.decryption)
        return retriever.decrypt_blob(resource, token_id, blob)

    @staticmethod
    def _body_dict(response: HttpResponse) -> Dict[str, object]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _denial(self, response: HttpResponse) -> AccessDenied:
        raw = str(self._body_dict(response).get("reason") or "")
        try:
            reason = DenialReason(raw)
        except ValueError:
            reason = DenialReason.BAD_SIGNATURE
            logger.warning("Gateway returned unknown denial reason %r", raw)
        return AccessDenied(reason)

    def _upstream_error(self, response: HttpResponse) -> PaywallError:
        code = str(self._body_dict(response).get("error") or "")
        if code not in DEFAULT_HTTP_STATUS:
            code = PW_E_INTERNAL
        return paywall_error(
            code,
            f"gateway returned HTTP {response.status}",
            retryable=response.status >= 500,
            http_status=response.status,
        )


def main():
    """
    paywall-fetch: fetch a paywalled URL, paying for access when needed.

    The account key is read from PAYWALL_CLIENT_KEY or --key-file
    (suiprivkey1..., hex, or base64).
    """
    import argparse
    import sys

    from .config import DEFAULT_RPC_URL
    from .ledger import SuiLedgerClient
    from .signing import build_signer_from_env

    parser = argparse.ArgumentParser(description="Fetch paywalled content, purchasing an access pass if required")
    parser.add_argument("url", help="URL of the protected resource")
    parser.add_argument("--key-file", default=None, help="File containing the account private key")
    parser.add_argument("--rpc-url", default=os.getenv("PAYWALL_RPC_URL", DEFAULT_RPC_URL))
    parser.add_argument("--uses", type=int, default=DEFAULT_USES, help="Uses to buy per pass (default: 10)")
    parser.add_argument("--expiry-ms", type=int, default=0, help="Absolute pass expiry in ms (default: never)")
    parser.add_argument("--no-consume", action="store_true", help="Do not consume a use after access")
    parser.add_argument("-o", "--output", default=None, help="Write content to this file (default: stdout)")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    secret = (os.getenv("PAYWALL_CLIENT_KEY", "") or "").strip()
    if args.key_file:
        with open(args.key_file, "r", encoding="utf-8") as f:
            secret = f.read().strip()
    if not secret:
        print("ERROR: set PAYWALL_CLIENT_KEY or pass --key-file", file=sys.stderr)
        return 2

    signer = build_signer_from_env(secret)
    contract = ContractIdentifiers.from_env()
    ledger = SuiLedgerClient(args.rpc_url, contract)
    client = PaywallClient(
        signer,
        ledger,
        default_uses=args.uses,
        default_expiry_ms=args.expiry_ms,
        consume_after_access=not args.no_consume,
        contract=contract,
    )

    try:
        result = client.fetch(args.url)
    except AccessDenied as e:
        print(f"Access denied: {e.reason.value}", file=sys.stderr)
        return 3
    except PaywallError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"HTTP {result.status}  pass={result.token_id}  entry={result.resource_entry_id}", file=sys.stderr)
    if args.output:
        with open(args.output, "wb") as f:
            f.write(result.content)
    else:
        sys.stdout.buffer.write(result.content)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
