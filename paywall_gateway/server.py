"""
Paywall Gateway Server

FastAPI-based enforcement point in front of ledger-registered content.

Per request:
- no proof headers      -> 402 with a fresh payment challenge
- proof present, denied -> 403 {"error": "AccessDenied", "reason": <reason>}
- granted               -> 200 with the blob (decrypted when configured)

Security Properties:
- Every decision is made from a fresh ledger read; grants are never cached
- 402 is reserved for "no proof at all"; a presented proof is never answered
  with a new challenge
- Upstream failures map to 5xx without RPC endpoints or upstream bodies
- The gateway holds no account keys
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .challenge import ChallengeGenerator
from .config import GatewayConfig
from .decryption import DecryptionService, HttpDecryptionService, InMemoryDecryptionService
from .errors import (
    PW_E_CONTENT_UNAVAILABLE,
    PW_E_LEDGER_UNAVAILABLE,
    PW_E_RESOURCE_NOT_FOUND,
    PaywallError,
    paywall_error,
)
from .ledger import InMemoryLedger, LedgerClient, SuiLedgerClient
from .metrics import (
    instrument_fastapi,
    observe_upstream,
    record_access_decision,
    record_challenge,
    record_consume,
    record_content_fetch,
)
from .models import (
    HEADER_CONTENT_DECRYPTED,
    HEADER_CONTENT_LOCATOR,
    HEADER_DECRYPTION_POLICY,
    HEADER_RESOURCE_ENTRY_ID,
    HEADER_USAGE_ACCOUNTING,
    RequestArtifact,
    normalize_resource_path,
)
from .retriever import ContentRetriever
from .signature import SignatureVerifier
from .storage import BlobStore, HttpBlobStore, InMemoryBlobStore
from .verifier import AccessVerifier

logger = logging.getLogger("paywall_gateway.server")


# ---------------------------
# Response Models
# ---------------------------

class HealthResponse(BaseModel):
    status: str
    domain: str
    ledger: str
    server_side_decrypt: bool


class ErrorResponse(BaseModel):
    error: str
    reason: str
    message: str
    retryable: bool = False


@dataclass
class GatewayResponse:
    status: int
    body: Union[Dict[str, Any], bytes]
    headers: Dict[str, str] = field(default_factory=dict)
    media_type: str = "application/json"
    # (token_id, artifact) to consume after the response is sent
    consume: Optional[Tuple[str, RequestArtifact]] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class PaywallGateway:
    """Stateless per-request enforcement over a ledger, a blob store and an
    optional decryption service."""

    def __init__(
        self,
        config: GatewayConfig,
        ledger: LedgerClient,
        blob_store: BlobStore,
        decryption: Optional[DecryptionService] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.blob_store = blob_store
        self.decryption = decryption
        self.clock = clock or _now_ms
        self.challenges = ChallengeGenerator(config.contract)
        self.verifier = AccessVerifier(ledger, SignatureVerifier(config.freshness_window_ms))
        self.retriever = ContentRetriever(ledger, blob_store, config.contract, decryption)

        # Overall deadlines for work done in worker threads: every attempt may
        # time out, plus the backoff between attempts.
        attempts = max(1, config.ledger_max_attempts)
        self.ledger_deadline = attempts * config.ledger_timeout_seconds + \
            config.ledger_backoff_seconds * (2 ** attempts)
        self.content_deadline = max(1, len(config.blob_endpoints)) * 2 * config.blob_timeout_seconds + \
            2 * self.ledger_deadline

    async def _in_thread(
        self, upstream: str, deadline: float, timeout_code: str, fn: Callable, *args: Any, **kwargs: Any
    ) -> Any:
        start = time.monotonic()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise paywall_error(timeout_code, "upstream call timed out", retryable=True,
                                http_status=503) from e
        finally:
            observe_upstream(upstream, time.monotonic() - start)

    @property
    def decrypts(self) -> bool:
        return bool(self.config.server_side_decrypt and self.decryption is not None)

    async def handle(self, domain: str, resource_path: str, headers: Mapping[str, str]) -> GatewayResponse:
        path = normalize_resource_path(resource_path)
        resource = await self._in_thread(
            "resolve", self.ledger_deadline, PW_E_RESOURCE_NOT_FOUND, self.ledger.lookup_resource, domain, path
        )

        artifact = RequestArtifact.from_headers(headers)
        if artifact is None:
            challenge = self.challenges.generate(resource)
            record_challenge()
            return GatewayResponse(status=402, body=challenge.to_body())

        result = await self._in_thread(
            "verify", self.ledger_deadline, PW_E_LEDGER_UNAVAILABLE,
            self.verifier.verify, resource, artifact, self.clock(),
        )
        if not result.granted:
            reason = result.reason.value
            record_access_decision("denied", reason)
            logger.info("Denied %s%s for token %s: %s", domain, path, artifact.token_id, reason)
            return GatewayResponse(status=403, body={"error": "AccessDenied", "reason": reason})
        record_access_decision("granted")

        try:
            content = await self._in_thread(
                "content",
                self.content_deadline,
                PW_E_CONTENT_UNAVAILABLE,
                self.retriever.retrieve,
                resource,
                artifact.token_id,
                decrypt=self.decrypts,
            )
        except PaywallError as e:
            record_content_fetch(e.code)
            logger.warning("Content retrieval failed for %s%s: %s", domain, path, e)
            raise
        record_content_fetch("ok")

        headers = {
            HEADER_RESOURCE_ENTRY_ID: resource.entry_id,
            HEADER_CONTENT_LOCATOR: resource.content_locator,
            HEADER_DECRYPTION_POLICY: resource.decryption_policy_id,
            HEADER_CONTENT_DECRYPTED: "true" if content.decrypted else "false",
        }
        consume = None
        # Delegated consumption only; otherwise the owner consumes with its own key.
        if self.config.consume_after_delivery and self.ledger.accepts_delegated_consume:
            consume = (artifact.token_id, artifact)
            headers[HEADER_USAGE_ACCOUNTING] = "gateway"
        return GatewayResponse(
            status=200,
            body=content.data,
            media_type="application/octet-stream",
            headers=headers,
            consume=consume,
        )

    def consume_after_delivery(self, token_id: str, artifact: RequestArtifact) -> None:
        """Best-effort usage accounting; never affects the response already sent."""
        try:
            remaining = self.ledger.consume_token(token_id, artifact)
        except PaywallError as e:
            record_consume(e.code)
            logger.warning("Best-effort consume of %s failed: %s", token_id, e)
            return
        record_consume("ok")
        logger.debug("Consumed %s, %d use(s) remaining", token_id, remaining)


def build_gateway_from_env() -> PaywallGateway:
    config = GatewayConfig.from_env()
    if config.dev_mode:
        logger.warning("PAYWALL_DEV_MODE enabled: using in-memory ledger, blob store and decryption")
        return PaywallGateway(config, InMemoryLedger(), InMemoryBlobStore(), InMemoryDecryptionService())

    ledger = SuiLedgerClient(
        config.rpc_url,
        config.contract,
        resource_entries=config.resource_entries,
        timeout_seconds=config.ledger_timeout_seconds,
        max_attempts=config.ledger_max_attempts,
        backoff_seconds=config.ledger_backoff_seconds,
    )
    blob_store = HttpBlobStore.from_urls(config.blob_endpoints, timeout_seconds=config.blob_timeout_seconds)
    decryption = HttpDecryptionService(config.decryption_url) if config.decryption_url else None
    if config.server_side_decrypt and decryption is None:
        raise RuntimeError("PAYWALL_SERVER_SIDE_DECRYPT requires PAYWALL_DECRYPTION_URL")
    return PaywallGateway(config, ledger, blob_store, decryption)


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[PaywallGateway] = None) -> FastAPI:
    """Create FastAPI application with the protected content route."""
    from . import __version__

    if gateway is None:
        gateway = build_gateway_from_env()

    app = FastAPI(
        title="Paywall Gateway",
        description="Capability-gated access to ledger-registered content",
        version=__version__,
    )
    app.state.gateway = gateway

    @app.exception_handler(PaywallError)
    async def _paywall_error_handler(request: Request, exc: PaywallError):
        status = int(exc.http_status or 500)
        if status >= 500:
            logger.warning("Upstream failure on %s: %s %s", request.url.path, exc, exc.details)
        body = ErrorResponse(error=exc.code, reason=exc.code, message=exc.message, retryable=exc.retryable)
        return JSONResponse(status_code=status, content=body.model_dump())

    # Request body size limit (best-effort, checks Content-Length).
    max_request_bytes = gateway.config.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        try:
            cl = req.headers.get("content-length")
            if cl is not None and int(cl) > max_request_bytes:
                return JSONResponse(status_code=413, content={"error": "RequestTooLarge"})
        except ValueError:
            # If malformed, fail-closed.
            return JSONResponse(status_code=400, content={"error": "BadContentLength"})
        return await call_next(req)

    @app.get("/v1/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            domain=gateway.config.domain,
            ledger=type(gateway.ledger).__name__,
            server_side_decrypt=gateway.decrypts,
        )

    # /metrics must be registered before the catch-all route.
    metrics_token = (os.getenv("PAYWALL_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    @app.get("/{resource_path:path}")
    async def protected_content(resource_path: str, request: Request, background_tasks: BackgroundTasks):
        result = await gateway.handle(gateway.config.domain, "/" + resource_path, request.headers)
        if result.consume is not None:
            background_tasks.add_task(gateway.consume_after_delivery, *result.consume)
        if isinstance(result.body, (bytes, bytearray)):
            return Response(
                content=bytes(result.body),
                status_code=result.status,
                media_type=result.media_type,
                headers=result.headers,
            )
        return JSONResponse(status_code=result.status, content=result.body, headers=result.headers)

    return app


def main():
    """
    Main entry point for paywall-gateway CLI.

    Usage:
        paywall-gateway                    # Start on default port 8000
        paywall-gateway --port 9000        # Start on custom port
        paywall-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Paywall Gateway - capability-gated content server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    PAYWALL_DOMAIN              Domain this gateway protects
    PAYWALL_RPC_URL             Ledger JSON-RPC endpoint
    PAYWALL_CONTRACT_JSON       Contract identifiers (or PAYWALL_CONTRACT_FILE)
    PAYWALL_BLOB_ENDPOINTS      Comma-separated blob aggregator URLs
    PAYWALL_DECRYPTION_URL      Decryption service base URL
    PAYWALL_DEV_MODE            1 to use in-memory backends
    PAYWALL_PROXY_HEADERS       1 to trust X-Forwarded-* headers (reverse proxy)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    import uvicorn

    app = create_app()
    print(f"Starting Paywall Gateway on {args.host}:{args.port}")
    print(f"  Domain: {app.state.gateway.config.domain}")
    print("  Endpoints:")
    print("    GET /v1/health        - Health check")
    print("    GET /metrics          - Prometheus metrics")
    print("    GET /<resource path>  - Protected content (402 / 403 / 200)")
    print()

    env_proxy = (os.getenv("PAYWALL_PROXY_HEADERS", "") or "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes", "on")
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
