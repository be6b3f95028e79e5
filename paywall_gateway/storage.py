"""Blob storage access.

Endpoints are an ordered list of capability-equivalent providers. `get` tries
them in order, each with its own timeout and a small bounded retry for
retryable statuses, and falls through to the next endpoint on any failure.

Retry semantics (per endpoint):
- retryable failures: network errors, HTTP 408/429/5xx
- permanent failures: other non-2xx (e.g. 404 on this aggregator); move on
"""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import socket
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .errors import PW_E_BAD_REQUEST, PW_E_CONTENT_UNAVAILABLE, paywall_error

logger = logging.getLogger("paywall_gateway.storage")


@dataclass(frozen=True)
class BlobEndpoint:
    base_url: str
    timeout_seconds: float = 10.0

    def blob_url(self, locator: str) -> str:
        return f"{self.base_url.rstrip('/')}/v1/blobs/{urllib.parse.quote(locator, safe='')}"


class BlobStore(abc.ABC):
    @abc.abstractmethod
    def get(self, locator: str) -> bytes:
        """Fetch blob bytes. Raises PaywallError(ContentUnavailable)."""
        raise NotImplementedError

    @abc.abstractmethod
    def put(self, data: bytes, epochs: int = 1) -> str:
        """Store blob bytes and return their locator."""
        raise NotImplementedError


def _check_locator(locator: str) -> None:
    if not locator or not str(locator).strip():
        raise paywall_error(PW_E_BAD_REQUEST, "empty content locator")


class HttpBlobStore(BlobStore):
    """Walrus-style HTTP aggregators (GET) and publishers (PUT)."""

    def __init__(
        self,
        endpoints: Sequence[BlobEndpoint],
        *,
        publishers: Optional[Sequence[BlobEndpoint]] = None,
        attempts_per_endpoint: int = 2,
        backoff_seconds: float = 0.1,
    ):
        if not endpoints:
            raise ValueError("HttpBlobStore requires at least one endpoint")
        self.endpoints: List[BlobEndpoint] = list(endpoints)
        self.publishers: List[BlobEndpoint] = list(publishers or [])
        self.attempts_per_endpoint = max(1, int(attempts_per_endpoint))
        self.backoff_seconds = float(backoff_seconds)

    @classmethod
    def from_urls(cls, urls: Sequence[str], timeout_seconds: float = 10.0, **kwargs) -> "HttpBlobStore":
        return cls([BlobEndpoint(u, timeout_seconds) for u in urls], **kwargs)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status in (408, 429) or (500 <= status <= 599)

    def _get_from(self, endpoint: BlobEndpoint, locator: str) -> Optional[bytes]:
        url = endpoint.blob_url(locator)
        for attempt in range(1, self.attempts_per_endpoint + 1):
            try:
                with urllib.request.urlopen(url, timeout=endpoint.timeout_seconds) as resp:
                    return resp.read()
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                if self._is_retryable_status(status) and attempt < self.attempts_per_endpoint:
                    time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                    continue
                logger.warning("Blob endpoint %s returned HTTP %s for %s", endpoint.base_url, status, locator)
                return None
            except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
                if attempt < self.attempts_per_endpoint:
                    time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                    continue
                logger.warning("Blob endpoint %s unreachable: %s", endpoint.base_url, e)
                return None
        return None

    def get(self, locator: str) -> bytes:
        _check_locator(locator)
        for endpoint in self.endpoints:
            data = self._get_from(endpoint, locator)
            if data is not None:
                return data
        raise paywall_error(
            PW_E_CONTENT_UNAVAILABLE,
            "content unavailable from all storage endpoints",
            locator=locator,
            endpoints=len(self.endpoints),
        )

    def put(self, data: bytes, epochs: int = 1) -> str:
        if not self.publishers:
            raise paywall_error(PW_E_CONTENT_UNAVAILABLE, "no storage publishers configured", retryable=False)
        for endpoint in self.publishers:
            url = f"{endpoint.base_url.rstrip('/')}/v1/blobs?epochs={int(epochs)}"
            req = urllib.request.Request(
                url,
                data=bytes(data),
                headers={"Content-Type": "application/octet-stream"},
                method="PUT",
            )
            try:
                with urllib.request.urlopen(req, timeout=endpoint.timeout_seconds) as resp:
                    body = json.loads(resp.read().decode("utf-8"))
            except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as e:
                logger.warning("Blob publisher %s failed: %s", endpoint.base_url, e)
                continue
            locator = self._locator_from_publish(body)
            if locator:
                return locator
            logger.warning("Blob publisher %s returned no blob id", endpoint.base_url)
        raise paywall_error(PW_E_CONTENT_UNAVAILABLE, "content could not be stored", publishers=len(self.publishers))

    @staticmethod
    def _locator_from_publish(body: object) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        created = body.get("newlyCreated")
        if isinstance(created, dict):
            blob = created.get("blobObject") or {}
            if isinstance(blob, dict) and blob.get("blobId"):
                return str(blob["blobId"])
        certified = body.get("alreadyCertified")
        if isinstance(certified, dict) and certified.get("blobId"):
            return str(certified["blobId"])
        return None


class InMemoryBlobStore(BlobStore):
    """Content-addressed blob store for dev mode and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes, epochs: int = 1) -> str:
        locator = hashlib.sha256(bytes(data)).hexdigest()
        with self._lock:
            self._blobs[locator] = bytes(data)
        return locator

    def get(self, locator: str) -> bytes:
        _check_locator(locator)
        with self._lock:
            data = self._blobs.get(locator)
        if data is None:
            raise paywall_error(PW_E_CONTENT_UNAVAILABLE, "blob not found", retryable=False, locator=locator)
        return data
