"""Paywall gateway package.

This package puts ledger-registered content behind capability tokens:

- HTTP 402 payment challenges for requests without proof
- Access passes purchased on the ledger, checked fresh on every request
- Ed25519 request signatures bound to (pass, domain, resource, timestamp)
- Encrypted blobs fetched from blob storage, optionally decrypted server-side

Convenience imports
------------------
The package avoids heavy import-time side effects. For convenience, these
are available as top-level imports:

    from paywall_gateway import PaywallGateway, create_app, PaywallClient

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "PaywallGateway",
    "create_app",
    "PaywallClient",
    "AccessVerifier",
    "SuiLedgerClient",
    "InMemoryLedger",
    "PaywallError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "PaywallGateway": ("paywall_gateway.server", "PaywallGateway"),
    "create_app": ("paywall_gateway.server", "create_app"),
    "PaywallClient": ("paywall_gateway.client", "PaywallClient"),
    "AccessVerifier": ("paywall_gateway.verifier", "AccessVerifier"),
    "SuiLedgerClient": ("paywall_gateway.ledger", "SuiLedgerClient"),
    "InMemoryLedger": ("paywall_gateway.ledger", "InMemoryLedger"),
    "PaywallError": ("paywall_gateway.errors", "PaywallError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'paywall_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    # Include lazy exports for IDE/autocomplete.
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
