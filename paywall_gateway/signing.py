"""
paywall_gateway.signing: signing abstraction for client-side ledger actions.

The client orchestrator signs two kinds of payloads with the account key:
request artifacts (personal messages) and ledger transactions. This module
supports multiple signing backends:
- KeypairSigner: in-process signing (dev/testing).
- ExternalCommandSigner: delegates signing to an external command, enabling
  non-exportable private keys (TPM/HSM/enclave/daemon).

Contract for ExternalCommandSigner:
- stdin: base64(intent digest) (may include trailing newline)
- stdout: base64(raw 64-byte Ed25519 signature)

All modes are fail-closed: any signer error aborts the purchase or request.
"""

from __future__ import annotations

import base64
import binascii
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .crypto import (
    ED25519_SIGNATURE_LENGTH,
    SuiKeypair,
    address_from_public_key,
    personal_message_digest,
    serialize_signature,
    transaction_digest,
)


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""

    @property
    def address(self) -> str: ...

    @property
    def public_key_bytes(self) -> bytes: ...

    def sign_personal_message(self, message: bytes) -> str: ...

    def sign_transaction(self, tx_bytes: bytes) -> str: ...


@dataclass
class KeypairSigner:
    """Signer that wraps a SuiKeypair (in-process signing)."""
    keypair: SuiKeypair

    @property
    def address(self) -> str:
        return self.keypair.address

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    def sign_personal_message(self, message: bytes) -> str:
        return self.keypair.sign_personal_message(message)

    def sign_transaction(self, tx_bytes: bytes) -> str:
        return self.keypair.sign_transaction(tx_bytes)


def _run_external_signer_cmd(*, signing_cmd: str, digest: bytes, timeout_seconds: float) -> bytes:
    """Run an external signer command for an Ed25519 signature.

    stdin: base64(digest)
    stdout: base64(signature)  (must be 64 bytes after decoding)
    """
    if not signing_cmd or not str(signing_cmd).strip():
        raise ValueError("External signer requires signing_cmd")
    digest_b64 = base64.b64encode(bytes(digest)).decode("ascii")
    try:
        proc = subprocess.run(
            shlex.split(str(signing_cmd)),
            input=(digest_b64 + "\n").encode("utf-8"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=float(timeout_seconds),
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"External signer timed out after {timeout_seconds}s") from e
    except OSError as e:
        raise RuntimeError(f"External signer failed to execute: {e}") from e

    if proc.returncode != 0:
        err = (proc.stderr or b"").decode("utf-8", errors="ignore").strip()
        raise RuntimeError(f"External signer returned code {proc.returncode}: {err}")

    out = (proc.stdout or b"").decode("utf-8", errors="ignore").strip()
    try:
        sig = base64.b64decode(out.encode("ascii"), validate=True)
    except binascii.Error as e:
        raise RuntimeError("External signer output was not valid base64(signature)") from e

    if len(sig) != ED25519_SIGNATURE_LENGTH:
        raise RuntimeError(f"External signer returned invalid Ed25519 signature length: {len(sig)} bytes")
    return sig


@dataclass
class ExternalCommandSigner:
    """Signer that delegates to an external signing command.

    This is a "hard-key seam": account keys can live outside the Python process.
    """
    public_key: bytes
    signing_cmd: str
    timeout_seconds: float = 2.0

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)

    @property
    def public_key_bytes(self) -> bytes:
        return self.public_key

    def _sign(self, digest: bytes) -> str:
        sig = _run_external_signer_cmd(
            signing_cmd=self.signing_cmd,
            digest=digest,
            timeout_seconds=self.timeout_seconds,
        )
        return serialize_signature(sig, self.public_key)

    def sign_personal_message(self, message: bytes) -> str:
        return self._sign(personal_message_digest(message))

    def sign_transaction(self, tx_bytes: bytes) -> str:
        return self._sign(transaction_digest(tx_bytes))


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, SuiKeypair):
        return KeypairSigner(obj)
    if isinstance(obj, str):
        return KeypairSigner(SuiKeypair.from_secret(obj))
    # Duck-typed
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


def build_signer_from_env(
    base_signer: Any,
    *,
    mode_env: str = "PAYWALL_SIGNER_MODE",
    cmd_env: str = "PAYWALL_SIGNER_CMD",
    timeout_env: str = "PAYWALL_SIGNER_TIMEOUT_SECONDS",
) -> Signer:
    """Build a signer based on environment configuration.

    - PAYWALL_SIGNER_MODE=file (default): use base_signer as-is.
    - PAYWALL_SIGNER_MODE=external: use ExternalCommandSigner with
      PAYWALL_SIGNER_CMD. The public key (and so the address) is taken
      from base_signer.
    """
    mode = (os.getenv(mode_env, "") or "file").strip().lower()
    s = coerce_signer(base_signer)

    if mode in ("file", "inproc", "in-process", "software"):
        return s

    if mode in ("external", "cmd", "command"):
        cmd = (os.getenv(cmd_env, "") or "").strip()
        if not cmd:
            raise RuntimeError(f"{cmd_env} must be set when {mode_env}=external")
        tout = (os.getenv(timeout_env, "") or "").strip()
        timeout = 2.0
        if tout:
            try:
                timeout = float(tout)
            except ValueError:
                raise RuntimeError(f"{timeout_env} must be a number (seconds)")
        return ExternalCommandSigner(
            public_key=s.public_key_bytes,
            signing_cmd=cmd,
            timeout_seconds=timeout,
        )

    raise RuntimeError(f"Unsupported {mode_env}={mode!r}; expected file|external")
