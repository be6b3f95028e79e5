"""
Ledger-native cryptography for the paywall gateway.

The ledger (Sui) authenticates accounts with Ed25519 keys:

- address   = blake2b-256(flag || public_key), flag 0x00 for Ed25519
- signature = base64(flag || ed25519_signature[64] || public_key[32])
- the signed digest is blake2b-256(intent || payload), where the intent is
  [3, 0, 0] for personal messages (payload = BCS vector<u8>) and [0, 0, 0]
  for transaction data (payload = raw transaction bytes).

Request artifacts presented to the gateway are personal-message signatures
over `canonical_request_message(...)`. Verification is always full
cryptographic verification; there is no format-only acceptance path.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import bech32
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)

from .bcs import serialize_bytes

ED25519_FLAG = 0x00
ED25519_SIGNATURE_LENGTH = 64
ED25519_PUBLIC_KEY_LENGTH = 32
SERIALIZED_SIGNATURE_LENGTH = 1 + ED25519_SIGNATURE_LENGTH + ED25519_PUBLIC_KEY_LENGTH

SUI_PRIVATE_KEY_PREFIX = "suiprivkey"

INTENT_TRANSACTION = bytes([0, 0, 0])
INTENT_PERSONAL_MESSAGE = bytes([3, 0, 0])

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(bytes(data), digest_size=32).digest()


def is_valid_address(address: Optional[str]) -> bool:
    """Ledger addresses and object ids are 0x + 64 hex characters."""
    return bool(address) and bool(_ADDRESS_RE.match(str(address)))


def normalize_address(address: str) -> str:
    """Lower-case, 0x-prefixed, left-padded to 32 bytes."""
    s = (address or "").strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not s or len(s) > 64 or any(c not in "0123456789abcdef" for c in s):
        raise ValueError(f"invalid address: {address!r}")
    return "0x" + s.rjust(64, "0")


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison. Malformed input never matches."""
    if not a or not b:
        return False
    try:
        return normalize_address(a) == normalize_address(b)
    except ValueError:
        return False


def address_from_public_key(public_key: bytes, flag: int = ED25519_FLAG) -> str:
    return "0x" + blake2b256(bytes([flag]) + bytes(public_key)).hex()


def personal_message_digest(message: bytes) -> bytes:
    return blake2b256(INTENT_PERSONAL_MESSAGE + serialize_bytes(message))


def transaction_digest(tx_bytes: bytes) -> bytes:
    return blake2b256(INTENT_TRANSACTION + bytes(tx_bytes))


def canonical_request_message(token_id: str, domain: str, resource_path: str, timestamp: str) -> bytes:
    """Deterministic message signed by clients for each request.

    Compact JSON with a fixed key order: passId, domain, resource, ts.
    """
    return json.dumps(
        {"passId": token_id, "domain": domain, "resource": resource_path, "ts": timestamp},
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def serialize_signature(signature: bytes, public_key: bytes, flag: int = ED25519_FLAG) -> str:
    return base64.b64encode(bytes([flag]) + bytes(signature) + bytes(public_key)).decode("ascii")


def parse_serialized_signature(serialized: Union[str, bytes]) -> Tuple[int, bytes, bytes]:
    """Split a serialized signature into (flag, signature, public_key).

    Accepts the base64 text form or the already-decoded bytes. Raises
    ValueError on malformed base64, wrong length, or a scheme other than
    Ed25519.
    """
    if isinstance(serialized, (bytes, bytearray)):
        raw = bytes(serialized)
    else:
        if not serialized or not str(serialized).strip():
            raise ValueError("signature is empty")
        try:
            raw = base64.b64decode(str(serialized).strip().encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError("signature is not valid base64") from e
    if len(raw) != SERIALIZED_SIGNATURE_LENGTH:
        raise ValueError(f"signature has invalid length: {len(raw)} bytes")
    flag = raw[0]
    if flag != ED25519_FLAG:
        raise ValueError(f"unsupported signature scheme flag: {flag}")
    sig = raw[1:1 + ED25519_SIGNATURE_LENGTH]
    pk = raw[1 + ED25519_SIGNATURE_LENGTH:]
    return flag, sig, pk


def _verify_digest(public_key: bytes, digest: bytes, signature: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, digest)
        return True
    except InvalidSignature:
        return False
    except ValueError:
        return False


def verify_personal_message(message: bytes, serialized_signature: Union[str, bytes]) -> str:
    """Verify a personal-message signature and return the signer address.

    Raises ValueError if the signature is malformed or does not verify.
    """
    flag, sig, pk = parse_serialized_signature(serialized_signature)
    if not _verify_digest(pk, personal_message_digest(message), sig):
        raise ValueError("signature verification failed")
    return address_from_public_key(pk, flag)


@dataclass
class SuiKeypair:
    """
    Ed25519 account key pair.

    SECURITY: Gateways never hold account keys. Key pairs are only used by
    the client orchestrator (and tests) to pay for and sign requests.
    """
    private_key_bytes: bytes
    public_key_bytes: bytes

    @classmethod
    def generate(cls) -> "SuiKeypair":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(private_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "SuiKeypair":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(Ed25519PrivateKey.from_private_bytes(bytes(seed)))

    @classmethod
    def _from_private_key(cls, private_key: Ed25519PrivateKey) -> "SuiKeypair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        return cls(private_key_bytes=private_bytes, public_key_bytes=public_bytes)

    @classmethod
    def from_secret(cls, secret: str) -> "SuiKeypair":
        """Load a key from `suiprivkey1...` (bech32), base64, or hex."""
        s = (secret or "").strip()
        if not s:
            raise ValueError("empty private key")

        if s.startswith(SUI_PRIVATE_KEY_PREFIX):
            hrp, words = bech32.bech32_decode(s)
            if hrp != SUI_PRIVATE_KEY_PREFIX or words is None:
                raise ValueError("invalid suiprivkey encoding")
            decoded = bech32.convertbits(words, 5, 8, False)
            if not decoded or len(decoded) != 33:
                raise ValueError("invalid suiprivkey payload")
            if decoded[0] != ED25519_FLAG:
                raise ValueError(f"unsupported key scheme flag: {decoded[0]}")
            return cls.from_seed(bytes(decoded[1:]))

        hex_candidate = s[2:] if s.lower().startswith("0x") else s
        if len(hex_candidate) == 64 and all(c in "0123456789abcdefABCDEF" for c in hex_candidate):
            return cls.from_seed(bytes.fromhex(hex_candidate))

        try:
            raw = base64.b64decode(s, validate=True)
        except binascii.Error as e:
            raise ValueError("Unsupported private key format; expected suiprivkey1..., base64, or hex") from e
        # Legacy keystore entries carry a leading scheme flag.
        if len(raw) == 33 and raw[0] == ED25519_FLAG:
            raw = raw[1:]
        return cls.from_seed(raw[:32] if len(raw) == 64 else raw)

    def export_secret(self) -> str:
        """Export as `suiprivkey1...` (bech32 with scheme flag)."""
        words = bech32.convertbits(bytes([ED25519_FLAG]) + self.private_key_bytes, 8, 5)
        return bech32.bech32_encode(SUI_PRIVATE_KEY_PREFIX, words)

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key_bytes)

    def sign_digest(self, digest: bytes) -> bytes:
        """Raw Ed25519 signature over an intent digest."""
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(bytes(digest))

    def sign_personal_message(self, message: bytes) -> str:
        sig = self.sign_digest(personal_message_digest(message))
        return serialize_signature(sig, self.public_key_bytes)

    def sign_transaction(self, tx_bytes: bytes) -> str:
        sig = self.sign_digest(transaction_digest(tx_bytes))
        return serialize_signature(sig, self.public_key_bytes)
