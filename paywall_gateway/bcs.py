"""Minimal BCS (Binary Canonical Serialization) writer.

Only the subset needed by the gateway is implemented: ULEB128 lengths,
little-endian unsigned integers, booleans, byte vectors, UTF-8 strings and
32-byte ledger addresses. Decoding is not needed; everything we serialize is
either hashed (personal-message intent) or forwarded verbatim to an external
service (decryption authorization artifact).
"""

from __future__ import annotations

ADDRESS_LENGTH = 32


def uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError("uleb128 requires a non-negative integer")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def address_bytes(address: str) -> bytes:
    """Decode a hex address (``0x`` optional, short forms left-padded)."""
    s = (address or "").strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not s or len(s) > ADDRESS_LENGTH * 2:
        raise ValueError(f"invalid address: {address!r}")
    return bytes.fromhex(s.rjust(ADDRESS_LENGTH * 2, "0"))


class BcsWriter:
    """Append-only BCS encoder."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def u8(self, value: int) -> "BcsWriter":
        self._buf += int(value).to_bytes(1, "little")
        return self

    def u16(self, value: int) -> "BcsWriter":
        self._buf += int(value).to_bytes(2, "little")
        return self

    def u64(self, value: int) -> "BcsWriter":
        self._buf += int(value).to_bytes(8, "little")
        return self

    def bool(self, value: bool) -> "BcsWriter":
        return self.u8(1 if value else 0)

    def length(self, n: int) -> "BcsWriter":
        self._buf += uleb128(n)
        return self

    def variant(self, index: int) -> "BcsWriter":
        return self.length(index)

    def raw(self, data: bytes) -> "BcsWriter":
        self._buf += bytes(data)
        return self

    def bytes(self, data: bytes) -> "BcsWriter":
        data = bytes(data)
        return self.length(len(data)).raw(data)

    def string(self, value: str) -> "BcsWriter":
        return self.bytes(value.encode("utf-8"))

    def address(self, value: str) -> "BcsWriter":
        return self.raw(address_bytes(value))

    def to_bytes(self) -> bytes:
        return bytes(self._buf)


def serialize_bytes(data: bytes) -> bytes:
    """BCS encoding of ``vector<u8>``."""
    return BcsWriter().bytes(data).to_bytes()
