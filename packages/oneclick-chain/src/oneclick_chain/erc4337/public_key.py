"""Passkey public key decoding.

Public keys arrive in one of three shapes and are decoded exactly once, at
the boundary, into the canonical 64-byte ``x || y`` form used everywhere
else (salt derivation, account creation, address prediction).
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from ..exceptions import InvalidPublicKey

COORDINATE_LENGTH = 32
PUBLIC_KEY_LENGTH = 2 * COORDINATE_LENGTH

# COSE_Key labels (RFC 9053)
COSE_X = -2
COSE_Y = -3


class PublicKeyFormat(str, Enum):
    RAW = "raw"                      # 64 bytes x||y, or 65 bytes 0x04||x||y
    COSE = "cose"                    # CBOR-encoded COSE_Key map
    LEGACY_BASE64 = "legacy_base64"  # base64 of JSON {"x": b64url, "y": b64url}


@dataclass(frozen=True)
class PublicKey:
    """Uncompressed P-256 point without the 0x04 prefix."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != PUBLIC_KEY_LENGTH:
            raise InvalidPublicKey(
                f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(self.raw)}",
                field="public_key",
            )

    @property
    def x(self) -> bytes:
        return self.raw[:COORDINATE_LENGTH]

    @property
    def y(self) -> bytes:
        return self.raw[COORDINATE_LENGTH:]

    def to_hex(self) -> str:
        return "0x" + self.raw.hex()


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise InvalidPublicKey(f"Public key is not valid hex: {e}", field="public_key") from e


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
    except (binascii.Error, ValueError) as e:
        raise InvalidPublicKey(f"Invalid base64 in public key: {e}", field="public_key") from e


def _decode_raw(data: bytes) -> bytes:
    if len(data) == PUBLIC_KEY_LENGTH + 1 and data[0] == 0x04:
        return data[1:]
    if len(data) == PUBLIC_KEY_LENGTH:
        return data
    raise InvalidPublicKey(
        f"Raw public key must be 64 bytes (or 65 with 0x04 prefix), got {len(data)}",
        field="public_key",
    )


class _CborReader:
    """Just enough CBOR to walk a COSE_Key map."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def _take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise InvalidPublicKey("Truncated COSE key", field="public_key")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def _argument(self, info: int) -> int:
        if info < 24:
            return info
        sizes = {24: 1, 25: 2, 26: 4, 27: 8}
        if info not in sizes:
            raise InvalidPublicKey("Unsupported CBOR length encoding", field="public_key")
        return int.from_bytes(self._take(sizes[info]), "big")

    def read(self) -> Any:
        initial = self._take(1)[0]
        major, info = initial >> 5, initial & 0x1F
        if major == 0:
            return self._argument(info)
        if major == 1:
            return -1 - self._argument(info)
        if major == 2:
            return self._take(self._argument(info))
        if major == 3:
            return self._take(self._argument(info)).decode("utf-8", errors="replace")
        if major == 4:
            return [self.read() for _ in range(self._argument(info))]
        if major == 5:
            result = {}
            for _ in range(self._argument(info)):
                key = self.read()
                result[key] = self.read()
            return result
        raise InvalidPublicKey(f"Unsupported CBOR major type {major}", field="public_key")


def _decode_cose(data: bytes) -> bytes:
    cose_map = _CborReader(data).read()
    if not isinstance(cose_map, dict):
        raise InvalidPublicKey("COSE key is not a CBOR map", field="public_key")
    x, y = cose_map.get(COSE_X), cose_map.get(COSE_Y)
    if not isinstance(x, bytes) or not isinstance(y, bytes):
        raise InvalidPublicKey("COSE key lacks x/y coordinates", field="public_key")
    if len(x) != COORDINATE_LENGTH or len(y) != COORDINATE_LENGTH:
        raise InvalidPublicKey("COSE coordinates must be 32 bytes each", field="public_key")
    return x + y


def _decode_legacy_base64(value: Union[str, bytes]) -> bytes:
    text = value.decode("ascii", errors="replace") if isinstance(value, bytes) else value
    try:
        payload = json.loads(_b64decode(text).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidPublicKey(f"Legacy public key is not base64 JSON: {e}", field="public_key") from e
    if not isinstance(payload, dict) or "x" not in payload or "y" not in payload:
        raise InvalidPublicKey("Legacy public key lacks x/y", field="public_key")
    x, y = _b64decode(str(payload["x"])), _b64decode(str(payload["y"]))
    if len(x) != COORDINATE_LENGTH or len(y) != COORDINATE_LENGTH:
        raise InvalidPublicKey("Legacy coordinates must be 32 bytes each", field="public_key")
    return x + y


def decode_public_key(
    value: Union[str, bytes],
    fmt: PublicKeyFormat = PublicKeyFormat.RAW,
) -> PublicKey:
    """Decode a passkey public key into its canonical form.

    Raises InvalidPublicKey on any malformed input. There is no fallback:
    a key that cannot be decoded is rejected.
    """
    if fmt == PublicKeyFormat.RAW:
        return PublicKey(_decode_raw(_as_bytes(value)))
    if fmt == PublicKeyFormat.COSE:
        data = _b64decode(value) if isinstance(value, str) and not value.startswith("0x") else _as_bytes(value)
        return PublicKey(_decode_cose(data))
    if fmt == PublicKeyFormat.LEGACY_BASE64:
        return PublicKey(_decode_legacy_base64(value))
    raise InvalidPublicKey(f"Unknown public key format: {fmt}", field="public_key")
