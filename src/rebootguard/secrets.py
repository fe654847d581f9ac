"""Obfuscation of the backend bearer token.

The patch-management backend hands the agent its token XOR-ed with a fixed
repeating key and base64 encoded. This is NOT encryption: anyone with this
file can recover the token. It is reproduced byte for byte because the
backend produces exactly this encoding.
"""

from __future__ import annotations

import base64
import binascii
from itertools import cycle

IDENTIFIER_KEY = "Dt7Vug2dg25M2BFHZYcHr8HTyDPkZ7sX89oTxfrc7mc"


class ObfuscationError(ValueError):
    """Raised when an identifier cannot be decoded."""

    pass


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(b ^ k for b, k in zip(data, cycle(key)))


def xor_decode(encoded: str, key: str = IDENTIFIER_KEY) -> str:
    """Decode a base64 string XOR-ed with a repeating key.

    Raises:
        ObfuscationError: if the input is not valid base64 or the result is not UTF-8
    """
    if not key:
        raise ObfuscationError("decode identifier failed: empty key")
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ObfuscationError(f"decode identifier failed: invalid base64: {e}") from e

    try:
        return _xor(raw, key.encode()).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ObfuscationError(f"decode identifier failed: {e}") from e


def xor_encode(plain: str, key: str = IDENTIFIER_KEY) -> str:
    """Inverse of :func:`xor_decode`, used by tooling and tests."""
    if not key:
        raise ObfuscationError("encode identifier failed: empty key")
    return base64.b64encode(_xor(plain.encode("utf-8"), key.encode())).decode("ascii")
