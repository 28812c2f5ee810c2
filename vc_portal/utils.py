"""Utility functions for the VC portal."""

import base64
import json
from secrets import token_urlsafe
from typing import Any, Mapping

NONCE_BYTES = 16


def bytes_to_b64(value: bytes, urlsafe: bool = True, pad: bool = False) -> str:
    """Encode bytes as base64, url-safe and unpadded by default."""
    encoded = (
        base64.urlsafe_b64encode(value) if urlsafe else base64.b64encode(value)
    ).decode()
    return encoded if pad else encoded.rstrip("=")


def b64_to_bytes(value: str, urlsafe: bool = True) -> bytes:
    """Decode base64, tolerating missing padding."""
    padded = value + "=" * (-len(value) % 4)
    if urlsafe:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded)


def dict_to_b64(value: Mapping[str, Any]) -> str:
    """Encode a JSON object as unpadded url-safe base64."""
    return bytes_to_b64(json.dumps(value, separators=(",", ":")).encode())


def b64_to_dict(value: str) -> dict:
    """Decode an unpadded url-safe base64 JSON object."""
    decoded = json.loads(b64_to_bytes(value))
    if not isinstance(decoded, dict):
        raise ValueError("Expected a JSON object")
    return decoded


def new_nonce() -> str:
    """Return a fresh unguessable nonce usable as a URL query value."""
    return token_urlsafe(NONCE_BYTES)
