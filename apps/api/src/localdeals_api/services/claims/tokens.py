"""Redemption proof generation.

Both artifacts come from ``secrets``; an exhausted entropy source raises out of
the standard library and is left to crash the request.
"""

from __future__ import annotations

import secrets

# No 0/O, 1/I/L: codes are read aloud and typed by vendor staff.
REDEMPTION_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
SCAN_TOKEN_BYTES = 24


def new_scan_token() -> str:
    """Return an opaque URL-safe token embedded in the scan URL."""

    return secrets.token_urlsafe(SCAN_TOKEN_BYTES)


def new_redemption_code(length: int = 8) -> str:
    """Return a short human-typable fallback code."""

    if length < 4:
        raise ValueError("redemption codes must be at least 4 characters")
    return "".join(secrets.choice(REDEMPTION_CODE_ALPHABET) for _ in range(length))


def new_session_token() -> str:
    """Return the correlation token shared with the payment session."""

    return secrets.token_hex(16)


def normalize_redemption_code(raw: str) -> str:
    return raw.strip().replace("-", "").replace(" ", "").upper()


def looks_like_redemption_code(raw: str, length: int = 8) -> bool:
    candidate = normalize_redemption_code(raw)
    return len(candidate) == length and all(char in REDEMPTION_CODE_ALPHABET for char in candidate)


def build_scan_url(frontend_url: str, scan_token: str) -> str:
    return f"{frontend_url.rstrip('/')}/redeem/{scan_token}"


__all__ = [
    "REDEMPTION_CODE_ALPHABET",
    "build_scan_url",
    "looks_like_redemption_code",
    "new_redemption_code",
    "new_scan_token",
    "new_session_token",
    "normalize_redemption_code",
]
