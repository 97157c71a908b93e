"""Unverified JWT claim decoding for expiry tracking.

The decoded claims are a liveness hint used to schedule refreshes. They
are never used for authorization decisions: only the Auth Server's own
validation of the bearer token is authoritative.
"""

from __future__ import annotations

import json

from base64 import urlsafe_b64decode
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from ..types import TokenSet


def decode_jwt_claims(token: str) -> dict[str, Any] | None:
    """Decode the payload segment of a JWT without verifying it.

    Parameters
    ----------
    token : str
        A compact-serialized JWT.

    Returns
    -------
    dict or None
        The claims, or None if ``token`` is not a decodable JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        claims = json.loads(urlsafe_b64decode(segment.encode("ascii")))
    except ValueError:
        # binascii.Error and UnicodeDecodeError are ValueError subclasses
        return None
    if not isinstance(claims, dict):
        return None
    return claims


def token_expiry(tokens: TokenSet) -> float | None:
    """Resolve the expiry timestamp of a token set.

    The access token's ``exp`` claim wins; otherwise ``issued_at +
    expires_in``; otherwise the expiry is unknown (None).
    """
    claims = decode_jwt_claims(tokens.access_token)
    if claims is not None:
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return float(exp)
    return tokens.expires_at


def is_expiring(tokens: TokenSet, threshold: float, now: float) -> bool:
    """Whether the token is expired or within ``threshold`` seconds of it.

    Unknown expiry counts as expired.
    """
    expiry = token_expiry(tokens)
    if expiry is None:
        return True
    return now >= expiry - threshold


def is_expired(tokens: TokenSet, now: float) -> bool:
    """Whether the token is past its expiry (unknown expiry counts as expired)."""
    expiry = token_expiry(tokens)
    if expiry is None:
        return True
    return now >= expiry
