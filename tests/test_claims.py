"""Unit tests for unverified JWT claim decoding and expiry checks."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from authserver_oauth.auth.claims import decode_jwt_claims, is_expired, is_expiring, token_expiry
from authserver_oauth.types import TokenSet


if TYPE_CHECKING:
    from collections.abc import Callable


NOW = 1_700_000_000.0


class TestDecodeJwtClaims:
    """Tests for decoding the payload segment."""

    def test_decodes_payload(self, jwt_factory: Callable[[dict[str, Any]], str]) -> None:
        token = jwt_factory({"sub": "user-1", "exp": 123})
        assert decode_jwt_claims(token) == {"sub": "user-1", "exp": 123}

    def test_opaque_token(self) -> None:
        assert decode_jwt_claims("opaque-access-token") is None

    def test_garbage_segments(self) -> None:
        assert decode_jwt_claims("a.!!!.c") is None
        assert decode_jwt_claims("a.bm90IGpzb24.c") is None  # "not json"

    def test_non_object_payload(self) -> None:
        assert decode_jwt_claims("a.WzEsMl0.c") is None  # [1,2]


class TestTokenExpiry:
    """Tests for expiry resolution."""

    def test_exp_claim_wins(self, jwt_factory: Callable[[dict[str, Any]], str]) -> None:
        tokens = TokenSet(access_token=jwt_factory({"exp": NOW + 10}), expires_in=3600, issued_at=NOW)
        assert token_expiry(tokens) == NOW + 10

    def test_expires_in_fallback(self) -> None:
        tokens = TokenSet(access_token="opaque", expires_in=300, issued_at=NOW)
        assert token_expiry(tokens) == NOW + 300

    def test_unknown_expiry(self) -> None:
        assert token_expiry(TokenSet(access_token="opaque")) is None

    def test_non_numeric_exp_ignored(self, jwt_factory: Callable[[dict[str, Any]], str]) -> None:
        tokens = TokenSet(access_token=jwt_factory({"exp": "soon"}), expires_in=60, issued_at=NOW)
        assert token_expiry(tokens) == NOW + 60


class TestExpiryChecks:
    """Tests for is_expiring / is_expired."""

    def test_fresh_token(self) -> None:
        tokens = TokenSet(access_token="a", expires_in=3600, issued_at=NOW)
        assert not is_expiring(tokens, 60, NOW)
        assert not is_expired(tokens, NOW)

    def test_within_threshold(self) -> None:
        tokens = TokenSet(access_token="a", expires_in=3600, issued_at=NOW)
        assert is_expiring(tokens, 60, NOW + 3540)
        assert not is_expired(tokens, NOW + 3540)

    def test_past_expiry(self) -> None:
        tokens = TokenSet(access_token="a", expires_in=3600, issued_at=NOW)
        assert is_expired(tokens, NOW + 3600)

    def test_unknown_expiry_fails_closed(self) -> None:
        tokens = TokenSet(access_token="opaque")
        assert is_expiring(tokens, 60, NOW)
        assert is_expired(tokens, NOW)
