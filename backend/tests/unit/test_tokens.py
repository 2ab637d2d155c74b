"""Unit tests for the token codec, validator and issuer."""

from datetime import UTC, datetime, timedelta

import jwt
import pytest

from recollector.core.clock import FrozenClock, TimeUnit
from recollector.services.tokens import (
    SigningKey,
    TokenIssuer,
    TokenKind,
    TokenMalformedError,
    TokenStatus,
    check_token,
    decode_token,
    encode_token,
    is_expired,
    validate_token,
)

ACCESS_KEY = SigningKey(TokenKind.ACCESS, "unit-access-key-0123456789abcdef0123")
REFRESH_KEY = SigningKey(TokenKind.REFRESH, "unit-refresh-key-0123456789abcdef012")
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def _issuer(clock: FrozenClock, access_minutes: int = 60, refresh_hours: int = 24) -> TokenIssuer:
    return TokenIssuer(ACCESS_KEY, REFRESH_KEY, access_minutes, refresh_hours, clock)


class TestCodec:
    @pytest.mark.parametrize(
        "subject",
        ["alice@example.com", "bob+tag@sub.example.org", "ünïcødé@example.com"],
    )
    def test_round_trip(self, subject):
        expires_at = T0 + timedelta(minutes=15)
        token = encode_token(subject, T0, expires_at, ACCESS_KEY)

        claims = decode_token(token, ACCESS_KEY)

        assert claims.subject == subject
        assert claims.issued_at == T0
        assert claims.expires_at == expires_at

    def test_encoding_is_deterministic(self):
        expires_at = T0 + timedelta(hours=1)
        first = encode_token("alice@example.com", T0, expires_at, ACCESS_KEY)
        second = encode_token("alice@example.com", T0, expires_at, ACCESS_KEY)
        assert first == second

    def test_expired_token_still_decodes(self):
        token = encode_token("alice@example.com", T0, T0 + timedelta(seconds=1), ACCESS_KEY)
        claims = decode_token(token, ACCESS_KEY)
        assert claims.subject == "alice@example.com"
        assert is_expired(claims, T0 + timedelta(days=365))

    def test_access_token_rejected_by_refresh_key(self):
        token = encode_token("alice@example.com", T0, T0 + timedelta(hours=1), ACCESS_KEY)
        with pytest.raises(TokenMalformedError):
            decode_token(token, REFRESH_KEY)

    def test_refresh_token_rejected_by_access_key(self):
        token = encode_token("alice@example.com", T0, T0 + timedelta(hours=1), REFRESH_KEY)
        with pytest.raises(TokenMalformedError):
            decode_token(token, ACCESS_KEY)

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c", "eyJhbGciOiJIUzI1NiJ9.e30"])
    def test_garbage_is_malformed(self, token):
        with pytest.raises(TokenMalformedError):
            decode_token(token, ACCESS_KEY)

    def test_tampered_payload_is_malformed(self):
        token = encode_token("alice@example.com", T0, T0 + timedelta(hours=1), ACCESS_KEY)
        header, _, signature = token.split(".")
        forged_payload = jwt.encode(
            {"sub": "mallory@example.com", "exp": 0}, "other", algorithm="HS256"
        ).split(".")[1]
        with pytest.raises(TokenMalformedError):
            decode_token(f"{header}.{forged_payload}.{signature}", ACCESS_KEY)

    def test_token_without_expiry_decodes_with_none(self):
        token = jwt.encode({"sub": "alice@example.com"}, ACCESS_KEY.secret, algorithm="HS256")
        claims = decode_token(token, ACCESS_KEY)
        assert claims.expires_at is None
        assert is_expired(claims, T0)

    def test_non_numeric_expiry_is_malformed(self):
        token = jwt.encode(
            {"sub": "alice@example.com", "exp": "tomorrow"}, ACCESS_KEY.secret, algorithm="HS256"
        )
        with pytest.raises(TokenMalformedError):
            decode_token(token, ACCESS_KEY)

    def test_out_of_range_expiry_is_malformed(self):
        token = jwt.encode(
            {"sub": "alice@example.com", "exp": 10**20}, ACCESS_KEY.secret, algorithm="HS256"
        )
        with pytest.raises(TokenMalformedError):
            decode_token(token, ACCESS_KEY)

    def test_secret_not_in_repr(self):
        assert ACCESS_KEY.secret not in repr(ACCESS_KEY)


class TestExpiry:
    def test_monotonicity(self):
        expires_at = T0 + timedelta(minutes=10)
        claims = decode_token(encode_token("a@example.com", T0, expires_at, ACCESS_KEY), ACCESS_KEY)

        for seconds in (1, 60, 3600):
            assert is_expired(claims, expires_at + timedelta(seconds=seconds))
            assert not is_expired(claims, expires_at - timedelta(seconds=seconds))

    def test_not_expired_at_exact_expiry(self):
        expires_at = T0 + timedelta(minutes=10)
        claims = decode_token(encode_token("a@example.com", T0, expires_at, ACCESS_KEY), ACCESS_KEY)
        assert not is_expired(claims, expires_at)


class TestValidator:
    def _token(self, subject="alice@example.com", minutes=60, key=ACCESS_KEY):
        return encode_token(subject, T0, T0 + timedelta(minutes=minutes), key)

    def test_valid(self):
        assert check_token(self._token(), "alice@example.com", ACCESS_KEY, T0) is TokenStatus.VALID

    def test_expired(self):
        now = T0 + timedelta(minutes=61)
        assert check_token(self._token(), "alice@example.com", ACCESS_KEY, now) is TokenStatus.EXPIRED

    def test_malformed(self):
        assert check_token("garbage", "alice@example.com", ACCESS_KEY, T0) is TokenStatus.MALFORMED
        assert check_token(None, "alice@example.com", ACCESS_KEY, T0) is TokenStatus.MALFORMED

    def test_wrong_key_is_malformed(self):
        token = self._token(key=REFRESH_KEY)
        assert check_token(token, "alice@example.com", ACCESS_KEY, T0) is TokenStatus.MALFORMED

    def test_subject_mismatch(self):
        status = check_token(self._token(), "bob@example.com", ACCESS_KEY, T0)
        assert status is TokenStatus.SUBJECT_MISMATCH

    def test_missing_subject_claim(self):
        token = jwt.encode(
            {"exp": int((T0 + timedelta(hours=1)).timestamp())}, ACCESS_KEY.secret, algorithm="HS256"
        )
        status = check_token(token, "alice@example.com", ACCESS_KEY, T0)
        assert status is TokenStatus.SUBJECT_MISMATCH

    def test_validate_token_collapses_to_bool(self):
        clock = FrozenClock(T0)
        token = self._token()
        assert validate_token(token, "alice@example.com", ACCESS_KEY, clock) is True
        assert validate_token(token, "bob@example.com", ACCESS_KEY, clock) is False
        assert validate_token(token, "alice@example.com", REFRESH_KEY, clock) is False
        clock.advance(61, TimeUnit.MINUTES)
        assert validate_token(token, "alice@example.com", ACCESS_KEY, clock) is False

    @pytest.mark.parametrize("token,subject", [(None, "alice@example.com"), ("", "a"), ("x", None), ("x", "")])
    def test_validate_token_empty_inputs(self, token, subject):
        assert validate_token(token, subject, ACCESS_KEY, FrozenClock(T0)) is False


class TestIssuer:
    def test_issue_pair(self):
        clock = FrozenClock(T0)
        pair = _issuer(clock, access_minutes=15, refresh_hours=12).issue_pair("alice@example.com")

        assert pair.access_expires_at == int((T0 + timedelta(minutes=15)).timestamp())
        assert pair.refresh_expires_at == int((T0 + timedelta(hours=12)).timestamp())

        access = decode_token(pair.access_token, ACCESS_KEY)
        refresh = decode_token(pair.refresh_token, REFRESH_KEY)
        assert access.subject == refresh.subject == "alice@example.com"
        assert access.issued_at == refresh.issued_at == T0

    def test_pair_tokens_use_independent_keys(self):
        pair = _issuer(FrozenClock(T0)).issue_pair("alice@example.com")
        with pytest.raises(TokenMalformedError):
            decode_token(pair.access_token, REFRESH_KEY)
        with pytest.raises(TokenMalformedError):
            decode_token(pair.refresh_token, ACCESS_KEY)

    def test_issue_access_token_uses_current_time(self):
        clock = FrozenClock(T0)
        issuer = _issuer(clock, access_minutes=5)
        clock.advance(30)
        claims = decode_token(issuer.issue_access_token("alice@example.com"), ACCESS_KEY)
        assert claims.issued_at == T0 + timedelta(seconds=30)
        assert claims.expires_at == T0 + timedelta(minutes=5, seconds=30)

    def test_access_token_expires_after_ttl(self):
        """A one-minute access token fails validation 61 seconds later but still decodes."""
        clock = FrozenClock(T0)
        pair = _issuer(clock, access_minutes=1).issue_pair("alice@example.com")

        clock.advance(61)

        assert validate_token(pair.access_token, "alice@example.com", ACCESS_KEY, clock) is False
        assert decode_token(pair.access_token, ACCESS_KEY).subject == "alice@example.com"

    def test_rejects_swapped_keys(self):
        with pytest.raises(ValueError):
            TokenIssuer(REFRESH_KEY, ACCESS_KEY, 60, 24, FrozenClock(T0))

    def test_expiry_of_uses_claim(self):
        clock = FrozenClock(T0)
        issuer = _issuer(clock)
        pair = issuer.issue_pair("alice@example.com")
        clock.advance(10, TimeUnit.MINUTES)
        assert issuer.expiry_of(pair.access_token, TokenKind.ACCESS) == T0 + timedelta(hours=1)
        assert issuer.expiry_of(pair.refresh_token, TokenKind.REFRESH) == T0 + timedelta(hours=24)

    def test_expiry_of_falls_back_to_ttl(self):
        clock = FrozenClock(T0)
        issuer = _issuer(clock, access_minutes=15, refresh_hours=6)
        assert issuer.expiry_of("garbage", TokenKind.ACCESS) == T0 + timedelta(minutes=15)
        assert issuer.expiry_of("garbage", TokenKind.REFRESH) == T0 + timedelta(hours=6)
