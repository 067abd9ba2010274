"""Unit tests for bearer tokens and one-time tokens."""

import base64
import json
from datetime import timedelta

import pytest

from shelfkeeper.service.tokens import (
    ONE_TIME_TOKEN_TTLS,
    ExpiredTokenError,
    MalformedTokenError,
    OneTimeTokenPurpose,
    TokenClass,
    TokenCodec,
    TokenError,
    WrongTokenClassError,
    expiry_for,
    generate_one_time_token,
)


@pytest.fixture
def clocked_codec(clock):
    return TokenCodec("signing-key", issuer="shelfkeeper", audience="clients", clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssueAndVerify:
    def test_access_token_verifies_as_access(self, clocked_codec, clock):
        token = clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        verified = clocked_codec.verify(token, TokenClass.ACCESS)

        assert verified.subject_id == "user-1"
        assert verified.token_class == TokenClass.ACCESS
        assert verified.expires_at == clock.now + timedelta(minutes=5)

    def test_tokens_are_unique_per_issue(self, clocked_codec):
        a = clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        b = clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        assert a != b

    def test_non_positive_ttl_rejected(self, clocked_codec):
        with pytest.raises(ValueError):
            clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(0))

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("", issuer="i", audience="a")

    def test_issue_pair_contains_both_classes(self, clocked_codec):
        pair = clocked_codec.issue_pair(
            "user-1", access_ttl=timedelta(minutes=5), refresh_ttl=timedelta(days=7)
        )
        assert clocked_codec.verify(pair.access_token, TokenClass.ACCESS).subject_id == "user-1"
        assert clocked_codec.verify(pair.refresh_token, TokenClass.REFRESH).subject_id == "user-1"
        assert pair.refresh_expires_at > pair.access_expires_at
        assert pair.as_dict()["token_type"] == "bearer"


class TestVerificationFailures:
    def test_expired_token(self, clocked_codec, clock):
        token = clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        clock.advance(timedelta(minutes=5))
        with pytest.raises(ExpiredTokenError):
            clocked_codec.verify(token, TokenClass.ACCESS)

    def test_wrong_class(self, clocked_codec):
        token = clocked_codec.issue("user-1", TokenClass.REFRESH, timedelta(minutes=5))
        with pytest.raises(WrongTokenClassError):
            clocked_codec.verify(token, TokenClass.ACCESS)

    def test_expiry_reported_before_class(self, clocked_codec, clock):
        token = clocked_codec.issue("user-1", TokenClass.REFRESH, timedelta(minutes=1))
        clock.advance(timedelta(minutes=2))
        with pytest.raises(ExpiredTokenError):
            clocked_codec.verify(token, TokenClass.ACCESS)

    def test_leeway_accepts_recently_expired(self, clock):
        codec = TokenCodec("k", issuer="i", audience="a", leeway_seconds=30, clock=clock)
        token = codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=1))
        clock.advance(timedelta(seconds=75))
        assert codec.verify(token, TokenClass.ACCESS).subject_id == "user-1"

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_structurally_invalid(self, clocked_codec, garbage):
        with pytest.raises(MalformedTokenError):
            clocked_codec.verify(garbage, TokenClass.ACCESS)

    def test_foreign_signature_is_malformed(self, clocked_codec, clock):
        other = TokenCodec("another-key", issuer="shelfkeeper", audience="clients", clock=clock)
        token = other.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        with pytest.raises(MalformedTokenError):
            clocked_codec.verify(token, TokenClass.ACCESS)

    def test_forged_expired_token_is_malformed_not_expired(self, clocked_codec, clock):
        other = TokenCodec("another-key", issuer="shelfkeeper", audience="clients", clock=clock)
        token = other.issue("user-1", TokenClass.ACCESS, timedelta(minutes=1))
        clock.advance(timedelta(hours=1))
        with pytest.raises(MalformedTokenError):
            clocked_codec.verify(token, TokenClass.ACCESS)

    def test_tampered_payload(self, clocked_codec):
        token = clocked_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged = _b64({"sub": "admin", "typ": "access", "exp": 9999999999})
        with pytest.raises(MalformedTokenError):
            clocked_codec.verify(f"{header}.{forged}.{signature}", TokenClass.ACCESS)

    def test_alg_none_rejected(self, clocked_codec):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64({"sub": "user-1", "typ": "access", "exp": 9999999999})
        with pytest.raises(MalformedTokenError):
            clocked_codec.verify(f"{header}.{payload}.", TokenClass.ACCESS)

    def test_audience_mismatch(self, clock):
        issuer_codec = TokenCodec("k", issuer="shelfkeeper", audience="elsewhere", clock=clock)
        verifier = TokenCodec("k", issuer="shelfkeeper", audience="clients", clock=clock)
        token = issuer_codec.issue("user-1", TokenClass.ACCESS, timedelta(minutes=5))
        with pytest.raises(MalformedTokenError):
            verifier.verify(token, TokenClass.ACCESS)

    def test_all_failures_share_base_class(self):
        for exc in (MalformedTokenError, ExpiredTokenError, WrongTokenClassError):
            assert issubclass(exc, TokenError)


class TestOneTimeTokens:
    def test_token_has_256_bits(self):
        token = generate_one_time_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_do_not_repeat(self):
        assert len({generate_one_time_token() for _ in range(200)}) == 200

    def test_default_lifetimes(self, clock):
        assert ONE_TIME_TOKEN_TTLS[OneTimeTokenPurpose.EMAIL_VERIFICATION] == timedelta(hours=24)
        assert ONE_TIME_TOKEN_TTLS[OneTimeTokenPurpose.PASSWORD_RESET] == timedelta(hours=1)
        assert expiry_for(OneTimeTokenPurpose.PASSWORD_RESET, clock.now) == clock.now + timedelta(hours=1)

    def test_override_lifetime(self, clock):
        expires = expiry_for(
            OneTimeTokenPurpose.EMAIL_VERIFICATION, clock.now, timedelta(minutes=10)
        )
        assert expires == clock.now + timedelta(minutes=10)
