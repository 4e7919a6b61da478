import base64
import json
from datetime import timedelta

import pytest

from tessera.config import Settings
from tessera.service.credentials import CredentialCodec, CredentialKind, CredentialPair
from tessera.service.errors import (
    BadSignatureError,
    CredentialError,
    MalformedTokenError,
    TokenExpiredError,
)


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestIssueAndVerify:
    """Round trips for each credential kind."""

    def test_access_claims_round_trip(self, codec):
        issued = codec.issue_access(
            "user-1", role="admin", session_id="sess-1", email_verified=True
        )
        claims = codec.verify_access(issued.token)

        assert claims.subject == "user-1"
        assert claims.role == "admin"
        assert claims.session_id == "sess-1"
        assert claims.email_verified is True
        assert claims.banned is False
        assert claims.expires_at == issued.expires_at
        assert claims.kind is CredentialKind.ACCESS

    def test_refresh_honours_explicit_expiry(self, codec, clock):
        expiry = clock.now + timedelta(hours=2)
        issued = codec.issue_refresh("user-1", session_id="sess-1", expires_at=expiry)

        claims = codec.verify_refresh(issued.token)
        assert claims.session_id == "sess-1"
        assert claims.expires_at == expiry

    def test_reset_session_claims(self, codec, settings, clock):
        issued = codec.issue_reset_session("reset-1", "user-1")
        claims = codec.verify_reset_session(issued.token)

        assert claims.reset_request_id == "reset-1"
        assert claims.user_id == "user-1"
        assert claims.expires_at == clock.now + settings.reset_session_ttl

    def test_each_issue_gets_fresh_token_id(self, codec):
        first = codec.issue_refresh("user-1", session_id="sess-1")
        second = codec.issue_refresh("user-1", session_id="sess-1")
        assert first.token != second.token
        assert first.claims.token_id != second.claims.token_id


class TestCrossKindRejection:
    """A credential never verifies as another kind."""

    def test_refresh_is_not_an_access_credential(self, codec):
        refresh = codec.issue_refresh("user-1", session_id="sess-1")
        with pytest.raises(BadSignatureError):
            codec.verify_access(refresh.token)

    def test_access_is_not_a_refresh_credential(self, codec):
        access = codec.issue_access("user-1", role="user", session_id="sess-1")
        with pytest.raises(BadSignatureError):
            codec.verify_refresh(access.token)

    def test_reset_session_is_not_an_access_credential(self, codec):
        reset = codec.issue_reset_session("reset-1", "user-1")
        with pytest.raises(CredentialError):
            codec.verify_access(reset.token)

    def test_access_is_not_a_reset_session(self, codec):
        access = codec.issue_access("user-1", role="user", session_id="sess-1")
        with pytest.raises(CredentialError):
            codec.verify_reset_session(access.token)


class TestFailureKinds:
    """Expired, tampered and malformed credentials fail distinctly."""

    def test_expired_access(self, codec, settings, clock):
        issued = codec.issue_access("user-1", role="user", session_id="sess-1")
        clock.advance(seconds=settings.access_token_ttl.total_seconds() + 1)

        with pytest.raises(TokenExpiredError):
            codec.verify_access(issued.token)

    def test_leeway_tolerates_small_skew(self, clock):
        skewed = Settings(
            jwt_secret="unit-test-secret-0123456789abcdef0123456789abcdef",
            clock_skew_leeway="30s",
        )
        codec = CredentialCodec(skewed, clock=clock)
        issued = codec.issue_access("user-1", role="user", session_id="sess-1", ttl=timedelta(seconds=5))
        clock.advance(seconds=15)

        assert codec.verify_access(issued.token).subject == "user-1"

    def test_tampered_payload_fails_signature(self, codec):
        issued = codec.issue_access("user-1", role="user", session_id="sess-1")
        header, _, signature = issued.token.split(".")
        forged_payload = _segment(
            {
                "iss": "tessera",
                "aud": "tessera-clients",
                "typ": "access",
                "sub": "user-1",
                "role": "admin",
                "sid": "sess-1",
                "banned": False,
                "ev": True,
                "jti": "x",
                "exp": 9999999999,
            }
        )

        with pytest.raises(BadSignatureError):
            codec.verify_access(f"{header}.{forged_payload}.{signature}")

    def test_other_secret_fails_signature(self, codec, clock):
        other = CredentialCodec(
            Settings(jwt_secret="another-secret-0123456789abcdef0123456789abcdef"),
            clock=clock,
        )
        issued = other.issue_access("user-1", role="user", session_id="sess-1")

        with pytest.raises(BadSignatureError):
            codec.verify_access(issued.token)

    def test_explicit_refresh_secret_is_used(self, settings, clock):
        rotated = settings.model_copy(update={"jwt_refresh_secret": "dedicated-refresh-secret"})
        issued = CredentialCodec(rotated, clock=clock).issue_refresh("user-1", session_id="s")

        with pytest.raises(BadSignatureError):
            CredentialCodec(settings, clock=clock).verify_refresh(issued.token)
        assert CredentialCodec(rotated, clock=clock).verify_refresh(issued.token).subject == "user-1"

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c.d", None, 42])
    def test_malformed_inputs(self, codec, token):
        with pytest.raises(MalformedTokenError):
            codec.verify_access(token)

    def test_unsigned_algorithm_rejected(self, codec):
        issued = codec.issue_access("user-1", role="user", session_id="sess-1")
        _, payload, _ = issued.token.split(".")
        unsigned_header = _segment({"alg": "none", "typ": "JWT"})

        with pytest.raises(MalformedTokenError):
            codec.verify_access(f"{unsigned_header}.{payload}.")


class TestCredentialPair:
    """Access and refresh credentials issued together."""

    def test_as_dict_exposes_both_tokens(self, codec):
        pair = CredentialPair(
            access=codec.issue_access("user-1", role="user", session_id="sess-1"),
            refresh=codec.issue_refresh("user-1", session_id="sess-1"),
        )
        payload = pair.as_dict()

        assert payload["access_token"] == pair.access_token
        assert payload["refresh_token"] == pair.refresh_token
        assert payload["token_type"] == "bearer"
