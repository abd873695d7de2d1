"""Unit tests for bearer token issue/validate and header parsing."""

import base64
import json
from datetime import timedelta

import pytest

from heimdall.service.errors import AuthenticationError, InvalidTokenError, TokenExpiredError
from heimdall.service.tokens import (
    TOKEN_TYPE_REFRESH,
    TokenManager,
    parse_auth_header,
    revocation_key,
    session_key,
)


@pytest.fixture
def manager(clock):
    return TokenManager(
        "unit-test-secret",
        issuer="heimdall-admin",
        access_ttl=timedelta(hours=2),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


def _tamper_payload(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{signature}"


class TestParseAuthHeader:
    def test_returns_token(self):
        assert parse_auth_header("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, header):
        with pytest.raises(AuthenticationError) as excinfo:
            parse_auth_header(header)
        assert excinfo.value.status_code == 401

    @pytest.mark.parametrize("header", ["Basic abc", "bearer abc", "Bearer"])
    def test_wrong_scheme(self, header):
        with pytest.raises(AuthenticationError):
            parse_auth_header(header)

    def test_empty_token(self):
        with pytest.raises(AuthenticationError) as excinfo:
            parse_auth_header("Bearer ")
        assert "empty" in excinfo.value.message


class TestIssueValidate:
    def test_round_trip_preserves_identity(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        claims = manager.validate(pair.access_token)
        assert (claims.sub, claims.username, claims.role) == ("u1", "alice", "admin")
        assert claims.jti == pair.access_jti
        assert claims.iss == "heimdall-admin"

    def test_validated_jti_matches_introspection(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        assert manager.validate(pair.access_token).jti == manager.introspect(pair.access_token).jti

    def test_distinct_issuances_have_distinct_ids(self, manager):
        first = manager.issue("u1", "alice", "admin")
        second = manager.issue("u1", "alice", "admin")
        ids = {first.access_jti, first.refresh_jti, second.access_jti, second.refresh_jti}
        assert len(ids) == 4

    def test_issue_requires_identity(self, manager):
        with pytest.raises(ValueError):
            manager.issue("", "alice", "admin")

    def test_refresh_lifetime_must_cover_access(self, clock):
        with pytest.raises(ValueError):
            TokenManager(
                "s",
                issuer="x",
                access_ttl=timedelta(hours=2),
                refresh_ttl=timedelta(hours=1),
                clock=clock,
            )

    def test_expiry_boundary(self, manager, clock):
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(hours=2, seconds=-1)
        manager.validate(pair.access_token)
        clock.advance(seconds=2)
        with pytest.raises(TokenExpiredError) as excinfo:
            manager.validate(pair.access_token)
        assert excinfo.value.kind == "expired"
        assert excinfo.value.error_code == "token_expired"

    def test_allow_expired_still_checks_signature(self, manager, clock):
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(hours=3)
        assert manager.validate(pair.access_token, allow_expired=True).sub == "u1"
        forged = pair.access_token[:-2] + ("AA" if not pair.access_token.endswith("AA") else "BB")
        with pytest.raises(InvalidTokenError):
            manager.validate(forged, allow_expired=True)

    def test_leeway_tolerates_small_skew(self, clock):
        manager = TokenManager(
            "unit-test-secret",
            issuer="heimdall-admin",
            access_ttl=timedelta(minutes=10),
            refresh_ttl=timedelta(minutes=10),
            leeway=timedelta(seconds=30),
            clock=clock,
        )
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(minutes=10, seconds=10)
        manager.validate(pair.access_token)

    def test_not_yet_valid(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        future = _tamper_payload(pair.access_token, nbf=10**10)
        header, payload, _ = future.split(".")
        resigned = f"{header}.{payload}.{manager._sign(f'{header}.{payload}')}"
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(resigned)
        assert excinfo.value.kind == "not_yet_valid"

    def test_bad_signature(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        tampered = _tamper_payload(pair.access_token, role="owner")
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(tampered)
        assert excinfo.value.kind == "bad_signature"
        assert excinfo.value.error_code == "invalid_token"

    @pytest.mark.parametrize("signature", ["ééé", "\udcff", "sig\x00"])
    def test_non_ascii_signature_is_bad_signature(self, manager, signature):
        header, payload, _ = manager.issue("u1", "alice", "admin").access_token.split(".")
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(f"{header}.{payload}.{signature}")
        assert excinfo.value.kind == "bad_signature"

    def test_non_ascii_payload_is_rejected(self, manager):
        header, _, signature = manager.issue("u1", "alice", "admin").access_token.split(".")
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(f"{header}.ééé.{signature}")
        assert excinfo.value.kind == "bad_signature"

    def test_other_secret_rejected(self, manager, clock):
        other = TokenManager(
            "another-secret",
            issuer="heimdall-admin",
            access_ttl=timedelta(hours=2),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(other.issue("u1", "alice", "admin").access_token)
        assert excinfo.value.kind == "bad_signature"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "a.b.c.d"])
    def test_malformed(self, manager, token):
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(token)
        assert excinfo.value.kind == "malformed"

    def test_wrong_algorithm_rejected(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        _, payload, signature = pair.access_token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(f"{header}.{payload}.{signature}")
        assert excinfo.value.kind == "invalid"

    def test_wrong_issuer_rejected(self, manager, clock):
        other = TokenManager(
            "unit-test-secret",
            issuer="someone-else",
            access_ttl=timedelta(hours=2),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            manager.validate(other.issue("u1", "alice", "admin").access_token)
        assert excinfo.value.kind == "invalid"

    def test_refresh_token_is_not_an_access_token(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        with pytest.raises(InvalidTokenError):
            manager.validate(pair.refresh_token)
        assert manager.validate(pair.refresh_token, token_type=TOKEN_TYPE_REFRESH).sub == "u1"


class TestRefreshAndMetadata:
    def test_refresh_round_trip(self, manager, clock):
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(seconds=1)
        claims, new_pair = manager.refresh(pair.refresh_token)
        assert claims.jti == pair.refresh_jti
        assert new_pair.access_jti not in (pair.access_jti, pair.refresh_jti)
        refreshed = manager.validate(new_pair.access_token)
        assert (refreshed.sub, refreshed.username, refreshed.role) == ("u1", "alice", "admin")
        manager.validate(pair.access_token)

    def test_refresh_rejects_access_token(self, manager):
        pair = manager.issue("u1", "alice", "admin")
        with pytest.raises(InvalidTokenError):
            manager.refresh(pair.access_token)

    def test_remaining_lifetime(self, manager, clock):
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(minutes=100)
        assert manager.remaining_lifetime(pair.access_token) == timedelta(minutes=20)
        clock.advance(minutes=30)
        with pytest.raises(TokenExpiredError):
            manager.remaining_lifetime(pair.access_token)

    def test_token_age_and_recent_issue(self, manager, clock):
        pair = manager.issue("u1", "alice", "admin")
        clock.advance(seconds=90)
        assert manager.token_age(pair.access_token) == timedelta(seconds=90)
        assert manager.is_recently_issued(pair.access_token, timedelta(minutes=2))
        assert not manager.is_recently_issued(pair.access_token, timedelta(minutes=1))
        assert not manager.is_recently_issued("garbage", timedelta(minutes=1))

    def test_metadata(self, manager):
        pair = manager.issue("u1", "alice", "editor")
        meta = manager.metadata(pair.refresh_token)
        assert meta["jti"] == pair.refresh_jti
        assert meta["token_type"] == TOKEN_TYPE_REFRESH
        assert meta["role"] == "editor"


def test_key_helpers():
    assert revocation_key("T") == "blacklist:T"
    assert session_key("u1", "T") == "session:u1:T"
