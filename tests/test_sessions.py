"""
Tests for session tokens and the device fingerprint helpers.
"""

from datetime import UTC, datetime, timedelta

import jwt

from license_portal.models.domain import PrincipalKind, Role
from license_portal.services import fingerprint
from license_portal.services.sessions import ALGORITHM, SessionTokenService

SECRET = "test-session-secret-for-jwt-signing-32chars"


class TestSessionTokens:
    def test_issue_and_verify(self):
        tokens = SessionTokenService(SECRET)

        claims = tokens.verify(tokens.issue(PrincipalKind.RESELLER, "shop"))

        assert claims is not None
        assert claims.kind == PrincipalKind.RESELLER
        assert claims.username == "shop"

    def test_wrong_secret(self):
        token = SessionTokenService(SECRET).issue(PrincipalKind.USER, "alice")
        assert SessionTokenService("another-secret-that-is-long-enough!!").verify(token) is None

    def test_expired(self):
        now = datetime.now(UTC)
        token = jwt.encode(
            {"sub": "alice", "kind": "user", "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1)},
            SECRET,
            algorithm=ALGORITHM,
        )
        assert SessionTokenService(SECRET).verify(token) is None

    def test_unknown_kind(self):
        now = datetime.now(UTC)
        token = jwt.encode(
            {"sub": "alice", "kind": "martian", "iat": now, "exp": now + timedelta(hours=1)},
            SECRET,
            algorithm=ALGORITHM,
        )
        assert SessionTokenService(SECRET).verify(token) is None

    def test_garbage(self):
        assert SessionTokenService(SECRET).verify("not.a.token") is None


class TestFingerprint:
    def test_stable_hash(self):
        assert fingerprint.compute_fingerprint("UA") == fingerprint.compute_fingerprint("UA")
        assert fingerprint.compute_fingerprint("UA") != fingerprint.compute_fingerprint("UB")

    def test_missing_user_agent(self):
        assert len(fingerprint.compute_fingerprint(None)) == 64

    def test_exempt_paths(self):
        assert fingerprint.is_exempt_path("/")
        assert fingerprint.is_exempt_path("/api/uid/create")
        assert fingerprint.is_exempt_path("/login")
        assert fingerprint.is_exempt_path("/health")
        assert not fingerprint.is_exempt_path("/dashboard")

    def test_only_regular_users(self):
        assert fingerprint.applies_to(Role.USER, is_bootstrap=False)
        assert not fingerprint.applies_to(Role.GUEST, is_bootstrap=False)
        assert not fingerprint.applies_to(Role.OWNER, is_bootstrap=False)
        assert not fingerprint.applies_to(Role.USER, is_bootstrap=True)

    def test_matches(self):
        stored = fingerprint.compute_fingerprint("UA")
        assert fingerprint.matches(None, "anything")
        assert fingerprint.matches(stored, "UA")
        assert not fingerprint.matches(stored, "UB")
