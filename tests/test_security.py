"""Tests for access tokens, signed download links and rate limiting."""

import time

import jwt
import pytest

from orchestrator.exceptions import InvalidTokenError, RateLimitError
from orchestrator.security import AccessTokenManager, DownloadSigner, Principal, RateLimiter

SECRET = "unit-test-secret-with-enough-length-0123"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestAccessTokenManager:
    """Test JWT issue, verify and revoke."""

    def test_issue_and_verify(self):
        manager = AccessTokenManager(secret=SECRET)

        issued = manager.issue("alice", permissions=["read"])
        principal = manager.verify(issued.token)

        assert principal.user_id == "alice"
        assert principal.permissions == frozenset({"read"})
        assert principal.token_id == issued.token_id
        assert not principal.is_admin

    def test_admin_permission(self):
        manager = AccessTokenManager(secret=SECRET)

        principal = manager.verify(manager.issue("root", permissions=["admin"]).token)

        assert principal.is_admin
        assert principal.can("write")

    def test_expired_token(self):
        manager = AccessTokenManager(secret=SECRET)
        issued = manager.issue("alice", expires_in=-10)

        with pytest.raises(InvalidTokenError, match="expired"):
            manager.verify(issued.token)

    def test_wrong_secret(self):
        issued = AccessTokenManager(secret=SECRET).issue("alice")

        with pytest.raises(InvalidTokenError):
            AccessTokenManager(secret="another-secret-with-enough-length-987").verify(issued.token)

    def test_wrong_issuer(self):
        issued = AccessTokenManager(secret=SECRET, issuer="someone-else").issue("alice")

        with pytest.raises(InvalidTokenError):
            AccessTokenManager(secret=SECRET).verify(issued.token)

    def test_token_without_jti_is_rejected(self):
        token = jwt.encode(
            {"sub": "alice", "iss": "strata-files", "exp": int(time.time()) + 60},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            AccessTokenManager(secret=SECRET, issuer="strata-files").verify(token)

    def test_garbage_token(self):
        with pytest.raises(InvalidTokenError):
            AccessTokenManager(secret=SECRET).verify("not-a-jwt")

    def test_revoked_token(self):
        manager = AccessTokenManager(secret=SECRET)
        issued = manager.issue("alice")

        manager.revoke(issued.token)

        with pytest.raises(InvalidTokenError, match="revoked"):
            manager.verify(issued.token)

    def test_revoking_one_token_keeps_others(self):
        manager = AccessTokenManager(secret=SECRET)
        first = manager.issue("alice")
        second = manager.issue("alice")

        manager.revoke(first.token)

        assert manager.verify(second.token).user_id == "alice"

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            AccessTokenManager(secret="")


class TestDownloadSigner:
    """Test signed download links."""

    def test_sign_and_verify(self):
        signer = DownloadSigner(secret=SECRET)

        expires, signature = signer.sign("file-1", "alice", expires_in=60)
        principal = signer.verify("file-1", "alice", expires, signature)

        assert principal == Principal(user_id="alice", permissions=frozenset({"read"}))

    def test_signature_is_bound_to_file_and_user(self):
        signer = DownloadSigner(secret=SECRET)
        expires, signature = signer.sign("file-1", "alice", expires_in=60)

        with pytest.raises(InvalidTokenError):
            signer.verify("file-2", "alice", expires, signature)
        with pytest.raises(InvalidTokenError):
            signer.verify("file-1", "bob", expires, signature)
        with pytest.raises(InvalidTokenError):
            signer.verify("file-1", "alice", expires + 1, signature)

    def test_expired_link(self):
        signer = DownloadSigner(secret=SECRET)
        expires, signature = signer.sign("file-1", "alice", expires_in=-5)

        with pytest.raises(InvalidTokenError, match="expired"):
            signer.verify("file-1", "alice", expires, signature)

    def test_download_path(self):
        path = DownloadSigner(secret=SECRET).download_path("file-1", "alice", expires_in=60)

        assert path.startswith("/files/file-1/download?user=alice&expires=")
        assert "&signature=" in path


class TestRateLimiter:
    """Test the sliding window and lockout."""

    def test_allows_up_to_limit_then_locks_out(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=3, window_seconds=60, lockout_seconds=300, clock=clock)

        for _ in range(3):
            limiter.check("alice")

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check("alice")
        assert exc_info.value.retry_after == 300

        clock.advance(100)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check("alice")
        assert exc_info.value.retry_after == 200

    def test_lockout_expires(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, lockout_seconds=30, clock=clock)
        limiter.check("alice")
        with pytest.raises(RateLimitError):
            limiter.check("alice")

        clock.advance(31)

        limiter.check("alice")

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=10, lockout_seconds=300, clock=clock)
        limiter.check("alice")
        clock.advance(6)
        limiter.check("alice")
        clock.advance(5)

        limiter.check("alice")

    def test_callers_and_actions_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, lockout_seconds=60, clock=FakeClock())

        limiter.check("alice", action="/files")
        limiter.check("bob", action="/files")
        limiter.check("alice", action="/files/stats")

        with pytest.raises(RateLimitError):
            limiter.check("alice", action="/files")

    def test_prune_drops_idle_entries(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=10, lockout_seconds=20, clock=clock)
        limiter.check("alice")
        limiter.check("bob")
        with pytest.raises(RateLimitError):
            limiter.check("bob")

        clock.advance(30)

        assert limiter.prune() == 3
        assert limiter.tracked_keys() == set()
