"""Access tokens, signed download links and request rate limiting."""

import hashlib
import hmac
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, FrozenSet, Iterable, Optional, Set, Tuple

import jwt

from common.logging_config import get_logger
from orchestrator.config import (
    DOWNLOAD_URL_EXPIRY_SECONDS,
    JWT_ALGORITHM,
    JWT_EXPIRY_SECONDS,
    JWT_ISSUER,
    JWT_SECRET,
    RATE_LIMIT_LOCKOUT_SECONDS,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
)
from orchestrator.exceptions import InvalidTokenError, RateLimitError
from orchestrator.utils import generate_uuid, utcnow

logger = get_logger(__name__)

PERMISSION_ADMIN = "admin"
DEFAULT_PERMISSIONS = ("read", "write")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an operation."""
    user_id: str
    permissions: FrozenSet[str] = field(default_factory=lambda: frozenset(DEFAULT_PERMISSIONS))
    token_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return PERMISSION_ADMIN in self.permissions

    def can(self, permission: str) -> bool:
        return self.is_admin or permission in self.permissions


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


class AccessTokenManager:
    """
    Issues and verifies signed JWT access tokens.

    Every token carries a `jti`; revoked ids are rejected until the token
    would have expired anyway.
    """

    def __init__(
        self,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALGORITHM,
        default_expiry_seconds: int = JWT_EXPIRY_SECONDS,
        issuer: str = JWT_ISSUER,
    ):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        self.default_expiry_seconds = default_expiry_seconds
        self.issuer = issuer
        self._revoked: Dict[str, float] = {}

    def issue(
        self,
        user_id: str,
        permissions: Iterable[str] = DEFAULT_PERMISSIONS,
        expires_in: Optional[int] = None,
    ) -> IssuedToken:
        now = utcnow()
        expires_at = now + timedelta(seconds=expires_in or self.default_expiry_seconds)
        token_id = generate_uuid()
        claims = {
            "sub": user_id,
            "jti": token_id,
            "iss": self.issuer,
            "iat": now,
            "exp": expires_at,
            "permissions": sorted(set(permissions)),
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)

    def verify(self, token: str) -> Principal:
        """
        Raises:
            InvalidTokenError: Bad signature, expired, wrong issuer or revoked
        """
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["exp", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        token_id = claims["jti"]
        self._prune_revoked()
        if token_id in self._revoked:
            raise InvalidTokenError("Token has been revoked")

        return Principal(
            user_id=claims["sub"],
            permissions=frozenset(claims.get("permissions", DEFAULT_PERMISSIONS)),
            token_id=token_id,
        )

    def revoke(self, token: str) -> None:
        try:
            claims = jwt.decode(
                token, self.secret, algorithms=[self.algorithm], issuer=self.issuer,
                options={"verify_exp": False},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e
        self._revoked[claims["jti"]] = float(claims.get("exp", time.time()))
        logger.info(f"Revoked token [token_id={claims['jti']}] [user_id={claims.get('sub')}]")

    def _prune_revoked(self) -> None:
        now = time.time()
        for token_id in [tid for tid, exp in self._revoked.items() if exp < now]:
            del self._revoked[token_id]


class DownloadSigner:
    """HMAC-signed, time-limited download links."""

    def __init__(self, secret: str = JWT_SECRET, default_expiry_seconds: int = DOWNLOAD_URL_EXPIRY_SECONDS):
        self._secret = secret.encode("utf-8")
        self.default_expiry_seconds = default_expiry_seconds

    def _signature(self, file_id: str, user_id: str, expires: int) -> str:
        message = f"{file_id}:{user_id}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, file_id: str, user_id: str, expires_in: Optional[int] = None) -> Tuple[int, str]:
        """Return (expires epoch seconds, signature)."""
        expires = int(time.time()) + (expires_in or self.default_expiry_seconds)
        return expires, self._signature(file_id, user_id, expires)

    def download_path(self, file_id: str, user_id: str, expires_in: Optional[int] = None) -> str:
        expires, signature = self.sign(file_id, user_id, expires_in)
        return f"/files/{file_id}/download?user={user_id}&expires={expires}&signature={signature}"

    def verify(self, file_id: str, user_id: str, expires: int, signature: str) -> Principal:
        if expires < int(time.time()):
            raise InvalidTokenError("Download link has expired")
        expected = self._signature(file_id, user_id, expires)
        if not hmac.compare_digest(expected, signature):
            raise InvalidTokenError("Invalid download signature")
        return Principal(user_id=user_id, permissions=frozenset({"read"}))


class RateLimiter:
    """
    Sliding-window limiter. A caller that exceeds `max_requests` within
    `window_seconds` is locked out for `lockout_seconds`.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        lockout_seconds: int = RATE_LIMIT_LOCKOUT_SECONDS,
        clock=time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._locked_until: Dict[str, float] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, action: str = "default") -> None:
        """
        Count one request.

        Raises:
            RateLimitError: With the seconds until the caller may retry
        """
        key = f"{action}:{identifier}"
        now = self._clock()
        with self._lock:
            locked_until = self._locked_until.get(key)
            if locked_until is not None:
                if now < locked_until:
                    raise RateLimitError("Too many requests", retry_after=max(1, int(locked_until - now + 0.999)))
                del self._locked_until[key]
                self._requests.pop(key, None)

            window = self._requests.setdefault(key, deque())
            while window and window[0] <= now - self.window_seconds:
                window.popleft()

            if len(window) >= self.max_requests:
                self._locked_until[key] = now + self.lockout_seconds
                logger.warning(f"Rate limit exceeded [key={key}], locked for {self.lockout_seconds}s")
                raise RateLimitError("Too many requests", retry_after=self.lockout_seconds)

            window.append(now)

    def prune(self) -> int:
        """Drop idle windows and expired lockouts. Returns entries removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in [k for k, until in self._locked_until.items() if until <= now]:
                del self._locked_until[key]
                removed += 1
            for key in [k for k, w in self._requests.items() if not w or w[-1] <= now - self.window_seconds]:
                del self._requests[key]
                removed += 1
        return removed

    def tracked_keys(self) -> Set[str]:
        with self._lock:
            return set(self._requests) | set(self._locked_until)
