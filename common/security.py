"""
Toko Storefront - Security Utilities
=====================================
JWT session tokens, CSRF double-submit, HMAC helpers, rate limiting,
origin allow-list and request size ceiling.

The session token carries a `csrf` claim. Mutating requests must echo it
back in the x-csrf-token header.
"""

import hmac
import hashlib
import logging
import secrets
import time
from collections import defaultdict
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import Request
from jose import JWTError, jwt

from config.settings import (
    SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, CSRF_ENABLED,
    ALLOWED_ORIGINS, MAX_REQUEST_SIZE,
    RATE_LIMITS, RATE_LIMIT_WINDOW_SECONDS,
)
from common.exceptions import AuthorizationError, RateLimitError, RequestTooLargeError
from common.helpers import now_utc, get_real_ip

logger = logging.getLogger("toko.security")

SESSION_COOKIE = "session"
CSRF_HEADER = "x-csrf-token"


# ==========================================
# HMAC
# ==========================================

def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    """Timing-safe string comparison; False when either side is empty."""
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ==========================================
# JWT Tokens
# ==========================================

def create_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = now_utc() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode a JWT token. Returns payload or None."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def new_csrf_token() -> str:
    """Generate a new random CSRF token."""
    return secrets.token_urlsafe(32)


def issue_session(user_id: int, role: str) -> Tuple[str, str]:
    """Create a session token with an embedded CSRF claim. Returns (token, csrf)."""
    csrf = new_csrf_token()
    token = create_token({"sub": str(user_id), "role": role, "csrf": csrf})
    return token, csrf


# ==========================================
# CSRF
# ==========================================

def csrf_check(request: Request):
    """
    Verify the x-csrf-token header matches the csrf claim inside the
    session token. Raises AuthorizationError(403) on mismatch.
    """
    if not CSRF_ENABLED:
        return

    header_token = request.headers.get(CSRF_HEADER)
    session_token = request.cookies.get(SESSION_COOKIE)
    payload = decode_token(session_token) if session_token else None
    claim = payload.get("csrf") if payload else None

    if not constant_time_equals(header_token, claim):
        logger.warning(f"CSRF check failed from {get_real_ip(request)} on {request.url.path}")
        raise AuthorizationError("Invalid CSRF token")


# ==========================================
# Rate Limiting (in-memory, per process)
# ==========================================

class RateLimiter:
    """Sliding-window counter keyed by (kind, client)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[str, List[float]] = defaultdict(list)

    def hit(self, key: str, limit: int, window: float) -> bool:
        """Record a hit. Returns True if allowed, False if rate limited."""
        now = self._clock()
        cutoff = now - window

        # Clean old entries
        self._hits[key] = [t for t in self._hits[key] if t > cutoff]

        if len(self._hits[key]) >= limit:
            return False

        self._hits[key].append(now)
        return True

    def sweep(self, window: float = RATE_LIMIT_WINDOW_SECONDS * 4) -> int:
        cutoff = self._clock() - window
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            self._hits.pop(k, None)
        return len(stale)

    def reset(self):
        self._hits.clear()


rate_limiter = RateLimiter()


def rate_limit(kind: str, window: Optional[int] = None):
    """
    Factory: dependency enforcing the general per-IP limit plus the limit
    for `kind` (orders / shipping / transactions).
    """
    kind_window = window or RATE_LIMIT_WINDOW_SECONDS

    async def _dependency(request: Request):
        ip = get_real_ip(request)
        if not rate_limiter.hit(f"general:{ip}", RATE_LIMITS["general"], RATE_LIMIT_WINDOW_SECONDS):
            raise RateLimitError()
        if kind != "general" and not rate_limiter.hit(f"{kind}:{ip}", RATE_LIMITS[kind], kind_window):
            logger.warning(f"Rate limit '{kind}' exceeded for {ip}")
            raise RateLimitError()

    return _dependency


# ==========================================
# Request gates
# ==========================================

async def enforce_request_size(request: Request):
    """Reject bodies larger than MAX_REQUEST_SIZE (413)."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > MAX_REQUEST_SIZE:
        raise RequestTooLargeError()
    if request.method in ("POST", "PUT", "PATCH"):
        body = await request.body()
        if len(body) > MAX_REQUEST_SIZE:
            raise RequestTooLargeError()


def check_origin(request: Request):
    """Allow-list check on Origin / Referer. An empty ALLOWED_ORIGINS disables it."""
    if not ALLOWED_ORIGINS:
        return
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    if origin and origin in ALLOWED_ORIGINS:
        return
    if referer and any(referer.startswith(allowed) for allowed in ALLOWED_ORIGINS):
        return
    logger.warning(f"Rejected origin={origin!r} referer={referer!r}")
    raise AuthorizationError("Origin not allowed")
