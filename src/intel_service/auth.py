from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import defaultdict
from typing import Any

from fastapi import HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Probes and metrics stay reachable when the limiter is saturated.
_UNLIMITED_PATHS = frozenset({"/health", "/healthz", "/ready"})


class APIKeyAuth:
    """Validate requests against a set of allowed API keys.

    Tier and role gating happen upstream of this service; by the time a
    request reaches the pipeline it only needs to prove it holds a key.
    Disabled when no keys are configured (development mode).
    """

    def __init__(self, allowed_keys: list[str] | None = None) -> None:
        self._hashes: set[str] = set()
        for key in (allowed_keys or []):
            if key.strip():
                self._hashes.add(self._hash(key.strip()))
        self._enabled = bool(self._hashes)

    @staticmethod
    def _hash(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    @classmethod
    def from_csv(cls, raw: str) -> APIKeyAuth:
        return cls(allowed_keys=[k for k in raw.split(",") if k.strip()])

    def validate(self, api_key: str | None) -> bool:
        if not self._enabled:
            return True
        if not api_key:
            return False
        candidate = self._hash(api_key)
        return any(hmac.compare_digest(candidate, known) for known in self._hashes)

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self._enabled:
            return None
        if not self.validate(api_key):
            logger.warning("Rejected request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        return api_key


class RateLimiter:
    """In-memory sliding-window rate limiter per client IP."""

    def __init__(self, requests_per_minute: int = 60) -> None:
        self.rpm = requests_per_minute
        self._windows: dict[str, list[float]] = defaultdict(list)
        self._enabled = requests_per_minute > 0

    def _cleanup(self, key: str, now: float) -> None:
        cutoff = now - 60.0
        self._windows[key] = [t for t in self._windows[key] if t > cutoff]

    def check(self, client_ip: str) -> bool:
        if not self._enabled:
            return True
        now = time.monotonic()
        self._cleanup(client_ip, now)
        if len(self._windows[client_ip]) >= self.rpm:
            return False
        self._windows[client_ip].append(now)
        return True

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self._enabled or request.url.path in _UNLIMITED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self.check(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"success": False, "message": "Rate limit exceeded", "error": "RATE_LIMITED"},
            )
        return await call_next(request)
