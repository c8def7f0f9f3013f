"""
Signing-key cache backed by the identity provider's JWKS endpoint.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import AuthenticationError, ExternalServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

SUPPORTED_KEY_TYPES = ("EC", "RSA")


class KeyNotFound(AuthenticationError):
    """No published key matches the requested key id."""

    def __init__(self, kid: str):
        super().__init__("Signing key not found", details={"kid": kid}, code="UNKNOWN_KEY")
        self.kid = kid


class KeysUnavailable(ExternalServiceError):
    """The key set cannot be fetched and no usable cached copy exists."""

    status_code = 503

    def __init__(self, message: str = "Signing keys unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("jwks", message, details, code="KEYS_UNAVAILABLE")


class KeyRing:
    """Caches the published signing keys and refreshes them on demand.

    Keys are served from cache for ``cache_ttl`` seconds. Once the cache ages
    out a refresh is attempted; if that fails the previous keys keep being
    served until they are ``max_stale`` seconds old, after which resolution
    fails closed with ``KeysUnavailable``. A lookup for an unknown kid forces
    a refresh to pick up rotated keys, at most once per
    ``min_refresh_interval``. Concurrent refreshes share a single fetch.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        cache_ttl: float = 3600.0,
        max_stale: float = 86400.0,
        min_refresh_interval: float = 30.0,
        http_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self.max_stale = max(max_stale, cache_ttl)
        self.min_refresh_interval = min_refresh_interval
        self.logger = get_logger("metering.keyring")
        self.metrics = metrics

        self._clock = clock
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None
        self._last_attempt: Optional[float] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=http_timeout)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="jwks",
            clock=clock,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this key ring created it."""
        if self._owns_client:
            await self._client.aclose()

    async def warmup(self) -> None:
        """Eagerly load keys so the first request does not pay the cost."""
        try:
            await self.refresh()
        except KeysUnavailable as exc:
            self.logger.warning("JWKS warmup failed", error=exc.message)

    async def check_health(self) -> str:
        """Return 'ok' for fresh keys, 'stale' while serving past TTL, otherwise 'error'."""
        try:
            await self._refresh_keys(force=False)
        except KeysUnavailable:
            return "error"
        return "ok" if self._is_fresh() else "stale"

    async def resolve(self, kid: str) -> Dict[str, Any]:
        """Return the JWK published under ``kid``."""
        if not self._is_fresh():
            await self._refresh_keys(force=False)

        key = self._keys.get(kid)
        if key is not None:
            return key

        # Possibly rotated; look again if we have not just fetched.
        if not self._throttled():
            await self._refresh_keys(force=True)
            key = self._keys.get(kid)
            if key is not None:
                return key

        self.logger.warning("Signing key not found", kid=kid)
        raise KeyNotFound(kid)

    async def refresh(self) -> List[Dict[str, Any]]:
        """Fetch the key set now and return the keys in use afterwards."""
        await self._refresh_keys(force=True, throttle=False)
        return list(self._keys.values())

    @property
    def key_ids(self) -> List[str]:
        return list(self._keys)

    def _age(self) -> Optional[float]:
        if self._fetched_at is None:
            return None
        return self._clock() - self._fetched_at

    def _is_fresh(self) -> bool:
        age = self._age()
        return age is not None and age < self.cache_ttl

    def _throttled(self) -> bool:
        return (
            self._last_attempt is not None
            and (self._clock() - self._last_attempt) < self.min_refresh_interval
        )

    async def _refresh_keys(self, *, force: bool, throttle: bool = True) -> None:
        generation = self._generation

        async with self._lock:
            # Another caller fetched while we waited for the lock.
            if self._generation == generation:
                needed = force or not self._is_fresh()
                if throttle and self._throttled():
                    needed = False
                if needed:
                    await self._fetch_locked()

        self._ensure_usable()

    async def _fetch_locked(self) -> None:
        self._last_attempt = self._clock()
        self._generation += 1

        try:
            keys = await self.circuit_breaker.call(self._fetch_document)
        except (httpx.HTTPError, ValueError, CircuitBreakerOpenException) as exc:
            self.logger.warning(
                "Failed to fetch JWKS",
                error=str(exc),
                cached_keys=len(self._keys),
                cache_age_seconds=self._age(),
            )
            self._record("error")
            return

        self._keys = keys
        self._fetched_at = self._clock()
        self._record("ok")
        self.logger.info("JWKS refreshed", keys_count=len(keys))

    async def _fetch_document(self) -> Dict[str, Dict[str, Any]]:
        response = await self._client.get(self.jwks_url)
        response.raise_for_status()
        payload = response.json()

        raw_keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(raw_keys, list):
            raise ValueError("JWKS response missing 'keys' array")

        keys: Dict[str, Dict[str, Any]] = {}
        for raw in raw_keys:
            if not isinstance(raw, dict):
                continue
            kid = raw.get("kid")
            kty = raw.get("kty")
            if not isinstance(kid, str) or not kid:
                self.logger.warning("Skipping JWK without kid", kty=kty)
                continue
            if kty not in SUPPORTED_KEY_TYPES:
                self.logger.warning("Skipping JWK with unsupported key type", kid=kid, kty=kty)
                continue
            keys[kid] = raw
        return keys

    def _ensure_usable(self) -> None:
        age = self._age()
        if age is None:
            raise KeysUnavailable("Signing keys have never been fetched")
        if age >= self.max_stale:
            self.logger.error("JWKS cache exceeded max staleness", cache_age_seconds=age)
            raise KeysUnavailable("Cached signing keys are too old", {"cache_age_seconds": round(age)})
        if age >= self.cache_ttl:
            self.logger.warning("Serving stale JWKS cache", cache_age_seconds=age)

    def _record(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_jwks_refresh(status)
