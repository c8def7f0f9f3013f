"""
Client for the paid decode upstream.
"""

from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.logging import get_logger, get_request_id

from ..spend.executor import WorkFailed


def upstream_failure(exc: BaseException) -> bool:
    """Client errors are the payload's fault and do not trip the circuit."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return True


class DecodeClient:
    """Posts decode payloads to the upstream provider.

    Calls are not retried here: a retry would be new paid work, and callers
    retry through the idempotency key instead.
    """

    def __init__(self, upstream_url: str, timeout: float = 50.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.upstream_url = upstream_url
        self.logger = get_logger("metering.decode_client")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="decode_upstream",
            is_failure=upstream_failure,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def decode(self, payload: Dict[str, Any]) -> Any:
        """Run one decode and return the upstream's JSON result."""
        try:
            return await self.circuit_breaker.call(self._post, payload)
        except CircuitBreakerOpenException as e:
            raise WorkFailed("Decode upstream unavailable", {"circuit": "open"}) from e
        except httpx.HTTPStatusError as e:
            self.logger.error("Decode upstream returned error", status_code=e.response.status_code)
            raise WorkFailed(
                f"Decode upstream error: {e.response.status_code}",
                {"status_code": e.response.status_code}
            ) from e
        except httpx.HTTPError as e:
            self.logger.error("Decode upstream HTTP error", error=str(e))
            raise WorkFailed("Decode upstream unavailable", {"http_error": type(e).__name__}) from e
        except ValueError as e:
            raise WorkFailed("Decode upstream returned invalid JSON") from e

    async def _post(self, payload: Dict[str, Any]) -> Any:
        headers = {}
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        response = await self._client.post(self.upstream_url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()
