"""
Base service class for metering gateway services.

Owns the FastAPI app, the request-scoped logging context, Prometheus
exposition and the error envelope. Subclasses plug in their own
dependencies through ``_on_startup``, ``_on_shutdown`` and
``_check_dependencies``.
"""

import os
import re
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import ServiceConfig, get_config
from shared.errors import GatewayError
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector

REQUEST_ID_HEADER = "X-Request-ID"
SERVICE_VERSION = "1.0.0"

# Caller-supplied request ids are echoed into logs and headers.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Dependency status -> overall health status, worst first.
_HEALTH_ORDER = ("error", "stale", "ok")


def accepted_request_id(value: Optional[str]) -> Optional[str]:
    """Return the inbound request id if it is safe to propagate."""
    if value and _REQUEST_ID_PATTERN.match(value):
        return value
    return None


def overall_health(dependencies: Dict[str, str]) -> str:
    """Collapse dependency statuses into ok, degraded or error."""
    worst = "ok"
    for status in dependencies.values():
        if status not in _HEALTH_ORDER:
            status = "error"
        if _HEALTH_ORDER.index(status) < _HEALTH_ORDER.index(worst):
            worst = status
    return "degraded" if worst == "stale" else worst


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._started_at = time.monotonic()

        self.app = FastAPI(
            title=f"{service_name.title()} Service",
            description=f"Metering Gateway - {service_name.title()} Service",
            version=SERVICE_VERSION,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url=None,
            lifespan=self._lifespan,
        )
        self._setup_middleware()
        self._setup_error_handlers()
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self.logger.info("Service starting", env=self.config.env, port=self.config.port)
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()
            self.logger.info("Service stopped")

    async def _on_startup(self) -> None:
        """Open connections and warm caches. Override in subclasses."""

    async def _on_shutdown(self) -> None:
        """Release resources. Override in subclasses."""

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report ``ok``, ``stale`` or ``error`` per dependency. Override in subclasses."""
        return {}

    def _setup_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type", "Idempotency-Key", REQUEST_ID_HEADER],
            expose_headers=[REQUEST_ID_HEADER],
        )

        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            request_id = set_request_id(accepted_request_id(request.headers.get(REQUEST_ID_HEADER)))
            request.state.request_id = request_id
            started = time.perf_counter()

            try:
                response = await call_next(request)
                response.headers[REQUEST_ID_HEADER] = request_id

                duration = time.perf_counter() - started
                # Label by route template so path parameters don't explode cardinality.
                route = request.scope.get("route")
                endpoint = getattr(route, "path", "unmatched")
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration=duration,
                )
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
                return response
            finally:
                clear_context()

    def _setup_error_handlers(self):
        @self.app.exception_handler(GatewayError)
        async def gateway_error_handler(request: Request, exc: GatewayError):
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log("Request rejected", code=exc.code, status_code=exc.status_code, details=exc.details)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response(getattr(request.state, "request_id", None)).model_dump(),
            )

        @self.app.exception_handler(Exception)
        async def unhandled_error_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            error = GatewayError("INTERNAL_ERROR", "Internal server error")
            return JSONResponse(
                status_code=500,
                content=error.to_response(getattr(request.state, "request_id", None)).model_dump(),
            )

    def _setup_routes(self):
        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                dependencies = {"service": "error"}

            status = overall_health(dependencies)
            self.metrics.record_health_check(status)
            body = {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": round(time.monotonic() - self._started_at, 3),
                "dependencies": dependencies,
                "version": SERVICE_VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }
            return JSONResponse(status_code=503 if status == "error" else 200, content=body)

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
