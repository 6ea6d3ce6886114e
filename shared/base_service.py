"""
Base service class for the Heimdall door access core.
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import AccessConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from shared.errors import AccessLayerException


class BaseService:
    """FastAPI host for a Heimdall component: lifespan, health, metrics and error mapping."""

    version = "1.0.0"

    def __init__(self, service_name: str, config: Optional[AccessConfig] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            self.logger.info("Service started", env=self.config.env)
            try:
                yield
            finally:
                await self.stop()
                self.logger.info("Service stopped")

        local = self.config.env == "local"
        return FastAPI(
            title=f"Heimdall {self.service_name.title()}",
            version=self.version,
            docs_url="/docs" if local else None,
            redoc_url=None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        @self.app.middleware("http")
        async def observe_request(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed = time.perf_counter() - started

            # Label by route template so tag identifiers do not explode metric cardinality
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=elapsed
            )
            self.logger.debug(
                "HTTP request",
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration_ms=round(elapsed * 1000, 2)
            )
            return response

    def _error_response(self, status_code: int, body: Dict[str, Any]) -> JSONResponse:
        self.metrics.record_error(body["code"])
        return JSONResponse(status_code=status_code, content=body)

    def _setup_exception_handlers(self):
        @self.app.exception_handler(AccessLayerException)
        async def access_layer_error(request: Request, exc: AccessLayerException):
            self.logger.warning("Request rejected", code=exc.code, message=exc.message, details=exc.details)
            return self._error_response(exc.http_status, exc.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def unexpected_error(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
            return self._error_response(
                500, {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}}
            )

    def _setup_routes(self):
        @self.app.get("/health")
        async def health():
            """Liveness plus the state of each dependency."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)}
                )

            status = "ok" if all(state == "ok" for state in dependencies.values()) else "degraded"
            self.metrics.record_health_check(status)
            return {
                "service": self.service_name,
                "status": status,
                "dependencies": dependencies,
                "uptime_seconds": round(time.time() - self._start_time, 3),
                "version": self.version,
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }

        @self.app.get("/metrics")
        async def metrics():
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map of dependency name to "ok" or a failure state. Override in subclasses."""
        return {}

    async def start(self):
        """Start service components. Override in subclasses."""

    async def stop(self):
        """Stop service components. Override in subclasses."""

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
