"""
FastAPI scaffolding shared by the service entrypoints.

``BaseService`` owns the app, config, logger and metrics, and installs what
every service needs: CORS, a request context middleware, error handlers
mapping ``CacheFlushException`` to its status code, ``/health`` and
``/metrics``. Subclasses add collaborators and routes after ``super().__init__``.
"""

import os
import time
from time import perf_counter
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import ServiceConfig, get_config
from shared.errors import CacheFlushException
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector


class BaseService:
    """Base service class with common functionality."""

    version = "1.0.0"

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, json_logs=self.config.env != "local")
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name)

        self.app = self._create_app()
        self._install_middleware()
        self._install_error_handlers()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        title = self.service_name.replace("-", " ").title()
        local = self.config.env == "local"
        return FastAPI(
            title=f"{title} Service",
            version=self.version,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
        )

    def _install_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            """Bind a request id, then time, count and log the request."""
            request_id = set_request_id(request.headers.get("x-request-id"))
            started = perf_counter()
            try:
                response = await call_next(request)
                elapsed = perf_counter() - started
                endpoint = self._route_template(request)

                self.metrics.record_http_request(request.method, endpoint, response.status_code, elapsed)
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration_ms=round(elapsed * 1000, 2),
                )

                response.headers["X-Request-Id"] = request_id
                return response
            finally:
                clear_context()

    def _install_error_handlers(self):
        @self.app.exception_handler(CacheFlushException)
        async def cache_flush_exception_handler(request: Request, exc: CacheFlushException):
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log("Request failed", code=exc.code, message=exc.message, details=exc.details, path=request.url.path)
            self.metrics.record_error(exc.code)
            return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            )

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint; 503 while any dependency is down."""
            dependencies = await self._check_dependencies()
            healthy = all(state == "ok" for state in dependencies.values())
            self.metrics.record_health_check("ok" if healthy else "error")
            return JSONResponse(
                status_code=200 if healthy else 503,
                content={
                    "service": self.service_name,
                    "status": "ok" if healthy else "degraded",
                    "uptime_seconds": round(time.time() - self._start_time, 3),
                    "dependencies": dependencies,
                    "version": self.version,
                    "commit": os.getenv("GIT_COMMIT", "unknown"),
                },
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    @staticmethod
    def _route_template(request: Request) -> str:
        """``/cache/operations/{operation_id}`` rather than the concrete path."""
        route = request.scope.get("route")
        return getattr(route, "path", None) or request.url.path

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
