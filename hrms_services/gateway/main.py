"""
Gateway application.

Single entry point for clients: matches the request path against the route
table, forwards it to the bound service and streams the answer back.
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from hrms_services import __version__
from hrms_services.config import CORS_ORIGINS
from hrms_services.errors import RouteNotFound, register_error_handlers
from hrms_services.gateway.proxy import GatewayProxy, gateway_service
from hrms_services.gateway.routes import RouteTable
from hrms_services.service_app import add_access_log

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_gateway_app(
    routes: Optional[RouteTable] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
) -> FastAPI:
    """
    Build the gateway app.

    Args:
        routes: Route table, defaults to the one built from the environment
        client: HTTP client used for forwarding, defaults to a pooled client
        timeout: Upstream timeout in seconds, defaults to GATEWAY_TIMEOUT_SECONDS

    Returns:
        The configured gateway application
    """
    routes = routes or RouteTable.from_service_urls()
    proxy_kwargs = {"timeout": timeout} if timeout is not None else {}
    proxy = GatewayProxy(routes, client=client, **proxy_kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway_service.log_event("service.startup", {"service": "gateway", "routes": routes.describe()})
        try:
            yield
        finally:
            await proxy.aclose()
            gateway_service.log_event("service.shutdown", {"service": "gateway"})

    app = FastAPI(
        title="HRMS API Gateway",
        description="Routes client requests to the HRMS backend services",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.proxy = proxy

    register_error_handlers(app, gateway_service)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=PROXY_METHODS,
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    add_access_log(app, gateway_service)

    @app.get("/health", tags=["health"])
    async def health():
        """Aggregate and per-service health."""
        report = await proxy.health()
        return gateway_service.success_response(
            data=report,
            message="API Gateway is running",
        )

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def forward(request: Request, path: str):
        binding = routes.match(request.url.path)
        if binding is None:
            raise RouteNotFound()
        return await proxy.forward(request, binding)

    return app


app = create_gateway_app()
