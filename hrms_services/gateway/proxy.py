"""
Transparent HTTP forwarding for the gateway.

The gateway holds no authentication logic: the Authorization header is
forwarded untouched and every backend service authenticates on its own.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse

from hrms_services.base_microservice import BaseMicroservice, utcnow
from hrms_services.config import (
    GATEWAY_MAX_CONNECTIONS,
    GATEWAY_TIMEOUT_SECONDS,
    HEALTH_CHECK_TIMEOUT_SECONDS,
)
from hrms_services.errors import UpstreamError, UpstreamUnavailable
from hrms_services.gateway.routes import RouteBinding, RouteTable

gateway_service = BaseMicroservice("gateway")

# Connection-scoped headers that must not be relayed by a proxy
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def _strip_hop_by_hop(raw_headers: List[Tuple[bytes, bytes]], extra: frozenset = frozenset()) -> List[Tuple[bytes, bytes]]:
    dropped = HOP_BY_HOP_HEADERS | extra
    return [(k, v) for k, v in raw_headers if k.decode("latin-1").lower() not in dropped]


def _upstream_path(request: Request, binding: RouteBinding) -> str:
    """
    Request path as the client sent it, percent-encoding intact.

    Falls back to the decoded path when the server did not supply
    ``raw_path`` or the raw form does not carry the matched prefix.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
        if binding.matches(path):
            return path
    return request.url.path


class GatewayProxy:
    """
    Forwards requests to backend services and fans out health checks.

    One pooled ``httpx.AsyncClient`` is shared by every request.
    """
    def __init__(
        self,
        routes: RouteTable,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        health_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        service: BaseMicroservice = gateway_service,
    ):
        self.routes = routes
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.service = service
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=GATEWAY_MAX_CONNECTIONS),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def _upstream_headers(self, request: Request) -> List[Tuple[bytes, bytes]]:
        # Host is set by httpx from the target URL, Content-Length from the body
        headers = _strip_hop_by_hop(
            request.headers.raw,
            extra=frozenset({"host", "content-length", "x-forwarded-for"}),
        )
        forwarded_for = request.headers.get("X-Forwarded-For")
        client = request.client.host if request.client else None
        if client:
            forwarded_for = f"{forwarded_for}, {client}" if forwarded_for else client
        if forwarded_for:
            headers.append((b"x-forwarded-for", forwarded_for.encode("latin-1")))
        return headers

    async def forward(self, request: Request, binding: RouteBinding) -> StreamingResponse:
        """
        Relay one request to its bound service and stream the answer back.

        Args:
            request: The inbound client request
            binding: The route binding matched for the request path

        Returns:
            A response carrying the upstream status, headers and raw body

        Raises:
            UpstreamUnavailable: If the service cannot be reached (503)
            UpstreamError: On timeout or any other transport failure (502)
        """
        url = binding.target_for(_upstream_path(request, binding))
        if request.url.query:
            url = f"{url}?{request.url.query}"

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self._upstream_headers(request),
            content=await request.body(),
            timeout=self.timeout,
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            self.service.log_error(e, context=f"Connecting to {binding.service} for {request.method} {url}")
            raise UpstreamUnavailable()
        except httpx.TimeoutException as e:
            self.service.log_error(e, context=f"Timeout from {binding.service} for {request.method} {url}")
            raise UpstreamError()
        except httpx.HTTPError as e:
            self.service.log_error(e, context=f"Forwarding to {binding.service} for {request.method} {url}")
            raise UpstreamError()

        response = StreamingResponse(self._relay(upstream, binding), status_code=upstream.status_code)
        response.raw_headers = _strip_hop_by_hop(upstream.headers.raw)
        return response

    async def _relay(self, upstream: httpx.Response, binding: RouteBinding):
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Status is already on the wire; the client sees a truncated body
            self.service.log_error(e, context=f"Streaming response from {binding.service}")
        finally:
            await upstream.aclose()

    async def check_service(self, name: str, base_url: str) -> Dict[str, Any]:
        """Check one service's /health endpoint."""
        started = time.perf_counter()
        status = "down"
        try:
            response = await self.client.get(
                base_url.rstrip("/") + "/health",
                timeout=self.health_timeout,
            )
            if response.status_code == 200:
                status = "up"
        except httpx.HTTPError as e:
            self.service.logger.warning(f"Health check for {name} failed: {e!r}")
        return {
            "status": status,
            "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            "checked_at": utcnow().isoformat(),
        }

    async def health(self) -> Dict[str, Any]:
        """
        Check every configured service concurrently.

        A down service degrades its own entry and the aggregate status; the
        gateway itself still answers.
        """
        services = self.routes.services()
        results = await asyncio.gather(
            *(self.check_service(name, url) for name, url in services.items())
        )
        per_service = dict(zip(services.keys(), results))
        aggregate = "ok" if all(r["status"] == "up" for r in results) else "degraded"
        return {
            "status": aggregate,
            "timestamp": utcnow().isoformat(),
            "services": per_service,
        }
