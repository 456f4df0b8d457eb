"""
Application factory shared by the HRMS backend services.

Every service (auth, employee, leave, payroll, notification) is built here so
they all run the same stack: error envelope, access logging, CORS, the audit
middleware and the audit writer tied to the app lifespan.
"""
import time
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from hrms_services import __version__
from hrms_services.audit.middleware import AuditMiddleware
from hrms_services.audit.store import AuditStore, get_audit_store
from hrms_services.audit.writer import AuditWriter
from hrms_services.base_microservice import BaseMicroservice, utcnow
from hrms_services.config import CORS_ORIGINS
from hrms_services.errors import register_error_handlers


def add_access_log(app: FastAPI, service: BaseMicroservice) -> None:
    """Log one line per request: client, method, path, status and duration."""

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        client = request.client.host if request.client else "-"
        service.logger.info(
            f"{client} {request.method} {request.url.path} {response.status_code} "
            f"{response.headers.get('content-length', '-')} - {elapsed_ms:.1f} ms"
        )
        return response


def create_service_app(
    service_name: str,
    routers: Iterable[APIRouter] = (),
    title: Optional[str] = None,
    audit_store: Optional[AuditStore] = None,
) -> FastAPI:
    """
    Build a FastAPI app for one HRMS service.

    Args:
        service_name: Logical service name used in logs and the health payload
        routers: Routers holding the service's endpoints
        title: Human readable name for docs and health messages
        audit_store: Audit persistence, defaults to the SQLAlchemy store

    Returns:
        The configured application; its writer is available as ``app.state.audit_writer``
    """
    service = BaseMicroservice(service_name)
    title = title or f"HRMS {service_name.title()} Service"
    writer = AuditWriter(audit_store or get_audit_store())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        writer.start()
        service.log_event("service.startup", {"service": service_name})
        try:
            yield
        finally:
            await writer.stop()
            service.log_event("service.shutdown", {"service": service_name})

    app = FastAPI(title=title, version=__version__, lifespan=lifespan)
    app.state.audit_writer = writer
    app.state.service = service

    register_error_handlers(app, service)
    app.add_middleware(AuditMiddleware, writer=writer)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    add_access_log(app, service)

    for router in routers:
        app.include_router(router)

    @app.get("/health", tags=["health"])
    async def health():
        """Service liveness, polled by the gateway health fan-out."""
        return service.success_response(
            message=f"{title} is running",
            data={
                "service": service_name,
                "timestamp": utcnow().isoformat(),
                "audit_writer": "running" if writer.running else "stopped",
            },
        )

    return app
