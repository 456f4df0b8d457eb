"""Auth service application."""
from typing import Optional

from fastapi import FastAPI

from hrms_services.audit.store import AuditStore
from hrms_services.auth.router import router
from hrms_services.service_app import create_service_app

AUTH_SERVICE_TITLE = "Authentication and User Management Service"


def create_auth_app(audit_store: Optional[AuditStore] = None) -> FastAPI:
    return create_service_app("auth", [router], title=AUTH_SERVICE_TITLE, audit_store=audit_store)


app = create_auth_app()
