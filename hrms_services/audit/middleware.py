"""
Audit capture around mutating requests.

Two pieces cooperate:

- ``audit_log(...)`` is a route dependency. It runs after authentication and
  authorization, pre-captures the entity's old state for PUT/PATCH/DELETE
  when asked to, and leaves an ``AuditContext`` on ``request.state``.
- ``AuditMiddleware`` is raw ASGI middleware. It observes the status and
  body on their way out without touching them and, once the response has
  been sent, hands an ``AuditRecord`` to the ``AuditWriter`` if the status
  was 2xx.
"""
import json
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Request

from hrms_services.audit.models import AuditedEntity, AuditRecord
from hrms_services.audit.store import EntityStore, get_entity_store, redact
from hrms_services.audit.writer import AuditWriter
from hrms_services.auth.identity import Principal
from hrms_services.auth.middleware import get_current_principal
from hrms_services.base_microservice import BaseMicroservice
from hrms_services.config import TRUST_PROXY_HEADERS

audit_service = BaseMicroservice("audit")

AUDIT_CONTEXT_KEY = "audit_context"
PRINCIPAL_KEY = "principal"
PRE_CAPTURE_METHODS = frozenset({"PUT", "PATCH", "DELETE"})
# Response bodies larger than this are not inspected for a created entity id
MAX_CAPTURED_BODY = 1024 * 1024


@dataclass
class AuditContext:
    action: str
    entity: AuditedEntity
    entity_id: Optional[str]
    old_values: Any = None
    new_values: Any = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None


def client_ip(request: Request) -> Optional[str]:
    """Caller address, preferring the first X-Forwarded-For hop behind the gateway."""
    if TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def _request_json(request: Request) -> Any:
    if "json" not in request.headers.get("Content-Type", ""):
        return None
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def audit_log(
    action: str,
    entity: AuditedEntity,
    capture_old_values: bool = False,
    capture_new_values: bool = True,
    id_param: str = "id",
):
    """
    Dependency declaring that a route is audited.

    Args:
        action: Action name recorded in the ledger (CREATE, UPDATE, APPROVE, ...)
        entity: Entity tag the route mutates
        capture_old_values: Load the entity's current state before the handler runs
        capture_new_values: Record the JSON request body as the new values
        id_param: Name of the path parameter holding the entity id

    Returns:
        Dependency function
    """
    async def capture(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        entities: EntityStore = Depends(get_entity_store),
    ) -> AuditContext:
        entity_id = request.path_params.get(id_param)
        entity_id = str(entity_id) if entity_id is not None else None

        old_values = None
        if capture_old_values and entity_id and request.method in PRE_CAPTURE_METHODS:
            try:
                old_values = await entities.load_by_id(entity, entity_id)
            except Exception as e:
                audit_service.log_error(e, context=f"Capturing old values for {entity.value} {entity_id}")

        context = AuditContext(
            action=action,
            entity=entity,
            entity_id=entity_id,
            old_values=old_values,
            new_values=redact(await _request_json(request)) if capture_new_values else None,
            source_ip=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        setattr(request.state, AUDIT_CONTEXT_KEY, context)
        return context

    return capture


def _created_entity_id(body: bytes) -> Optional[str]:
    """Best-effort id of a created entity from a ``{"data": {"id": ...}}`` envelope."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return None


class AuditMiddleware:
    """
    ASGI middleware writing one audit record per successful audited request.

    The response is passed through untouched; the record is submitted only
    after the final body chunk has been sent, and never raises into the
    request.
    """
    def __init__(self, app, writer: AuditWriter):
        self.app = app
        self.writer = writer

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        observed = {"status": None, "body": bytearray(), "overflow": False}

        async def observe_send(message):
            if message["type"] == "http.response.start":
                observed["status"] = message["status"]
            elif message["type"] == "http.response.body" and AUDIT_CONTEXT_KEY in state:
                chunk = message.get("body", b"")
                if len(observed["body"]) + len(chunk) > MAX_CAPTURED_BODY:
                    observed["overflow"] = True
                elif not observed["overflow"]:
                    observed["body"].extend(chunk)
            await send(message)

        await self.app(scope, receive, observe_send)

        context = state.get(AUDIT_CONTEXT_KEY)
        principal = state.get(PRINCIPAL_KEY)
        status = observed["status"]
        if context is None or principal is None or status is None or not 200 <= status < 300:
            return
        try:
            entity_id = context.entity_id
            if entity_id is None and not observed["overflow"] and observed["body"]:
                entity_id = _created_entity_id(bytes(observed["body"]))
            self.writer.submit(
                AuditRecord(
                    action=context.action,
                    entity_type=context.entity,
                    entity_id=entity_id,
                    actor_id=principal.id,
                    old_values=context.old_values,
                    new_values=context.new_values,
                    source_ip=context.source_ip,
                    user_agent=context.user_agent,
                )
            )
        except Exception as e:
            audit_service.log_error(e, context=f"Building audit record for {context.action} {context.entity.value}")
