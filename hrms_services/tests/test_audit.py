"""
Test cases for the audit trail: capture dependency, middleware and writer.
"""
import asyncio

import pytest
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient

from hrms_services.audit.middleware import _created_entity_id, audit_log
from hrms_services.audit.models import AuditedEntity, AuditRecord
from hrms_services.audit.store import get_entity_store, redact
from hrms_services.audit.writer import AuditWriter
from hrms_services.auth.identity import get_identity_store
from hrms_services.auth.jwt import get_token_service
from hrms_services.auth.middleware import RBACMiddleware
from hrms_services.auth.models import Role
from hrms_services.base_microservice import BaseMicroservice
from hrms_services.errors import ValidationFailed
from hrms_services.service_app import create_service_app

from conftest import BlockingAuditStore, FailingAuditStore, InMemoryAuditStore, bearer

service = BaseMicroservice("payroll")
calls = []

hr_only = RBACMiddleware.has_roles(Role.ADMIN, Role.HR)


def build_router() -> APIRouter:
    router = APIRouter()

    @router.post(
        "/payslips",
        status_code=201,
        dependencies=[Depends(hr_only), Depends(audit_log("CREATE", AuditedEntity.PAYSLIP))],
    )
    async def create_payslip(body: dict):
        calls.append("create")
        return service.success_response(data={"id": "ps-new", **body}, status_code=201)

    @router.put(
        "/payslips/{id}",
        dependencies=[
            Depends(hr_only),
            Depends(audit_log("UPDATE", AuditedEntity.PAYSLIP, capture_old_values=True)),
        ],
    )
    async def update_payslip(id: str, body: dict):
        calls.append(f"update:{id}")
        if body.get("net_salary", 0) < 0:
            raise ValidationFailed("Net salary cannot be negative")
        return service.success_response(data={"id": id, **body})

    @router.delete(
        "/payslips/{id}",
        dependencies=[
            Depends(hr_only),
            Depends(audit_log("DELETE", AuditedEntity.PAYSLIP, capture_old_values=True)),
        ],
    )
    async def delete_payslip(id: str):
        calls.append(f"delete:{id}")
        return service.success_response(message="Payslip deleted")

    return router


def build_app(tokens, identities, entities, audit_store):
    calls.clear()
    app = create_service_app("payroll", [build_router()], audit_store=audit_store)
    app.dependency_overrides[get_token_service] = lambda: tokens
    app.dependency_overrides[get_identity_store] = lambda: identities
    app.dependency_overrides[get_entity_store] = lambda: entities
    return app


@pytest.fixture
def hr(identities):
    return identities.create(role=Role.HR)


def test_update_writes_one_record_with_old_and_new_values(tokens, identities, entities, audit_store, hr):
    entities.put(AuditedEntity.PAYSLIP, {"id": "ps-1", "employee_id": "emp-1", "net_salary": 1000})
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.put(
            "/payslips/ps-1",
            json={"net_salary": 1200},
            headers={**bearer(tokens, hr), "User-Agent": "pytest", "X-Forwarded-For": "10.1.2.3, 172.16.0.1"},
        )
        assert response.status_code == 200

    assert len(audit_store.records) == 1
    record = audit_store.records[0]
    assert record.action == "UPDATE"
    assert record.entity_type == AuditedEntity.PAYSLIP
    assert record.entity_id == "ps-1"
    assert record.actor_id == hr.id
    assert record.old_values == {"id": "ps-1", "employee_id": "emp-1", "net_salary": 1000}
    assert record.new_values == {"net_salary": 1200}
    assert record.source_ip == "10.1.2.3"
    assert record.user_agent == "pytest"
    assert record.timestamp is not None


def test_response_is_unchanged_by_auditing(tokens, identities, entities, audit_store, hr):
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.post("/payslips", json={"employee_id": "emp-1"}, headers=bearer(tokens, hr))

    assert response.status_code == 201
    assert response.json() == {"status": "success", "data": {"id": "ps-new", "employee_id": "emp-1"}}


def test_create_takes_entity_id_from_response(tokens, identities, entities, audit_store, hr):
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        client.post("/payslips", json={"employee_id": "emp-1"}, headers=bearer(tokens, hr))

    assert len(audit_store.records) == 1
    record = audit_store.records[0]
    assert record.action == "CREATE"
    assert record.entity_id == "ps-new"
    assert record.old_values is None
    assert record.new_values == {"employee_id": "emp-1"}


def test_delete_captures_old_values(tokens, identities, entities, audit_store, hr):
    entities.put(AuditedEntity.PAYSLIP, {"id": "ps-1", "employee_id": "emp-1"})
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        assert client.delete("/payslips/ps-1", headers=bearer(tokens, hr)).status_code == 200

    assert [r.action for r in audit_store.records] == ["DELETE"]
    assert audit_store.records[0].old_values == {"id": "ps-1", "employee_id": "emp-1"}


def test_failed_handler_writes_no_record(tokens, identities, entities, audit_store, hr):
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.put("/payslips/ps-1", json={"net_salary": -1}, headers=bearer(tokens, hr))

    assert response.status_code == 400
    assert response.json()["kind"] == "ValidationError"
    assert calls == ["update:ps-1"]
    assert audit_store.records == []


def test_unauthenticated_request_writes_no_record(tokens, identities, entities, audit_store):
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.put("/payslips/ps-1", json={"net_salary": 1})

    assert response.status_code == 401
    assert calls == []
    assert audit_store.records == []


def test_unauthorized_request_writes_no_record(tokens, identities, entities, audit_store):
    employee = identities.create(role=Role.EMPLOYEE, employee_id="emp-1")
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.put("/payslips/ps-1", json={"net_salary": 1}, headers=bearer(tokens, employee))

    assert response.status_code == 403
    assert calls == []
    assert audit_store.records == []


def test_old_value_capture_failure_still_audits(tokens, identities, entities, audit_store, hr, caplog):
    entities.fail = True
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        response = client.put("/payslips/ps-1", json={"net_salary": 5}, headers=bearer(tokens, hr))

    assert response.status_code == 200
    assert len(audit_store.records) == 1
    assert audit_store.records[0].old_values is None
    assert "Capturing old values" in caplog.text


def test_audit_store_failure_does_not_change_response(tokens, identities, entities, hr, caplog):
    """Test that a failing audit store is logged and never surfaces to the client."""
    store = FailingAuditStore()
    app = build_app(tokens, identities, entities, store)

    with TestClient(app) as client:
        response = client.put("/payslips/ps-1", json={"net_salary": 5}, headers=bearer(tokens, hr))

    assert response.status_code == 200
    assert response.json()["data"] == {"id": "ps-1", "net_salary": 5}
    assert app.state.audit_writer.failed == 1
    assert "AuditWriteFailure" in caplog.text


def test_passwords_are_redacted_from_new_values(tokens, identities, entities, audit_store, hr):
    app = build_app(tokens, identities, entities, audit_store)

    with TestClient(app) as client:
        client.put(
            "/payslips/ps-1",
            json={"net_salary": 5, "password": "hunter22", "meta": {"token": "abc", "note": "x"}},
            headers=bearer(tokens, hr),
        )

    assert audit_store.records[0].new_values == {"net_salary": 5, "meta": {"note": "x"}}


def test_writer_not_running_drops_record():
    writer = AuditWriter(InMemoryAuditStore())
    record = AuditRecord(action="UPDATE", entity_type=AuditedEntity.LEAVE, entity_id="1", actor_id="u")

    assert writer.submit(record) is False
    assert writer.dropped == 1


@pytest.mark.asyncio
async def test_writer_persists_in_background():
    store = InMemoryAuditStore()
    writer = AuditWriter(store)
    writer.start()
    try:
        assert writer.submit(
            AuditRecord(action="APPROVE", entity_type=AuditedEntity.LEAVE, entity_id="7", actor_id="u")
        )
        await writer.join()
        assert [r.entity_id for r in store.records] == ["7"]
        assert writer.written == 1
    finally:
        await writer.stop()
    assert not writer.running


@pytest.mark.asyncio
async def test_writer_drops_when_queue_full():
    """Test that a full queue drops records instead of blocking the caller."""
    store = BlockingAuditStore()
    writer = AuditWriter(store, max_queue_size=1)
    writer.start()

    def record(n):
        return AuditRecord(action="UPDATE", entity_type=AuditedEntity.ATTENDANCE, entity_id=str(n), actor_id="u")

    assert writer.submit(record(1))
    await asyncio.sleep(0)  # worker picks up record 1 and blocks on the store
    assert writer.submit(record(2))
    assert writer.submit(record(3)) is False
    assert writer.dropped == 1

    store.release.set()
    await writer.stop()
    assert [r.entity_id for r in store.records] == ["1", "2"]


@pytest.mark.asyncio
async def test_writer_stop_drains_queue():
    store = InMemoryAuditStore()
    writer = AuditWriter(store)
    writer.start()
    for n in range(5):
        writer.submit(AuditRecord(action="CREATE", entity_type=AuditedEntity.LEAVE, entity_id=str(n), actor_id="u"))

    await writer.stop()

    assert len(store.records) == 5


@pytest.mark.asyncio
async def test_writer_times_out_hung_store(caplog):
    """Test that a hung audit store does not stall the writer or its shutdown."""
    store = BlockingAuditStore()
    writer = AuditWriter(store, write_timeout=0.05)
    writer.start()
    writer.submit(AuditRecord(action="UPDATE", entity_type=AuditedEntity.PAYSLIP, entity_id="1", actor_id="u"))
    writer.submit(AuditRecord(action="UPDATE", entity_type=AuditedEntity.PAYSLIP, entity_id="2", actor_id="u"))

    await asyncio.wait_for(writer.stop(), timeout=5)

    assert writer.failed == 2
    assert writer.written == 0
    assert store.records == []
    assert "timed out after 0.05s" in caplog.text


def test_redact_nested_values():
    values = {
        "email": "a@b.io",
        "hashed_password": "$2b$...",
        "items": [{"access_token": "x", "amount": 3}],
    }

    assert redact(values) == {"email": "a@b.io", "items": [{"amount": 3}]}
    assert redact(None) is None


@pytest.mark.parametrize(
    "body, expected",
    [
        (b'{"status": "success", "data": {"id": 42}}', "42"),
        (b'{"status": "success", "data": [1, 2]}', None),
        (b'{"status": "success"}', None),
        (b"not json", None),
    ],
)
def test_created_entity_id(body, expected):
    assert _created_entity_id(body) == expected
