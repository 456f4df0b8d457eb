"""
Stores consumed by the authorization and audit layers.

- EntityStore: loads collaborator entities (employees, leaves, payslips, ...)
  by id and resolves the employee that owns them.
- AuditStore: appends audit records and serves the filtered audit listing.

The entity tables belong to the HR services, so they are addressed through
lightweight ``table()``/``column()`` constructs instead of mapped models.
"""
from typing import Any, Dict, List, Optional, Tuple

from fastapi.encoders import jsonable_encoder
from sqlalchemy import column, func, literal_column, select, table

from hrms_services.audit.models import AuditedEntity, AuditLog, AuditQuery, AuditRecord
from hrms_services.base_microservice import AsyncSessionLocal

# Never copied into the audit ledger
SENSITIVE_FIELDS = frozenset({
    "password",
    "hashed_password",
    "current_password",
    "new_password",
    "confirm_password",
    "token",
    "access_token",
    "refresh_token",
})


def redact(values: Any) -> Any:
    """Drop credential fields from a captured snapshot or request body."""
    if isinstance(values, dict):
        return {k: redact(v) for k, v in values.items() if k.lower() not in SENSITIVE_FIELDS}
    if isinstance(values, list):
        return [redact(v) for v in values]
    return values


class EntityStore:
    """Read access to the current state of audited entities."""

    async def load_by_id(self, entity: AuditedEntity, entity_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def owner_of(self, entity: AuditedEntity, entity_id: str) -> Optional[str]:
        raise NotImplementedError


class SQLAlchemyEntityStore(EntityStore):
    """Entity store reading the HR tables directly."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def load_by_id(self, entity: AuditedEntity, entity_id: str) -> Optional[Dict[str, Any]]:
        query = select(literal_column("*")).select_from(table(entity.table_name)).where(
            column("id") == entity_id
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            row = result.mappings().first()
        return redact(jsonable_encoder(dict(row))) if row is not None else None

    async def owner_of(self, entity: AuditedEntity, entity_id: str) -> Optional[str]:
        owner_column = entity.owner_column
        if owner_column is None:
            return None
        query = select(column(owner_column)).select_from(table(entity.table_name)).where(
            column("id") == entity_id
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            owner = result.scalar_one_or_none()
        return str(owner) if owner is not None else None


class AuditStore:
    """Append-only audit persistence."""

    async def save(self, record: AuditRecord) -> None:
        raise NotImplementedError

    async def query(self, filters: AuditQuery) -> Tuple[List[AuditLog], int]:
        raise NotImplementedError


class SQLAlchemyAuditStore(AuditStore):
    """Audit store backed by the ``audit_logs`` table."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def save(self, record: AuditRecord) -> None:
        async with self.session_factory() as session:
            session.add(
                AuditLog(
                    action=record.action,
                    entity_type=record.entity_type.value,
                    entity_id=record.entity_id,
                    actor_id=record.actor_id,
                    old_values=jsonable_encoder(record.old_values),
                    new_values=jsonable_encoder(record.new_values),
                    source_ip=record.source_ip,
                    user_agent=record.user_agent,
                    created_at=record.timestamp,
                )
            )
            await session.commit()

    async def query(self, filters: AuditQuery) -> Tuple[List[AuditLog], int]:
        """
        List audit rows matching the filters, newest first.

        Args:
            filters: Actor, action, entity type and date range filters plus pagination

        Returns:
            Tuple of the requested page of rows and the total match count
        """
        conditions = []
        if filters.actor_id:
            conditions.append(AuditLog.actor_id == filters.actor_id)
        if filters.action:
            conditions.append(AuditLog.action.ilike(f"%{filters.action}%"))
        if filters.entity_type:
            conditions.append(AuditLog.entity_type.ilike(f"%{filters.entity_type}%"))
        if filters.date_from:
            conditions.append(AuditLog.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(AuditLog.created_at <= filters.date_to)

        query = (
            select(AuditLog)
            .where(*conditions)
            .order_by(AuditLog.created_at.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        count_query = select(func.count()).select_from(AuditLog).where(*conditions)

        async with self.session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            total = (await session.execute(count_query)).scalar_one()
        return list(rows), total


entity_store = SQLAlchemyEntityStore()
audit_store = SQLAlchemyAuditStore()


def get_entity_store() -> EntityStore:
    """FastAPI dependency returning the entity store."""
    return entity_store


def get_audit_store() -> AuditStore:
    """FastAPI dependency returning the audit store."""
    return audit_store
