"""
Audit trail models.

This module defines:
- AuditedEntity, the explicit per-route tag naming what a route mutates
- The SQLAlchemy AuditLog model (append-only)
- The AuditRecord value passed from the middleware to the writer
"""
import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String

from hrms_services.base_microservice import Base, utcnow


class AuditedEntity(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    DEPARTMENT = "DEPARTMENT"
    POSITION = "POSITION"
    LEAVE = "LEAVE"
    ATTENDANCE = "ATTENDANCE"
    PAYSLIP = "PAYSLIP"
    PERFORMANCE_REVIEW = "PERFORMANCE_REVIEW"
    USER = "USER"
    COMPANY = "COMPANY"
    ANNOUNCEMENT = "ANNOUNCEMENT"

    @property
    def table_name(self) -> str:
        return ENTITY_TABLES[self][0]

    @property
    def owner_column(self) -> Optional[str]:
        """Column holding the owning employee id, or None if not employee scoped."""
        return ENTITY_TABLES[self][1]


# entity -> (table, owning employee column)
ENTITY_TABLES = {
    AuditedEntity.EMPLOYEE: ("employees", "id"),
    AuditedEntity.DEPARTMENT: ("departments", None),
    AuditedEntity.POSITION: ("positions", None),
    AuditedEntity.LEAVE: ("leaves", "employee_id"),
    AuditedEntity.ATTENDANCE: ("attendances", "employee_id"),
    AuditedEntity.PAYSLIP: ("payslips", "employee_id"),
    AuditedEntity.PERFORMANCE_REVIEW: ("performance_reviews", "employee_id"),
    AuditedEntity.USER: ("users", "employee_id"),
    AuditedEntity.COMPANY: ("companies", None),
    AuditedEntity.ANNOUNCEMENT: ("announcements", None),
}


class AuditLog(Base):
    """Append-only audit ledger. Rows are never updated or deleted."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(64), nullable=True)
    actor_id = Column(String(36), nullable=False, index=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    source_ip = Column(String(45), nullable=True)  # Support IPv6
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_actor_action", "actor_id", "action"),
        Index("idx_audit_created_entity", "created_at", "entity_type"),
    )


class AuditRecord(BaseModel):
    """One audit entry, built after a successful mutating request."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    action: str
    entity_type: AuditedEntity
    entity_id: Optional[str] = None
    actor_id: str
    old_values: Optional[Any] = None
    new_values: Optional[Any] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AuditLogOut(BaseModel):
    """Audit log row returned by the query surface."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    actor_id: str
    old_values: Optional[Any] = None
    new_values: Optional[Any] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class AuditQuery(BaseModel):
    """Filters for the audit query surface."""
    actor_id: Optional[str] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
