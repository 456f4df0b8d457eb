"""
Shared fixtures: in-memory stores substituted for the SQLAlchemy ones.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import pytest

from hrms_services.audit.models import AuditedEntity, AuditLog, AuditQuery, AuditRecord
from hrms_services.audit.store import AuditStore, EntityStore
from hrms_services.auth.identity import IdentityStore
from hrms_services.auth.jwt import TokenService
from hrms_services.auth.models import ApprovalStatus, Role, User

TEST_SECRET = "test-secret-key-with-at-least-32-bytes"
TEST_PASSWORD = "Secret123"
# Low cost factor keeps fixture users fast to create
TEST_PASSWORD_HASH = bcrypt.hashpw(TEST_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryIdentityStore(IdentityStore):
    def __init__(self):
        self.users: Dict[str, User] = {}
        self.last_seen: Dict[str, datetime] = {}
        self.fail_last_seen = False

    def create(
        self,
        role: Role = Role.EMPLOYEE,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
        is_active: bool = True,
        employee_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        user = User(
            id=user_id,
            email=email or f"{user_id[:8]}@hrms.io",
            username=f"user_{user_id[:8]}",
            hashed_password=TEST_PASSWORD_HASH,
            role=role,
            requested_role=role,
            approval_status=approval_status,
            is_active=is_active,
            employee_id=employee_id,
        )
        self.users[user_id] = user
        return user

    async def get_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    async def get_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    async def get_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.email == email or u.username == username),
            None,
        )

    async def list_by_status(self, approval_status: ApprovalStatus) -> List[User]:
        return [u for u in self.users.values() if u.approval_status == approval_status]

    async def add(self, user: User) -> User:
        if user.id is None:
            user.id = str(uuid.uuid4())
        self.users[user.id] = user
        return user

    async def save(self, user: User) -> User:
        self.users[user.id] = user
        return user

    async def delete(self, user: User) -> None:
        self.users.pop(user.id, None)

    async def touch_last_seen(self, user_id: str, seen_at: datetime) -> None:
        if self.fail_last_seen:
            raise RuntimeError("identity store unavailable")
        self.last_seen[user_id] = seen_at


class InMemoryEntityStore(EntityStore):
    def __init__(self):
        self.rows: Dict[Tuple[AuditedEntity, str], Dict[str, Any]] = {}
        self.fail = False

    def put(self, entity: AuditedEntity, row: Dict[str, Any]) -> Dict[str, Any]:
        self.rows[(entity, str(row["id"]))] = dict(row)
        return row

    async def load_by_id(self, entity: AuditedEntity, entity_id: str) -> Optional[Dict[str, Any]]:
        if self.fail:
            raise RuntimeError("entity store unavailable")
        row = self.rows.get((entity, entity_id))
        return dict(row) if row is not None else None

    async def owner_of(self, entity: AuditedEntity, entity_id: str) -> Optional[str]:
        if entity.owner_column is None:
            return None
        row = self.rows.get((entity, entity_id))
        if row is None:
            return None
        owner = row.get(entity.owner_column)
        return str(owner) if owner is not None else None


class InMemoryAuditStore(AuditStore):
    def __init__(self):
        self.records: List[AuditRecord] = []

    async def save(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def query(self, filters: AuditQuery) -> Tuple[List[AuditLog], int]:
        matched = [
            r for r in self.records
            if (not filters.actor_id or r.actor_id == filters.actor_id)
            and (not filters.action or filters.action.lower() in r.action.lower())
            and (not filters.entity_type or filters.entity_type.lower() in r.entity_type.value.lower())
            and (not filters.date_from or r.timestamp >= filters.date_from)
            and (not filters.date_to or r.timestamp <= filters.date_to)
        ]
        matched.sort(key=lambda r: r.timestamp, reverse=True)
        start = (filters.page - 1) * filters.limit
        rows = [
            AuditLog(
                id=index + 1,
                action=r.action,
                entity_type=r.entity_type.value,
                entity_id=r.entity_id,
                actor_id=r.actor_id,
                old_values=r.old_values,
                new_values=r.new_values,
                source_ip=r.source_ip,
                user_agent=r.user_agent,
                created_at=r.timestamp,
            )
            for index, r in enumerate(matched[start:start + filters.limit], start=start)
        ]
        return rows, len(matched)


class FailingAuditStore(InMemoryAuditStore):
    async def save(self, record: AuditRecord) -> None:
        raise RuntimeError("audit database is down")


class BlockingAuditStore(InMemoryAuditStore):
    """Holds every write until ``release`` is set."""
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def save(self, record: AuditRecord) -> None:
        await self.release.wait()
        await super().save(record)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(clock):
    return TokenService(secret_key=TEST_SECRET, expires_in="7d", clock=clock)


@pytest.fixture
def identities():
    return InMemoryIdentityStore()


@pytest.fixture
def entities():
    return InMemoryEntityStore()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


def bearer(tokens: TokenService, user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {tokens.issue(user.id, user.role).access_token}"}
