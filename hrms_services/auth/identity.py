"""
Identity store access.

Services never trust more than the subject id and role from a token; the
principal is always reloaded through an ``IdentityStore``. The SQLAlchemy
implementation is used in deployment, tests substitute an in-memory store
through ``app.dependency_overrides[get_identity_store]``.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete as sa_delete
from sqlalchemy import select, update

from hrms_services.auth.models import ApprovalStatus, Role, User
from hrms_services.base_microservice import AsyncSessionLocal, utcnow


class Principal(BaseModel):
    """The authenticated identity attached to a request."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    email: str
    username: str
    role: Role
    approval_status: ApprovalStatus
    is_active: bool
    linked_employee_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            role=user.role,
            approval_status=user.approval_status,
            is_active=user.is_active,
            linked_employee_id=user.employee_id,
        )


class IdentityStore:
    """Lookup interface for principals."""

    async def get_by_id(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    async def get_by_email(self, email: str) -> Optional[User]:
        raise NotImplementedError

    async def get_by_username(self, username: str) -> Optional[User]:
        raise NotImplementedError

    async def get_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        raise NotImplementedError

    async def list_by_status(self, approval_status: ApprovalStatus) -> List[User]:
        raise NotImplementedError

    async def add(self, user: User) -> User:
        raise NotImplementedError

    async def save(self, user: User) -> User:
        raise NotImplementedError

    async def delete(self, user: User) -> None:
        raise NotImplementedError

    async def touch_last_seen(self, user_id: str, seen_at: datetime) -> None:
        raise NotImplementedError


class SQLAlchemyIdentityStore(IdentityStore):
    """Identity store backed by the ``users`` table."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def get_by_id(self, user_id: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where((User.email == email) | (User.username == username)).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_by_status(self, approval_status: ApprovalStatus) -> List[User]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User)
                .where(User.approval_status == approval_status)
                .order_by(User.created_at.desc())
            )
            return list(result.scalars().all())

    async def add(self, user: User) -> User:
        async with self.session_factory() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def save(self, user: User) -> User:
        user.updated_at = utcnow()
        async with self.session_factory() as session:
            merged = await session.merge(user)
            await session.commit()
            await session.refresh(merged)
            return merged

    async def delete(self, user: User) -> None:
        async with self.session_factory() as session:
            await session.execute(sa_delete(User).where(User.id == user.id))
            await session.commit()

    async def touch_last_seen(self, user_id: str, seen_at: datetime) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(last_login=seen_at)
            )
            await session.commit()


identity_store = SQLAlchemyIdentityStore()


def get_identity_store() -> IdentityStore:
    """FastAPI dependency returning the identity store."""
    return identity_store
