"""
User management service.

This module provides functionality for:
- User registration (pending admin approval)
- Login and token issue
- Approval, rejection, deactivation and reactivation by an admin
- Account edits and removal by an admin
- Password change by the account owner
"""
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from hrms_services.auth.identity import IdentityStore, Principal
from hrms_services.auth.jwt import IssuedToken, TokenService
from hrms_services.auth.middleware import check_account_status
from hrms_services.auth.models import ApprovalStatus, Role, User
from hrms_services.base_microservice import utcnow
from hrms_services.errors import Conflict, InvalidCredentials, NotFound, ValidationFailed


class UserCreate(BaseModel):
    """Model for user registration."""
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    requested_role: Role = Role.EMPLOYEE
    employee_id: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_must_be_valid(cls, v):
        if not v.strip() or " " in v:
            raise ValueError("Username must not contain spaces")
        return v


class UserLogin(BaseModel):
    """Model for user login."""
    email: EmailStr
    password: str = Field(..., min_length=6)


class RejectUser(BaseModel):
    reason: Optional[str] = None


class UserUpdate(BaseModel):
    """Model for an admin edit of an account. Only the fields sent are applied."""
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    employee_id: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_must_be_valid(cls, v):
        if v is not None and (not v.strip() or " " in v):
            raise ValueError("Username must not contain spaces")
        return v


class ChangePassword(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)
    confirm_password: str = Field(..., min_length=6)

    @model_validator(mode="after")
    def passwords_must_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class UserOut(BaseModel):
    """Model for user information returned to clients."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    role: Role
    requested_role: Optional[Role] = None
    approval_status: ApprovalStatus
    is_active: bool
    employee_id: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class UserService:
    """
    Service for user lifecycle operations.
    """
    def __init__(self, identities: IdentityStore, tokens: TokenService):
        self.identities = identities
        self.tokens = tokens

    async def register_user(self, user_data: UserCreate) -> UserOut:
        """
        Register a new user awaiting admin approval.

        The account always starts as a PENDING EMPLOYEE; the requested role is
        granted on approval.

        Raises:
            Conflict: If the username or email is already registered
        """
        existing = await self.identities.get_by_email_or_username(user_data.email, user_data.username)
        if existing is not None:
            raise Conflict("User with this email or username already exists")

        user = User(
            username=user_data.username,
            email=user_data.email,
            hashed_password=User.get_password_hash(user_data.password),
            role=Role.EMPLOYEE,
            requested_role=user_data.requested_role,
            approval_status=ApprovalStatus.PENDING,
            is_active=True,
            employee_id=user_data.employee_id,
            created_at=utcnow(),
        )
        user = await self.identities.add(user)
        return UserOut.model_validate(user)

    async def authenticate_user(self, login_data: UserLogin) -> Tuple[UserOut, IssuedToken]:
        """
        Check credentials and issue a token.

        Raises:
            InvalidCredentials: If the email is unknown or the password is wrong
            PendingApproval: If the account is not approved
            Deactivated: If the account is deactivated
        """
        user = await self.identities.get_by_email(login_data.email)
        if user is None or not user.verify_password(login_data.password):
            raise InvalidCredentials()
        check_account_status(user)

        token = self.tokens.issue(user.id, user.role)
        user.last_login = utcnow()
        user = await self.identities.save(user)
        return UserOut.model_validate(user), token

    async def get_user(self, user_id: str) -> User:
        user = await self.identities.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def pending_users(self) -> List[UserOut]:
        users = await self.identities.list_by_status(ApprovalStatus.PENDING)
        return [UserOut.model_validate(u) for u in users]

    async def approve_user(self, user_id: str, admin: Principal) -> UserOut:
        """Approve a registration, granting the requested role."""
        user = await self.get_user(user_id)
        if user.approval_status == ApprovalStatus.APPROVED:
            raise Conflict("User already approved")
        user.approval_status = ApprovalStatus.APPROVED
        user.role = user.requested_role or user.role
        user.approved_by = admin.id
        user.approved_at = utcnow()
        user.rejection_reason = None
        return UserOut.model_validate(await self.identities.save(user))

    async def reject_user(self, user_id: str, admin: Principal, reason: Optional[str] = None) -> UserOut:
        """Reject a registration."""
        user = await self.get_user(user_id)
        user.approval_status = ApprovalStatus.REJECTED
        user.approved_by = admin.id
        user.approved_at = utcnow()
        user.rejection_reason = reason or "No reason provided"
        return UserOut.model_validate(await self.identities.save(user))

    async def set_active(self, user_id: str, admin: Principal, is_active: bool) -> UserOut:
        """
        Activate or deactivate an account.

        Deactivation takes effect on the next request of that user: tokens are
        not revoked, but authentication rechecks the active flag every time.
        """
        if user_id == admin.id and not is_active:
            raise ValidationFailed("Cannot deactivate your own account")
        user = await self.get_user(user_id)
        user.is_active = is_active
        return UserOut.model_validate(await self.identities.save(user))

    async def update_user(self, user_id: str, admin: Principal, user_data: UserUpdate) -> UserOut:
        """
        Apply an admin edit to an account.

        Raises:
            NotFound: If the user does not exist
            Conflict: If the new email or username belongs to another account
            ValidationFailed: If the admin deactivates their own account
        """
        changes = user_data.model_dump(exclude_unset=True)
        if user_id == admin.id and changes.get("is_active") is False:
            raise ValidationFailed("Cannot deactivate your own account")
        user = await self.get_user(user_id)

        email = changes.get("email")
        if email and email != user.email and await self.identities.get_by_email(email) is not None:
            raise Conflict("Email already taken")
        username = changes.get("username")
        if username and username != user.username and await self.identities.get_by_username(username) is not None:
            raise Conflict("Username already taken")

        for field, value in changes.items():
            # Only employee_id may be cleared explicitly
            if value is None and field != "employee_id":
                continue
            setattr(user, field, value)
        return UserOut.model_validate(await self.identities.save(user))

    async def delete_user(self, user_id: str, admin: Principal) -> None:
        if user_id == admin.id:
            raise ValidationFailed("Cannot delete your own account")
        user = await self.get_user(user_id)
        await self.identities.delete(user)

    async def change_password(self, principal: Principal, password_data: ChangePassword) -> None:
        """
        Replace the caller's password after checking the current one.

        Issued tokens stay valid until they expire.

        Raises:
            ValidationFailed: If the current password is wrong
        """
        user = await self.get_user(principal.id)
        if not user.verify_password(password_data.current_password):
            raise ValidationFailed("Current password is incorrect")
        user.hashed_password = User.get_password_hash(password_data.new_password)
        await self.identities.save(user)
