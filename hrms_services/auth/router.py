"""
Authentication router.

This module provides the FastAPI router for the auth service:
- Registration and login
- Current user profile, password change and logout
- User approval workflow and account management (admin only)
- Audit log query surface (admin only)
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from hrms_services.audit.models import AuditedEntity, AuditLogOut, AuditQuery
from hrms_services.audit.middleware import audit_log
from hrms_services.audit.store import AuditStore, get_audit_store
from hrms_services.auth.identity import IdentityStore, Principal, get_identity_store
from hrms_services.auth.jwt import TokenService, get_token_service
from hrms_services.auth.middleware import RBACMiddleware
from hrms_services.auth.models import Role
from hrms_services.auth.users import (
    ChangePassword,
    RejectUser,
    UserCreate,
    UserLogin,
    UserOut,
    UserService,
    UserUpdate,
)
from hrms_services.base_microservice import BaseMicroservice

router = APIRouter(tags=["auth"])

base_service = BaseMicroservice("auth")

admin_only = RBACMiddleware.has_roles(Role.ADMIN)


def get_user_service(
    identities: IdentityStore = Depends(get_identity_store),
    tokens: TokenService = Depends(get_token_service),
) -> UserService:
    return UserService(identities, tokens)


# --- Basic Auth Endpoints ---

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: UserCreate,
    users: UserService = Depends(get_user_service),
):
    """Register a new user. The account stays PENDING until an admin approves it."""
    user = await users.register_user(user_data)
    base_service.log_event("user.registered", {"id": user.id, "requested_role": user.requested_role})
    return base_service.success_response(
        data=user,
        message="Signup submitted. Awaiting admin approval.",
        status_code=status.HTTP_201_CREATED,
    )


@router.post("/login")
async def login(
    login_data: UserLogin,
    users: UserService = Depends(get_user_service),
):
    """Authenticate with email and password and return a bearer token."""
    try:
        user, token = await users.authenticate_user(login_data)
    except Exception as e:
        base_service.log_event("user.login.failed", {"email": login_data.email, "reason": str(e)})
        raise
    base_service.log_event("user.login", {"id": user.id})
    return base_service.success_response(
        data={
            "user": user,
            "token": token.access_token,
            "token_type": token.token_type,
            "expires_at": token.expires_at,
        },
        message="Login successful",
    )


@router.get("/me")
async def get_profile(
    principal: Principal = Depends(RBACMiddleware.authenticated()),
    users: UserService = Depends(get_user_service),
):
    """Current user's profile."""
    user = await users.get_user(principal.id)
    return base_service.success_response(data=UserOut.model_validate(user))


@router.put("/change-password")
async def change_password(
    password_data: ChangePassword,
    principal: Principal = Depends(RBACMiddleware.authenticated()),
    users: UserService = Depends(get_user_service),
):
    await users.change_password(principal, password_data)
    base_service.log_event("user.password_changed", {"id": principal.id})
    return base_service.success_response(message="Password changed successfully")


@router.post("/logout")
async def logout(principal: Principal = Depends(RBACMiddleware.authenticated())):
    """Tokens are stateless; the client discards its copy."""
    base_service.log_event("user.logout", {"id": principal.id})
    return base_service.success_response(message="Logout successful")


# --- User approval (admin only) ---

@router.get("/users/pending", dependencies=[Depends(admin_only)])
async def get_pending_users(users: UserService = Depends(get_user_service)):
    """Users awaiting approval, newest first."""
    pending = await users.pending_users()
    return base_service.success_response(data=pending)


@router.put(
    "/users/{id}/approve",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("APPROVE", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def approve_user(
    id: str,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    user = await users.approve_user(id, admin)
    base_service.log_event("user.approved", {"id": id, "by": admin.id})
    return base_service.success_response(data=user, message="User approved")


@router.put(
    "/users/{id}/reject",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("REJECT", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def reject_user(
    id: str,
    body: Optional[RejectUser] = None,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    user = await users.reject_user(id, admin, body.reason if body else None)
    base_service.log_event("user.rejected", {"id": id, "by": admin.id})
    return base_service.success_response(data=user, message="User rejected")


@router.put(
    "/users/{id}/deactivate",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("DEACTIVATE", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def deactivate_user(
    id: str,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    user = await users.set_active(id, admin, False)
    base_service.log_event("user.deactivated", {"id": id, "by": admin.id})
    return base_service.success_response(data=user, message="User deactivated")


@router.put(
    "/users/{id}/activate",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("ACTIVATE", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def activate_user(
    id: str,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    user = await users.set_active(id, admin, True)
    base_service.log_event("user.activated", {"id": id, "by": admin.id})
    return base_service.success_response(data=user, message="User activated")


@router.put(
    "/users/{id}",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("UPDATE", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def update_user(
    id: str,
    user_data: UserUpdate,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    user = await users.update_user(id, admin, user_data)
    base_service.log_event("user.updated", {"id": id, "by": admin.id})
    return base_service.success_response(data=user, message="User updated")


@router.delete(
    "/users/{id}",
    dependencies=[
        Depends(admin_only),
        Depends(audit_log("DELETE", AuditedEntity.USER, capture_old_values=True)),
    ],
)
async def delete_user(
    id: str,
    admin: Principal = Depends(admin_only),
    users: UserService = Depends(get_user_service),
):
    await users.delete_user(id, admin)
    base_service.log_event("user.deleted", {"id": id, "by": admin.id})
    return base_service.success_response(message="User deleted")


# --- Audit query surface (admin only) ---

@router.get("/audit-logs", dependencies=[Depends(admin_only)])
async def get_audit_logs(
    actor_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    audit: AuditStore = Depends(get_audit_store),
):
    """Read-only, filtered and paginated listing of the audit ledger."""
    filters = AuditQuery(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    rows, total = await audit.query(filters)
    return base_service.paginated_response(
        [AuditLogOut.model_validate(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
    )
