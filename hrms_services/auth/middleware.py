"""
Authentication and authorization middleware.

This module provides FastAPI dependencies for:
- Bearer token authentication with a fresh principal lookup
- Role allow-lists
- The ownership rule on employee-scoped resources
"""
from typing import Iterable, Optional

from fastapi import Depends, Request

from hrms_services.audit.models import AuditedEntity
from hrms_services.audit.store import EntityStore, get_entity_store
from hrms_services.auth.identity import IdentityStore, Principal, get_identity_store
from hrms_services.auth.jwt import TokenService, get_token_service
from hrms_services.auth.models import PRIVILEGED_ROLES, ApprovalStatus, Role, User
from hrms_services.base_microservice import BaseMicroservice, utcnow
from hrms_services.errors import (
    Deactivated,
    InsufficientRole,
    NoCredential,
    NotOwner,
    PendingApproval,
    UnknownSubject,
    ValidationFailed,
)

auth_service = BaseMicroservice("auth.middleware")


def extract_bearer_token(header: Optional[str]) -> str:
    """
    Pull the token out of an ``Authorization: Bearer <token>`` header.

    Raises:
        NoCredential: If the header is missing, not a Bearer header, or empty
    """
    if not header:
        raise NoCredential()
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise NoCredential()
    return token


def check_account_status(user: User) -> None:
    """
    Reject accounts that are not approved or not active.

    Raises:
        PendingApproval: If the account is pending or was rejected
        Deactivated: If the account has been deactivated
    """
    if user.approval_status == ApprovalStatus.REJECTED:
        raise PendingApproval("Account registration was rejected by admin")
    if user.approval_status != ApprovalStatus.APPROVED:
        raise PendingApproval()
    if not user.is_active:
        raise Deactivated()


async def get_current_principal(
    request: Request,
    tokens: TokenService = Depends(get_token_service),
    identities: IdentityStore = Depends(get_identity_store),
) -> Principal:
    """
    FastAPI dependency that authenticates the request.

    Only the subject id is taken from the token; role, approval and active
    status come from the identity store on every request.

    Returns:
        The principal, also attached as ``request.state.principal``

    Raises:
        AuthenticationError: Any 401 from the taxonomy
    """
    raw_token = extract_bearer_token(request.headers.get("Authorization"))
    claims = tokens.verify(raw_token)

    user = await identities.get_by_id(claims.sub)
    if user is None:
        raise UnknownSubject()
    check_account_status(user)

    principal = Principal.from_user(user)
    request.state.principal = principal

    try:
        await identities.touch_last_seen(user.id, utcnow())
    except Exception as e:
        auth_service.log_error(e, context=f"Recording last seen for user {user.id}")

    return principal


def check_role(principal: Principal, roles: Iterable[Role]) -> None:
    """Raise InsufficientRole unless the principal's role is in ``roles``."""
    allowed = {Role(r) for r in roles}
    if principal.role not in allowed:
        raise InsufficientRole()


async def check_ownership(
    principal: Principal,
    entity: AuditedEntity,
    resource_id: str,
    entities: EntityStore,
) -> None:
    """
    Apply the ownership rule to one resource.

    ADMIN and HR bypass the check. An EMPLOYEE passes only when the resource's
    owning employee, resolved from the store, is their linked employee.

    Raises:
        NotOwner: If the principal may not access the resource
    """
    if principal.role in PRIVILEGED_ROLES:
        return
    if principal.role != Role.EMPLOYEE or not principal.linked_employee_id:
        raise NotOwner()
    owner_id = await entities.owner_of(entity, resource_id)
    if owner_id is None or owner_id != principal.linked_employee_id:
        raise NotOwner()


class RBACMiddleware:
    """
    Role-Based Access Control middleware.

    Creates FastAPI dependencies for protecting routes based on:
    - Authentication
    - Role allow-lists
    - Ownership of employee-scoped resources
    """

    @staticmethod
    def authenticated():
        """Dependency that only requires a valid principal."""
        async def verify_authenticated(principal: Principal = Depends(get_current_principal)):
            return principal

        return verify_authenticated

    @staticmethod
    def has_roles(*roles: Role):
        """
        Dependency to check if the principal has any of the specified roles.

        Args:
            roles: Acceptable roles (any match is sufficient)

        Returns:
            Dependency function
        """
        return RBACMiddleware.authorize(roles=roles)

    @staticmethod
    def is_owner(entity: AuditedEntity, id_param: str = "id"):
        """
        Dependency enforcing the ownership rule on the resource in the path.

        Args:
            entity: Kind of resource the path parameter identifies
            id_param: Name of the path parameter holding the resource id

        Returns:
            Dependency function
        """
        return RBACMiddleware.authorize(owner=entity, id_param=id_param)

    @staticmethod
    def authorize(
        roles: Optional[Iterable[Role]] = None,
        owner: Optional[AuditedEntity] = None,
        id_param: str = "id",
    ):
        """
        Dependency composing the role allow-list and the ownership rule.

        Authentication runs first, then the role check, then ownership; the
        first failing rule decides the error.

        Args:
            roles: Acceptable roles, or None for any authenticated principal
            owner: Entity whose ownership is checked, or None to skip the rule
            id_param: Name of the path parameter holding the resource id

        Returns:
            Dependency function
        """
        allowed = tuple(roles) if roles else None

        async def verify_access(
            request: Request,
            principal: Principal = Depends(get_current_principal),
            entities: EntityStore = Depends(get_entity_store),
        ) -> Principal:
            if allowed is not None:
                check_role(principal, allowed)
            if owner is not None:
                resource_id = request.path_params.get(id_param)
                if resource_id is None:
                    raise ValidationFailed(f"Missing resource id parameter: {id_param}")
                await check_ownership(principal, owner, str(resource_id), entities)
            return principal

        return verify_access
