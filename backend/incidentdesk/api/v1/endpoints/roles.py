"""
roles.py - Role assignment endpoints.

Who may grant or revoke at a scope:

    system        system_admin
    organization  system_admin, org_admin of that organization
    event         system_admin, event_admin (direct or inherited) of that event
"""

import logging

from fastapi import APIRouter, Depends, status

from incidentdesk.api.deps import forbidden, get_authorization, get_current_user_id, respond
from incidentdesk.core.errors import ErrorKind
from incidentdesk.core.roles import RoleName, ScopeType
from incidentdesk.schemas.role import RoleAssignment
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.results import ServiceResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _can_manage(authz: AuthorizationService, user_id: str, scope_type: ScopeType, scope_id: str | None) -> bool:
    if authz.is_system_admin(user_id):
        return True
    if scope_type == ScopeType.ORGANIZATION and scope_id:
        return authz.has_role(user_id, [RoleName.ORG_ADMIN], ScopeType.ORGANIZATION, scope_id)
    if scope_type == ScopeType.EVENT and scope_id:
        return authz.has_event_level(user_id, scope_id, RoleName.EVENT_ADMIN)
    return False


def _parse_scope(request: RoleAssignment) -> ScopeType | None:
    try:
        return ScopeType(request.scope_type)
    except ValueError:
        return None


@router.post("", status_code=status.HTTP_201_CREATED, summary="Grant a role")
def grant_role(
    request: RoleAssignment,
    user_id: str = Depends(get_current_user_id),
    authz: AuthorizationService = Depends(get_authorization),
):
    scope_type = _parse_scope(request)
    if scope_type is None:
        return respond(ServiceResult.fail(ErrorKind.VALIDATION, "Invalid scope type."))
    if not _can_manage(authz, user_id, scope_type, request.scope_id):
        return forbidden("Insufficient permissions to manage roles at this scope.")

    if not authz.grant_role(request.user_id, request.role_name, scope_type, request.scope_id, granted_by=user_id):
        return respond(ServiceResult.fail(ErrorKind.VALIDATION, "Failed to grant role."))
    return respond(ServiceResult.ok({"message": "Role granted."}), status.HTTP_201_CREATED)


@router.delete("", summary="Revoke a role")
def revoke_role(
    request: RoleAssignment,
    user_id: str = Depends(get_current_user_id),
    authz: AuthorizationService = Depends(get_authorization),
):
    scope_type = _parse_scope(request)
    if scope_type is None:
        return respond(ServiceResult.fail(ErrorKind.VALIDATION, "Invalid scope type."))
    if not _can_manage(authz, user_id, scope_type, request.scope_id):
        return forbidden("Insufficient permissions to manage roles at this scope.")

    if not authz.revoke_role(request.user_id, request.role_name, scope_type, request.scope_id):
        return respond(ServiceResult.fail(ErrorKind.VALIDATION, "Failed to revoke role."))
    return respond(ServiceResult.ok({"message": "Role revoked."}))


@router.get("/users/{target_user_id}", summary="Roles held by a user, grouped by scope")
def user_roles(
    target_user_id: str,
    user_id: str = Depends(get_current_user_id),
    authz: AuthorizationService = Depends(get_authorization),
):
    if target_user_id != user_id and not authz.is_system_admin(user_id):
        return forbidden("Only system admins can view other users' roles.")
    return respond(ServiceResult.ok({"roles": authz.get_all_user_roles(target_user_id)}))
