"""
api/routes/v1/users.py -- User management REST endpoints.

Routes:
  POST   /api/v1/users                    -- create principal (manage_users)
  GET    /api/v1/users                    -- list principals (manage_users)
  GET    /api/v1/users/roles              -- role catalogue (any authenticated principal)
  GET    /api/v1/users/permissions        -- permission catalogue (admin or super_admin)
  GET    /api/v1/users/{id}               -- one principal (manage_users)
  PUT    /api/v1/users/{id}               -- update (manage_users)
  DELETE /api/v1/users/{id}               -- delete (manage_users)
  PUT    /api/v1/users/{id}/permissions   -- replace custom grants (super_admin)
  PUT    /api/v1/users/{id}/status        -- enable / disable (manage_users)

Handlers stay thin: every rule (rank, last super admin, self-delete, role
elevation) lives in auth.management.UserManager and surfaces here as a
core.errors exception rendered by the app-level handler.

/users/roles and /users/permissions are declared before /users/{id} so the
literal paths are not captured as an id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    PermissionInfo,
    PrincipalResponse,
    RoleInfo,
    UserCreate,
    UserPermissionsUpdate,
    UserStatusUpdate,
    UserUpdate,
)
from api.routes.v1.auth import principal_response
from auth.dependencies import get_current_principal, require_permission, require_role
from auth.management import UserManager
from auth.models import PERMISSION_DESCRIPTIONS, ROLE_DESCRIPTIONS, Permission, Principal, Role
from auth.permissions import PermissionEngine

router = APIRouter(prefix="/users")

_manage_users = require_permission(Permission.MANAGE_USERS)


@router.post("", response_model=PrincipalResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    actor: Principal = Depends(_manage_users),
) -> PrincipalResponse:
    manager: UserManager = request.app.state.users
    created = manager.create_user(
        actor,
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
    )
    return principal_response(request, created)


@router.get("", response_model=list[PrincipalResponse])
def list_users(request: Request, actor: Principal = Depends(_manage_users)) -> list[PrincipalResponse]:
    return [principal_response(request, p) for p in request.app.state.user_store.list_principals()]


@router.get("/roles", response_model=list[RoleInfo])
def list_roles(request: Request, principal: Principal = Depends(get_current_principal)) -> list[RoleInfo]:
    engine: PermissionEngine = request.app.state.permissions
    return [
        RoleInfo(
            name=role.value,
            description=ROLE_DESCRIPTIONS[role],
            permissions=sorted(p.value for p in engine.base_permissions(role)),
        )
        for role in engine.roles
    ]


@router.get("/permissions", response_model=list[PermissionInfo])
def list_permissions(principal: Principal = Depends(require_role(Role.ADMIN, Role.SUPER_ADMIN))) -> list[PermissionInfo]:
    return [PermissionInfo(name=p.value, description=PERMISSION_DESCRIPTIONS[p]) for p in Permission]


@router.get("/{user_id}", response_model=PrincipalResponse)
def get_user(request: Request, user_id: str, actor: Principal = Depends(_manage_users)) -> PrincipalResponse:
    return principal_response(request, request.app.state.users.get(user_id))


@router.put("/{user_id}", response_model=PrincipalResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    actor: Principal = Depends(_manage_users),
) -> PrincipalResponse:
    manager: UserManager = request.app.state.users
    updated = manager.update_user(actor, user_id, **body.model_dump(exclude_none=True))
    return principal_response(request, updated)


@router.delete("/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, actor: Principal = Depends(_manage_users)) -> Response:
    manager: UserManager = request.app.state.users
    manager.delete_user(actor, user_id)
    request.app.state.credential_store.delete_all_for_user(user_id)
    request.app.state.resolver.invalidate(user_id)
    return Response(status_code=204)


@router.put("/{user_id}/permissions", response_model=PrincipalResponse)
def set_user_permissions(
    request: Request,
    user_id: str,
    body: UserPermissionsUpdate,
    actor: Principal = Depends(require_role(Role.SUPER_ADMIN)),
) -> PrincipalResponse:
    manager: UserManager = request.app.state.users
    return principal_response(request, manager.set_permissions(actor, user_id, body.permissions))


@router.put("/{user_id}/status", response_model=PrincipalResponse)
def set_user_status(
    request: Request,
    user_id: str,
    body: UserStatusUpdate,
    actor: Principal = Depends(_manage_users),
) -> PrincipalResponse:
    manager: UserManager = request.app.state.users
    return principal_response(request, manager.set_status(actor, user_id, body.is_active))
