"""
Operator-side authorization.
-----------------------------
Maps caller identities to one of three roles and each role to a fixed
permission set. Unknown identities are requesters.

  admin      every permission
  approver   requests:create/view/approve, access:revoke, audit:view
  requester  requests:create, requests:view

The caller identity comes from the X-User-Id header (set by the HTTP auth
layer in front of the service, or by the chat webhook after its signature
check). The role table lives on app.state and is guarded by an RWLock.

Usage in a FastAPI route:
    from jitaccess.services.shared.auth import require_permission, Permission

    @router.post("/clusters")
    def create_cluster(body: ClusterCreate, caller: str = Depends(require_permission(Permission.manage_clusters))):
        ...
"""

import enum
from typing import Iterable, Optional

import structlog
from fastapi import Depends, Header, Request

from jitaccess.services.shared.errors import PermissionDenied, Unauthenticated, ValidationFailed
from jitaccess.services.shared.locks import RWLock

logger = structlog.get_logger()

CALLER_HEADER = "X-User-Id"


class Role(str, enum.Enum):
    admin     = "admin"
    approver  = "approver"
    requester = "requester"


class Permission(str, enum.Enum):
    manage_clusters  = "clusters:manage"
    manage_users     = "users:manage"
    approve_requests = "requests:approve"
    create_requests  = "requests:create"
    view_requests    = "requests:view"
    revoke_access    = "access:revoke"
    view_audit       = "audit:view"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.admin: frozenset(Permission),
    Role.approver: frozenset({
        Permission.approve_requests,
        Permission.create_requests,
        Permission.view_requests,
        Permission.revoke_access,
        Permission.view_audit,
    }),
    Role.requester: frozenset({
        Permission.create_requests,
        Permission.view_requests,
    }),
}


class RoleTable:
    def __init__(self, admins: Iterable[str] = (), approvers: Iterable[str] = ()):
        self._lock = RWLock()
        self._roles: dict[str, Role] = {}
        for user in approvers:
            self._roles[user] = Role.approver
        for user in admins:
            self._roles[user] = Role.admin

    def role_of(self, user_id: str) -> Role:
        with self._lock.read():
            return self._roles.get(user_id, Role.requester)

    def assign(self, user_id: str, role: str) -> Role:
        try:
            parsed = Role(role.lower())
        except ValueError:
            raise ValidationFailed(f"invalid role {role!r}: must be admin, approver or requester")
        with self._lock.write():
            self._roles[user_id] = parsed
        logger.info("role_assigned", user_id=user_id, role=parsed.value)
        return parsed

    def has_permission(self, user_id: str, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role_of(user_id)]

    def check(self, user_id: str, permission: Permission) -> None:
        if not self.has_permission(user_id, permission):
            raise PermissionDenied(f"user {user_id} lacks permission {permission.value}")


# ── FastAPI dependencies ──────────────────────────────────────────────────────

def get_caller(x_user_id: Optional[str] = Header(default=None, alias=CALLER_HEADER)) -> str:
    if not x_user_id:
        raise Unauthenticated("missing user ID")
    return x_user_id


def get_roles(request: Request) -> RoleTable:
    return request.app.state.plane.roles


def require_permission(permission: Permission):
    def _dependency(caller: str = Depends(get_caller), roles: RoleTable = Depends(get_roles)) -> str:
        roles.check(caller, permission)
        return caller
    return _dependency
