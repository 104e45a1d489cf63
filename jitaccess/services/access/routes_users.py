"""Role assignment route. Admin only."""

from fastapi import APIRouter, Depends

from jitaccess.services.access.plane import AccessPlane, get_plane
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.auth import Permission, require_permission
from jitaccess.services.shared.database import get_db
from jitaccess.services.shared.schemas import RoleAssignment, RoleAssignmentOut

router = APIRouter()


@router.post("/users/role", response_model=RoleAssignmentOut)
def assign_role(
    body: RoleAssignment,
    caller: str = Depends(require_permission(Permission.manage_users)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    role = plane.roles.assign(body.user_id, body.role)
    emit_audit(db, caller, "role_assigned", f"user:{body.user_id}", {"role": role.value})
    db.commit()
    return RoleAssignmentOut(
        user_id=body.user_id,
        role=role.value,
        message=f"Role {role.value} assigned to {body.user_id}",
    )
