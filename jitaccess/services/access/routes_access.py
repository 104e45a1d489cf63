"""
Access request routes: grant, approve, deny, revoke, list, status,
kubeconfig, cleanup and delete.

Each mutation goes through AccessService, which writes the AuditLog row and
wakes the reconcilers. Responses never contain credential material except the
owner's kubeconfig.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from jitaccess.services.access.plane import AccessPlane, get_plane
from jitaccess.services.shared.auth import Permission, get_caller, require_permission
from jitaccess.services.shared.database import get_db
from jitaccess.services.shared.schemas import (
    AccessGrantRequest,
    AccessIdRequest,
    AccessOut,
    ApproveRequest,
    CleanupOut,
    CleanupRequest,
    DenyRequest,
    KubeconfigOut,
    job_resource,
    request_resource,
)

router = APIRouter()


@router.post("/access/grant", response_model=AccessOut, status_code=201)
def grant_access(
    body: AccessGrantRequest,
    caller: str = Depends(require_permission(Permission.create_requests)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    email = body.user_email or plane.slack.lookup_email(caller)
    req = plane.service.create_request(
        db,
        requester_id=caller,
        requester_email=email,
        cluster_id=body.cluster_id,
        reason=body.reason,
        duration=body.duration,
        permissions=body.permissions,
        namespaces=body.namespaces,
        approvers=body.approvers,
    )
    return AccessOut.model_validate(req)


@router.post("/access/approve", response_model=AccessOut)
def approve_access(
    body: ApproveRequest,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    req, _ = plane.service.approve(db, body.access_id, caller, body.comment)
    return AccessOut.model_validate(req)


@router.post("/access/deny", response_model=AccessOut)
def deny_access(
    body: DenyRequest,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    req, _ = plane.service.deny(db, body.access_id, caller, body.reason)
    return AccessOut.model_validate(req)


@router.post("/access/revoke", response_model=AccessOut)
def revoke_access(
    body: AccessIdRequest,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    req, _ = plane.service.revoke(db, body.access_id, caller)
    return AccessOut.model_validate(req)


@router.get("/access", response_model=list[AccessOut])
def list_access(
    user_id: Optional[str] = None,
    cluster_id: Optional[str] = None,
    active: Optional[bool] = None,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    rows = plane.service.list_requests(db, caller, user_id=user_id, cluster_id=cluster_id, active=active)
    return [AccessOut.model_validate(r) for r in rows]


@router.get("/access/status")
def access_status(
    access_id: str,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    """Request and Job in their declarative resource form."""
    req = plane.service.status(db, access_id, caller)
    return {
        "request": request_resource(req),
        "job": job_resource(req.job) if req.job else None,
    }


@router.get("/access/kubeconfig", response_model=KubeconfigOut)
def access_kubeconfig(
    access_id: str,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    req, job, kubeconfig = plane.service.kubeconfig(db, access_id, caller)
    return KubeconfigOut(
        access_id=req.id,
        cluster_name=req.cluster_name,
        kubeconfig=kubeconfig,
        expires_at=job.expiry_time,
    )


@router.post("/access/cleanup", response_model=CleanupOut)
def cleanup_access(
    body: CleanupRequest,
    caller: str = Depends(require_permission(Permission.manage_clusters)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    return plane.service.cleanup(db, body.cluster_id, caller, user_id=body.user_id)


@router.delete("/access/{access_id}")
def delete_access(
    access_id: str,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    plane.service.delete(db, access_id, caller)
    return {"message": "Access request deleted", "access_id": access_id}
