"""
Cluster registry routes: list, get, create, update, delete.
Reads are open to any identified caller; mutations need clusters:manage.
"""

from fastapi import APIRouter, Depends

from jitaccess.services.access.plane import AccessPlane, get_plane
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.auth import Permission, get_caller, require_permission
from jitaccess.services.shared.database import get_db
from jitaccess.services.shared.schemas import Cluster, ClusterCreate, ClusterUpdate

router = APIRouter()


@router.get("/clusters", response_model=list[Cluster])
def list_clusters(
    enabled_only: bool = False,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
):
    return plane.registry.list(enabled_only=enabled_only)


@router.get("/clusters/{cluster_id}", response_model=Cluster)
def get_cluster(
    cluster_id: str,
    caller: str = Depends(get_caller),
    plane: AccessPlane = Depends(get_plane),
):
    return plane.registry.get(cluster_id)


@router.post("/clusters", response_model=Cluster, status_code=201)
def create_cluster(
    body: ClusterCreate,
    caller: str = Depends(require_permission(Permission.manage_clusters)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    cluster = plane.registry.create(body, created_by=caller)
    emit_audit(db, caller, "cluster_created", f"cluster:{cluster.name}",
               {"account_id": cluster.account_id, "region": cluster.region,
                "environment": cluster.environment})
    db.commit()
    return cluster


@router.put("/clusters/{cluster_id}", response_model=Cluster)
def update_cluster(
    cluster_id: str,
    body: ClusterUpdate,
    caller: str = Depends(require_permission(Permission.manage_clusters)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    cluster = plane.registry.update(cluster_id, body)
    emit_audit(db, caller, "cluster_updated", f"cluster:{cluster.name}",
               body.model_dump(exclude_unset=True))
    db.commit()
    return cluster


@router.delete("/clusters/{cluster_id}")
def delete_cluster(
    cluster_id: str,
    caller: str = Depends(require_permission(Permission.manage_clusters)),
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    cluster = plane.registry.delete(cluster_id)
    emit_audit(db, caller, "cluster_deleted", f"cluster:{cluster.name}", {})
    db.commit()
    return {"message": "Cluster deleted successfully", "cluster_id": cluster.id}
