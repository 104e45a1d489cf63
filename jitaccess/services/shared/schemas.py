"""
Pydantic request/response schemas for the access service, plus the
declarative resource forms (apiVersion jit.rebelops.io/v1) that Requests and
Jobs serialize to for status lookups.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from jitaccess.services.shared.models import AccessJob, AccessRequest, JobPhase, RequestPhase

API_VERSION = "jit.rebelops.io/v1"


# ── Cluster ───────────────────────────────────────────────────────────────────

class ClusterCreate(BaseModel):
    name: str
    display_name: Optional[str] = None
    account_id: str
    region: str
    environment: Optional[str] = None
    max_duration: Optional[str] = None
    required_approvers: int = 0
    enabled: bool = True
    role_arn: Optional[str] = None
    tags: dict[str, str] = {}


class ClusterUpdate(BaseModel):
    display_name: Optional[str] = None
    environment: Optional[str] = None
    max_duration: Optional[str] = None
    required_approvers: Optional[int] = None
    enabled: Optional[bool] = None
    role_arn: Optional[str] = None
    tags: Optional[dict[str, str]] = None


class Cluster(BaseModel):
    """Registry entry. Requests reference clusters by name."""

    id: str
    name: str
    display_name: str
    account_id: str
    region: str
    environment: str
    max_duration: str
    required_approvers: int = 0
    enabled: bool = True
    role_arn: Optional[str] = None
    tags: dict[str, str] = {}
    created_at: datetime
    updated_at: datetime
    created_by: str


# ── Users / roles ─────────────────────────────────────────────────────────────

class RoleAssignment(BaseModel):
    user_id: str
    role: str


class RoleAssignmentOut(BaseModel):
    user_id: str
    role: str
    message: str


# ── Access requests ───────────────────────────────────────────────────────────

class AccessGrantRequest(BaseModel):
    cluster_id: str = Field(description="Registry id or cluster name")
    reason: str
    user_email: Optional[str] = None
    duration: Optional[str] = None
    permissions: list[str] = []
    namespaces: list[str] = []
    approvers: list[str] = []


class AccessIdRequest(BaseModel):
    access_id: str


class ApproveRequest(BaseModel):
    access_id: str
    comment: Optional[str] = None


class DenyRequest(BaseModel):
    access_id: str
    reason: Optional[str] = None


class AccessOut(BaseModel):
    access_id: str = Field(validation_alias="id")
    requester_id: str
    requester_email: str
    cluster_name: str
    cluster_account: str
    cluster_region: str
    environment: str
    reason: str
    duration: str
    permissions: list[str]
    namespaces: list[str]
    required_approvers: list[str]
    approvals: list[dict[str, Any]]
    phase: RequestPhase
    access_entry: Optional[dict[str, Any]] = None
    message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class KubeconfigOut(BaseModel):
    access_id: str
    cluster_name: str
    kubeconfig: str
    expires_at: Optional[datetime] = None


class CleanupRequest(BaseModel):
    cluster_id: str
    user_id: Optional[str] = None


class CleanupOut(BaseModel):
    message: str
    cluster_name: str
    cleaned_count: int
    expired_count: int = 0
    errors: list[str] = []


# ── Declarative resource forms ────────────────────────────────────────────────

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def request_resource(req: AccessRequest) -> dict:
    """Render a Request as a JITAccessRequest resource document."""
    return {
        "apiVersion": API_VERSION,
        "kind": "JITAccessRequest",
        "metadata": {
            "name": req.id,
            "resourceVersion": str(req.resource_version or 0),
            "creationTimestamp": _ts(req.created_at),
            "labels": {"jit.rebelops.io/user": req.requester_id},
        },
        "spec": {
            "userID": req.requester_id,
            "userEmail": req.requester_email,
            "targetCluster": {
                "name": req.cluster_name,
                "awsAccount": req.cluster_account,
                "region": req.cluster_region,
            },
            "reason": req.reason,
            "duration": req.duration,
            "permissions": list(req.permissions or []),
            "namespaces": list(req.namespaces or []),
            "approvers": list(req.required_approvers or []),
        },
        "status": {
            "phase": req.phase.value,
            "approvals": list(req.approvals or []),
            "conditions": list(req.conditions or []),
            "accessEntry": req.access_entry,
            "message": req.message,
            "jobRef": req.job.name if req.job else None,
        },
    }


def job_resource(job: AccessJob) -> dict:
    """Render a Job as a JITAccessJob resource document. Secret material is never included."""
    return {
        "apiVersion": API_VERSION,
        "kind": "JITAccessJob",
        "metadata": {
            "name": job.name,
            "resourceVersion": str(job.resource_version or 0),
            "creationTimestamp": _ts(job.created_at),
            "ownerReferences": [{"kind": "JITAccessRequest", "name": job.request_id}],
        },
        "spec": {
            "accessRequestRef": {"name": job.request_id},
            "targetCluster": {
                "name": job.cluster_name,
                "awsAccount": job.cluster_account,
                "region": job.cluster_region,
            },
            "duration": job.duration,
            "permissions": list(job.permissions or []),
            "namespaces": list(job.namespaces or []),
            "jitRoleArn": job.role_arn,
            "cleanupPolicy": job.cleanup_policy.value,
        },
        "status": {
            "phase": job.phase.value,
            "startTime": _ts(job.start_time),
            "expiryTime": _ts(job.expiry_time),
            "completionTime": _ts(job.completion_time),
            "accessEntry": {
                "principalArn": job.principal_arn,
                "sessionName": job.session_name,
                "credentialsSecretRef": job.credentials_ref,
            } if job.phase in (JobPhase.active, JobPhase.expiring) else None,
            "kubeconfigSecretRef": job.kubeconfig_ref,
            "attempts": job.attempts,
            "conditions": list(job.conditions or []),
            "message": job.message,
        },
    }
