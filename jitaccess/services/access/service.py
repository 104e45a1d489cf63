"""
Access operations shared by the HTTP routes and the chat command handler.

Every mutation re-reads the Request, applies one state-machine edge, writes
an AuditLog row in the same commit and then wakes the reconciler. A write
that races a reconciler fails with StaleDataError and surfaces as 409.
"""

from typing import Callable, Optional

import structlog

from jitaccess.services.lifecycle.secrets import SecretStore
from jitaccess.services.lifecycle.sweeper import ExpirySweeper
from jitaccess.services.policy.request_policy import RequestDraft, RequestPolicy
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.auth import Permission, RoleTable
from jitaccess.services.shared.clusters import ClusterRegistry
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.durations import parse_duration
from jitaccess.services.shared.errors import Conflict, NotFound, PermissionDenied, PolicyViolation
from jitaccess.services.shared.schemas import CleanupOut
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    JOB_TERMINAL,
    JobPhase,
    RequestPhase,
    set_condition,
    transition_request,
)

logger = structlog.get_logger()

ACTIVE_PHASES = (RequestPhase.approved, RequestPhase.active)


class AccessService:
    def __init__(
        self,
        registry: ClusterRegistry,
        roles: RoleTable,
        policy: RequestPolicy,
        secrets: SecretStore,
        sweeper: Optional[ExpirySweeper] = None,
        enqueue_request: Callable[[str], None] = lambda request_id: None,
        enqueue_job: Callable[[str], None] = lambda name: None,
    ):
        self.registry = registry
        self.roles = roles
        self.policy = policy
        self.secrets = secrets
        self.sweeper = sweeper
        self.enqueue_request = enqueue_request
        self.enqueue_job = enqueue_job

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get_request(self, db, request_id: str) -> AccessRequest:
        req = db.get(AccessRequest, request_id, populate_existing=True)
        if req is None:
            raise NotFound(f"access request not found: {request_id}")
        return req

    def _check_owner_or(self, req: AccessRequest, caller: str, permission: Permission) -> None:
        if req.requester_id != caller and not self.roles.has_permission(caller, permission):
            raise PermissionDenied(f"user {caller} may not act on access request {req.id}")

    def status(self, db, request_id: str, caller: str) -> AccessRequest:
        req = self.get_request(db, request_id)
        self._check_owner_or(req, caller, Permission.approve_requests)
        return req

    def list_requests(
        self,
        db,
        caller: str,
        user_id: Optional[str] = None,
        cluster_id: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> list[AccessRequest]:
        self.roles.check(caller, Permission.view_requests)
        if not self.roles.has_permission(caller, Permission.approve_requests):
            if user_id and user_id != caller:
                raise PermissionDenied("requesters may only list their own access requests")
            user_id = caller

        q = db.query(AccessRequest)
        if user_id:
            q = q.filter(AccessRequest.requester_id == user_id)
        if cluster_id:
            cluster = self.registry.find(cluster_id)
            q = q.filter(AccessRequest.cluster_name == (cluster.name if cluster else cluster_id.lower()))
        if active is True:
            q = q.filter(AccessRequest.phase.in_(ACTIVE_PHASES))
        elif active is False:
            q = q.filter(AccessRequest.phase.notin_(ACTIVE_PHASES))
        return q.order_by(AccessRequest.created_at.desc()).populate_existing().all()

    def job_for(self, db, request_id: str) -> Optional[AccessJob]:
        return db.query(AccessJob).filter_by(request_id=request_id).populate_existing().first()

    # ── Mutations ─────────────────────────────────────────────────────────────

    def create_request(
        self,
        db,
        requester_id: str,
        requester_email: str,
        cluster_id: str,
        reason: str,
        duration: Optional[str] = None,
        permissions: Optional[list[str]] = None,
        namespaces: Optional[list[str]] = None,
        approvers: Optional[list[str]] = None,
        channel_id: Optional[str] = None,
    ) -> AccessRequest:
        self.roles.check(requester_id, Permission.create_requests)
        cluster = self.registry.get(cluster_id)
        if not cluster.enabled:
            raise PolicyViolation(f"cluster {cluster.name} is disabled for JIT access")

        draft = self.policy.prepare(
            RequestDraft(
                requester_id=requester_id,
                requester_email=requester_email,
                cluster_name=cluster.name,
                account=cluster.account_id,
                region=cluster.region,
                reason=reason,
                duration=duration,
                permissions=list(permissions or []),
                namespaces=list(namespaces or []),
                approvers=list(approvers or []),
                environment=cluster.environment,
            ),
            max_duration=parse_duration(cluster.max_duration),
        )

        req = AccessRequest(
            requester_id=draft.requester_id,
            requester_email=draft.requester_email,
            cluster_name=draft.cluster_name,
            cluster_account=draft.account,
            cluster_region=draft.region,
            environment=draft.environment,
            reason=draft.reason,
            duration=draft.duration,
            permissions=draft.permissions,
            namespaces=draft.namespaces,
            required_approvers=draft.approvers,
            min_approvals=cluster.required_approvers,
            approvals=[],
            phase=RequestPhase.pending,
            conditions=[],
            message="Request pending approval",
            channel_id=channel_id,
        )
        set_condition(req, "Submitted", "RequestSubmitted", "JIT access request has been submitted")
        db.add(req)
        db.flush()   # get req.id before emit

        emit_audit(
            db,
            actor=requester_id,
            action="request_created",
            resource=f"access_request:{req.id}",
            detail={
                "cluster": req.cluster_name,
                "permissions": req.permissions,
                "namespaces": req.namespaces,
                "duration": req.duration,
                "reason": req.reason,
            },
        )
        db.commit()
        db.refresh(req)
        self.enqueue_request(req.id)
        return req

    def approve(self, db, request_id: str, actor: str, comment: Optional[str] = None) -> tuple[AccessRequest, bool]:
        """Record one approval. Returns (request, changed); a repeat approval by the same actor is a no-op."""
        self.roles.check(actor, Permission.approve_requests)
        req = self.get_request(db, request_id)
        approvals = list(req.approvals or [])
        if any(a["actor_id"] == actor for a in approvals):
            return req, False
        if req.phase != RequestPhase.pending:
            raise Conflict(f"access request {req.id} is {req.phase.value}, not Pending")
        if actor == req.requester_id:
            raise PermissionDenied("requesters cannot approve their own access requests")

        slot = self.policy.approval_slot(actor, req.required_approvers or [], approvals)
        approvals.append({
            "approver_id": slot or actor,
            "actor_id":    actor,
            "timestamp":   utcnow().isoformat(),
            "comment":     comment or "",
        })
        req.approvals = approvals
        emit_audit(db, actor, "request_approval_added", f"access_request:{req.id}",
                   {"satisfies": slot, "comment": comment})
        db.commit()
        db.refresh(req)
        self.enqueue_request(req.id)
        return req, True

    def deny(self, db, request_id: str, actor: str, reason: Optional[str] = None) -> tuple[AccessRequest, bool]:
        self.roles.check(actor, Permission.approve_requests)
        req = self.get_request(db, request_id)
        if req.phase == RequestPhase.denied:
            return req, False
        if req.phase != RequestPhase.pending:
            raise Conflict(f"access request {req.id} is {req.phase.value}, only Pending requests can be denied")
        transition_request(req, RequestPhase.denied)
        req.message = f"Denied by {actor}" + (f": {reason}" if reason else "")
        set_condition(req, "Denied", "RequestDenied", req.message)
        emit_audit(db, actor, "request_denied", f"access_request:{req.id}", {"reason": reason})
        db.commit()
        db.refresh(req)
        return req, True

    def revoke(self, db, request_id: str, actor: str) -> tuple[AccessRequest, bool]:
        """Active → Revoked. Revoking an already Revoked or Expired request succeeds without change."""
        req = self.get_request(db, request_id)
        self._check_owner_or(req, actor, Permission.revoke_access)
        if req.phase in (RequestPhase.revoked, RequestPhase.expired):
            return req, False
        if req.phase != RequestPhase.active:
            raise Conflict(f"access request {req.id} is {req.phase.value}; only Active access can be revoked")
        transition_request(req, RequestPhase.revoked)
        req.message = f"Access revoked by {actor}"
        set_condition(req, "Revoked", "AccessRevoked", req.message)
        emit_audit(db, actor, "access_revoked", f"access_request:{req.id}", {})
        db.commit()
        db.refresh(req)
        self.enqueue_request(req.id)
        job = self.job_for(db, req.id)
        if job is not None:
            self.enqueue_job(job.name)
        return req, True

    def delete(self, db, request_id: str, actor: str) -> None:
        req = self.get_request(db, request_id)
        self._check_owner_or(req, actor, Permission.manage_users)
        job = self.job_for(db, req.id)
        if req.phase in ACTIVE_PHASES or (job is not None and job.phase not in JOB_TERMINAL):
            raise Conflict("cannot delete active access request - revoke access first")
        emit_audit(db, actor, "request_deleted", f"access_request:{req.id}", {"phase": req.phase.value})
        db.delete(req)
        db.commit()

    # ── Credentials ───────────────────────────────────────────────────────────

    def kubeconfig(self, db, request_id: str, caller: str) -> tuple[AccessRequest, AccessJob, str]:
        req = self.get_request(db, request_id)
        if req.requester_id != caller:
            raise PermissionDenied("only the requester can retrieve the kubeconfig")
        job = self.job_for(db, req.id)
        if req.phase != RequestPhase.active or job is None or job.phase != JobPhase.active:
            raise Conflict(f"access request {req.id} is {req.phase.value}; no active credentials")
        data = self.secrets.get(job.kubeconfig_ref)
        return req, job, data["kubeconfig"]

    # ── Cleanup ───────────────────────────────────────────────────────────────

    def cleanup(self, db, cluster_id: str, actor: str, user_id: Optional[str] = None) -> CleanupOut:
        """Sweep one cluster now, or remove every stray entry of one user."""
        self.roles.check(actor, Permission.manage_clusters)
        if self.sweeper is None:
            raise Conflict("expiry sweeper is not configured")
        cluster = self.registry.get(cluster_id)

        if user_id:
            removed = self.sweeper.cleanup_user(user_id, cluster)
            out = CleanupOut(
                message=f"Removed {removed} stray access entries for {user_id}",
                cluster_name=cluster.name,
                cleaned_count=removed,
            )
        else:
            report = self.sweeper.sweep_cluster(cluster)
            out = CleanupOut(
                message=f"Cleanup completed for cluster {cluster.name}",
                cluster_name=cluster.name,
                cleaned_count=report.orphans_removed,
                expired_count=report.expired_marked,
                errors=report.errors,
            )
        emit_audit(db, actor, "cluster_cleanup", f"cluster:{cluster.name}",
                   {"user_id": user_id, "cleaned": out.cleaned_count, "expired": out.expired_count})
        db.commit()
        return out
