"""
Access Request reconciler.

Invoked with a Request id; moves the Request at most one step along

  Pending  → Approved   approvals satisfied, or auto-approve
  Pending  → Denied     target cluster removed or disabled
  Approved → Active     child Job reached Active or beyond (access_entry copied)
  Active   → Expired    expires_at reached, or the Job left Active
  Expired/Revoked       wait for the Job to complete, then AccessRemoved

Explicit approve/deny/revoke are applied by the access service; this loop
only observes them. The Request never touches cloud APIs itself: it writes
the Job and waits for the job reconciler to advance it.
"""

from typing import Callable, Optional

import structlog

from jitaccess.services.lifecycle.controller import ReconcileContext, Result
from jitaccess.services.policy.request_policy import RequestPolicy, approvals_satisfied
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.auth import Permission, RoleTable
from jitaccess.services.shared.clusters import ClusterRegistry
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    CleanupPolicy,
    JobPhase,
    JOB_HOLDS_ACCESS,
    JOB_TERMINAL,
    RequestPhase,
    has_condition,
    job_name_for,
    set_condition,
    transition_request,
)

logger = structlog.get_logger()

PENDING_POLL_SECONDS = 300
ACTIVE_POLL_SECONDS  = 300
JOB_POLL_SECONDS     = 5
ACTOR                = "jit-controller"


def role_arn_for(account: str, role_name: str, override: Optional[str] = None) -> str:
    return override or f"arn:aws:iam::{account}:role/{role_name}"


def _seconds_until(moment) -> float:
    return max(1.0, (moment - utcnow()).total_seconds())


class RequestReconciler:
    def __init__(
        self,
        session_factory,
        registry: ClusterRegistry,
        roles: RoleTable,
        policy: RequestPolicy,
        role_name: str = "JITAccessRole",
        cleanup_policy: CleanupPolicy = CleanupPolicy.on_expiry,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.roles = roles
        self.policy = policy
        self.role_name = role_name
        self.cleanup_policy = cleanup_policy
        self.enqueue_job: Callable[[str], None] = lambda name: None

    def reconcile(self, ctx: ReconcileContext, request_id: str) -> Result:
        db = self.session_factory()
        after_commit: list[Callable[[], None]] = []
        try:
            req = db.get(AccessRequest, request_id)
            if req is None:
                return Result()
            handler = {
                RequestPhase.pending:  self._pending,
                RequestPhase.approved: self._approved,
                RequestPhase.active:   self._active,
                RequestPhase.expired:  self._finalizing,
                RequestPhase.revoked:  self._finalizing,
                RequestPhase.denied:   self._terminal,
            }[req.phase]
            result = handler(ctx, db, req, after_commit)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        for effect in after_commit:
            effect()
        return result

    # ── Phase handlers ────────────────────────────────────────────────────────

    def _pending(self, ctx, db, req: AccessRequest, after_commit) -> Result:
        if not has_condition(req, "Submitted"):
            set_condition(req, "Submitted", "RequestSubmitted", "JIT access request has been submitted")
            req.message = "Request pending approval"

        cluster = self.registry.find(req.cluster_name)
        if cluster is None or not cluster.enabled:
            why = "no longer registered" if cluster is None else "disabled"
            transition_request(req, RequestPhase.denied)
            req.message = f"Target cluster {req.cluster_name} is {why}"
            set_condition(req, "Denied", "ClusterUnavailable", req.message)
            emit_audit(db, ACTOR, "request_denied", f"access_request:{req.id}",
                       {"reason": "ClusterUnavailable"})
            return Result()

        can_create = self.roles.has_permission(req.requester_id, Permission.create_requests)
        if self.policy.should_auto_approve(req.permissions, req.environment, can_create):
            reason, message = "AutoApproved", "Request auto-approved by policy"
        elif approvals_satisfied(req.required_approvers or [], req.approvals or [], req.min_approvals):
            reason, message = "RequiredApprovalsReceived", "JIT access request has been approved"
        else:
            return Result(requeue_after=PENDING_POLL_SECONDS)

        transition_request(req, RequestPhase.approved)
        req.message = "Request approved"
        set_condition(req, "Approved", reason, message)
        emit_audit(db, ACTOR, "request_approved", f"access_request:{req.id}",
                   {"reason": reason, "approvals": len(req.approvals or [])})
        return Result(requeue=True)

    def _approved(self, ctx, db, req: AccessRequest, after_commit) -> Result:
        job = db.query(AccessJob).filter_by(request_id=req.id).first()
        if job is None:
            cluster = self.registry.find(req.cluster_name)
            job = AccessJob(
                name=job_name_for(req.requester_id, req.id),
                request_id=req.id,
                requester_id=req.requester_id,
                cluster_name=req.cluster_name,
                cluster_account=req.cluster_account,
                cluster_region=req.cluster_region,
                duration=req.duration,
                permissions=list(req.permissions or []),
                namespaces=list(req.namespaces or []),
                role_arn=role_arn_for(req.cluster_account, self.role_name,
                                      cluster.role_arn if cluster else None),
                cleanup_policy=self.cleanup_policy,
                phase=JobPhase.pending,
                conditions=[],
            )
            db.add(job)
            set_condition(req, "Provisioning", "JobCreated", f"Access job {job.name} created")
            req.message = "Provisioning access"
            name = job.name
            after_commit.append(lambda: self.enqueue_job(name))
            logger.info("access_job_created", request_id=req.id, job=job.name)
            return Result(requeue_after=JOB_POLL_SECONDS)

        # a Job that already moved past Active still granted access; record it so
        # the Active handler can carry the Request on to Expired
        if job.phase in JOB_HOLDS_ACCESS or (job.phase == JobPhase.completed and job.principal_arn):
            req.access_entry = {
                "principal":    job.principal_arn,
                "session_name": job.session_name,
                "created_at":   job.start_time.isoformat(),
                "expires_at":   job.expiry_time.isoformat(),
            }
            transition_request(req, RequestPhase.active)
            req.message = f"Access active until {job.expiry_time.isoformat()}"
            set_condition(req, "AccessGranted", "JobActive", "Cluster access has been granted")
            emit_audit(db, ACTOR, "access_granted", f"access_request:{req.id}",
                       {"job": job.name, "expires_at": job.expiry_time.isoformat()})
            if job.phase != JobPhase.active:
                return Result(requeue=True)
            return Result(requeue_after=min(_seconds_until(job.expiry_time), ACTIVE_POLL_SECONDS))

        if job.phase == JobPhase.failed:
            if not has_condition(req, "AccessGrantFailed"):
                req.message = job.message or "Access grant failed"
                set_condition(req, "AccessGrantFailed", "JobFailed", req.message, status="False")
                emit_audit(db, ACTOR, "access_grant_failed", f"access_request:{req.id}",
                           {"job": job.name, "message": job.message})
            return Result()

        return Result(requeue_after=JOB_POLL_SECONDS)

    def _active(self, ctx, db, req: AccessRequest, after_commit) -> Result:
        job = db.query(AccessJob).filter_by(request_id=req.id).first()
        expires_at = job.expiry_time if job else None
        now = utcnow()

        if job is None or job.phase != JobPhase.active or (expires_at and now >= expires_at):
            transition_request(req, RequestPhase.expired)
            req.message = "Access expired"
            reason = "AccessExpired" if job is not None and job.phase not in JOB_TERMINAL else "JobGone"
            set_condition(req, "Expired", reason, "Access window has elapsed")
            emit_audit(db, ACTOR, "access_expired", f"access_request:{req.id}", {"reason": reason})
            if job is not None:
                name = job.name
                after_commit.append(lambda: self.enqueue_job(name))
            return Result(requeue=True)

        return Result(requeue_after=min(_seconds_until(expires_at), ACTIVE_POLL_SECONDS))

    def _finalizing(self, ctx, db, req: AccessRequest, after_commit) -> Result:
        if has_condition(req, "AccessRemoved"):
            return Result()
        job = db.query(AccessJob).filter_by(request_id=req.id).first()
        if job is None or job.phase in JOB_TERMINAL:
            set_condition(req, "AccessRemoved", "AccessRevoked", "Cluster access entry and secrets removed")
            req.message = f"Access {req.phase.value.lower()}; cluster access removed"
            emit_audit(db, ACTOR, "access_removed", f"access_request:{req.id}",
                       {"phase": req.phase.value})
            return Result()
        name = job.name
        after_commit.append(lambda: self.enqueue_job(name))
        return Result(requeue_after=JOB_POLL_SECONDS)

    def _terminal(self, ctx, db, req, after_commit) -> Result:
        return Result()
