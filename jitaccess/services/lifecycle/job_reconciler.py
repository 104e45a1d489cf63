"""
Access Job reconciler.

  Pending  → Creating   duration parses; start_time/expiry_time fixed
  Pending  → Failed     duration does not parse
  Creating → Active     grant() succeeded
  Creating → Failed     permanent error, compensation failure, or attempts exhausted
  Creating → Creating   transient error, retried with backoff
  Active   → Expiring   expiry reached (OnExpiry) or parent revoked/expired/gone
  Expiring → Completed  revoke() done, both secret handles deleted

The parent Request is looked up by id on every pass; the Job never holds
a copy of it.
"""

from typing import Callable, Optional

import structlog

from jitaccess.services.lifecycle.controller import ReconcileContext, Result
from jitaccess.services.lifecycle.grant_executor import GrantExecutor, job_principal, job_session_name
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.durations import parse_duration
from jitaccess.services.shared.errors import (
    AuthDenied,
    CompensationFailed,
    InvalidDuration,
    InvalidPolicy,
    JitError,
    NotFound,
)
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    CleanupPolicy,
    JobPhase,
    RequestPhase,
    set_condition,
    transition_job,
)

logger = structlog.get_logger()

ACTIVE_POLL_SECONDS = 300
MAX_RETRY_DELAY     = 300
ACTOR               = "jit-controller"

# grant errors that retrying cannot fix
PERMANENT_GRANT_ERRORS = (AuthDenied, InvalidPolicy, NotFound, CompensationFailed)


def retry_delay(attempts: int) -> float:
    return float(min(2 ** attempts, MAX_RETRY_DELAY))


def should_expire(job: AccessJob, parent: Optional[AccessRequest], now) -> bool:
    """Whether an Active job must start tearing down access."""
    if parent is None or parent.phase == RequestPhase.revoked:
        return True
    if job.cleanup_policy == CleanupPolicy.manual:
        return False
    if parent.phase == RequestPhase.expired:
        return True
    return job.cleanup_policy == CleanupPolicy.on_expiry and now >= job.expiry_time


class JobReconciler:
    def __init__(self, session_factory, executor: GrantExecutor, max_attempts: int = 5):
        self.session_factory = session_factory
        self.executor = executor
        self.max_attempts = max_attempts
        self.enqueue_request: Callable[[str], None] = lambda request_id: None

    def reconcile(self, ctx: ReconcileContext, name: str) -> Result:
        db = self.session_factory()
        notify_parent = False
        request_id = None
        try:
            job = db.get(AccessJob, name)
            if job is None:
                return Result()
            request_id = job.request_id
            before = job.phase
            handler = {
                JobPhase.pending:   self._pending,
                JobPhase.creating:  self._creating,
                JobPhase.active:    self._active,
                JobPhase.expiring:  self._expiring,
                JobPhase.completed: self._terminal,
                JobPhase.failed:    self._terminal,
            }[job.phase]
            result = handler(ctx, db, job)
            notify_parent = job.phase != before
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if notify_parent:
            self.enqueue_request(request_id)
        return result

    def _fail(self, db, job: AccessJob, reason: str, message: str) -> Result:
        transition_job(job, JobPhase.failed)
        job.message = message
        job.completion_time = utcnow()
        set_condition(job, "Failed", reason, message, status="False")
        emit_audit(db, ACTOR, "job_failed", f"access_job:{job.name}", {"reason": reason, "message": message})
        logger.error("job_failed", job=job.name, reason=reason, message=message)
        return Result()

    # ── Phase handlers ────────────────────────────────────────────────────────

    def _pending(self, ctx, db, job: AccessJob) -> Result:
        try:
            duration = parse_duration(job.duration)
        except InvalidDuration as exc:
            return self._fail(db, job, "InvalidDuration", exc.message)

        now = utcnow().replace(microsecond=0)
        job.start_time = now
        job.expiry_time = now + duration
        job.session_name = job_session_name(job)
        job.principal_arn = job_principal(job)
        transition_job(job, JobPhase.creating)
        job.message = "Provisioning cluster access"
        set_condition(job, "Started", "JobStarted", f"Access window {job.start_time.isoformat()} - "
                                                    f"{job.expiry_time.isoformat()}")
        return Result(requeue=True)

    def _creating(self, ctx, db, job: AccessJob) -> Result:
        job.attempts = (job.attempts or 0) + 1
        try:
            grant = self.executor.grant(job, ctx)
        except PERMANENT_GRANT_ERRORS as exc:
            return self._fail(db, job, exc.reason, exc.message)
        except JitError as exc:
            if job.attempts >= self.max_attempts:
                return self._fail(db, job, "AttemptsExhausted",
                                  f"grant failed after {job.attempts} attempts: {exc.message}")
            job.message = f"Grant attempt {job.attempts} failed: {exc.message}"
            set_condition(job, "Retrying", exc.reason, job.message, status="False")
            logger.warning("job_grant_retry", job=job.name, attempts=job.attempts, error=exc.message)
            return Result(requeue_after=retry_delay(job.attempts))

        job.principal_arn = grant.principal
        job.session_name = grant.session_name
        job.credentials_ref = grant.credentials_ref
        job.kubeconfig_ref = grant.kubeconfig_ref
        transition_job(job, JobPhase.active)
        job.message = f"Access granted until {job.expiry_time.isoformat()}"
        set_condition(job, "AccessGranted", "AccessGranted", "Credentials issued and access entry bound")
        emit_audit(db, ACTOR, "job_granted", f"access_job:{job.name}",
                   {"session_name": grant.session_name, "expires_at": grant.expires_at.isoformat()})
        return Result(requeue_after=self._until_expiry(job))

    def _active(self, ctx, db, job: AccessJob) -> Result:
        parent = db.get(AccessRequest, job.request_id)
        if should_expire(job, parent, utcnow()):
            transition_job(job, JobPhase.expiring)
            job.message = "Revoking cluster access"
            set_condition(job, "Expiring", "AccessExpiring", "Access window closed, revoking")
            return Result(requeue=True)
        return Result(requeue_after=self._until_expiry(job))

    def _expiring(self, ctx, db, job: AccessJob) -> Result:
        self.executor.revoke(job, ctx)
        job.credentials_ref = None
        job.kubeconfig_ref = None
        job.completion_time = utcnow()
        transition_job(job, JobPhase.completed)
        job.message = "Access revoked"
        set_condition(job, "Completed", "AccessRevoked", "Access entry removed and secrets deleted")
        emit_audit(db, ACTOR, "job_completed", f"access_job:{job.name}",
                   {"session_name": job.session_name})
        return Result()

    def _terminal(self, ctx, db, job) -> Result:
        return Result()

    def _until_expiry(self, job: AccessJob) -> float:
        remaining = (job.expiry_time - utcnow()).total_seconds()
        return max(1.0, min(remaining, ACTIVE_POLL_SECONDS))
