"""
Grant executor: the composite create/delete over session + binding + kubeconfig.

grant(job):
  1. mint a session (ttl ≤ what is left of the job window)
  2. derive the session principal ARN
  3. bind the principal on the cluster
  4. describe the cluster and render the kubeconfig
  5. store credentials + kubeconfig under the job's secret handles

A failure in steps 3-5 unbinds before surfacing, so an entry created without
its policies never outlives the attempt; the minted session expires by itself.
If that unbind fails too the caller gets CompensationFailed.

revoke(job) recomputes the principal from stored fields, unbinds (an entry
that is already gone counts as success) and deletes both secret handles.
Both operations can be repeated safely.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from jitaccess.connectors.aws.eks_binder import ClusterRef, EksBinder, policies_for, username_for
from jitaccess.connectors.aws.kubeconfig import render_kubeconfig
from jitaccess.connectors.aws.sts_minter import (
    PROVIDER_MIN_TTL,
    SessionCredentials,
    StsMinter,
    inline_policy,
    principal_arn,
    session_name,
)
from jitaccess.services.lifecycle.controller import ReconcileContext, background_context
from jitaccess.services.lifecycle.secrets import SecretStore, credentials_secret_name, kubeconfig_secret_name
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.durations import parse_duration
from jitaccess.services.shared.errors import CompensationFailed, InvalidPolicy, NotFound
from jitaccess.services.shared.models import AccessJob

logger = structlog.get_logger()

# allowance for clock drift between this host and STS when checking the window
CLOCK_SKEW_BUDGET = timedelta(seconds=60)


@dataclass
class GrantResult:
    credentials: SessionCredentials
    kubeconfig: str
    expires_at: datetime
    principal: str
    session_name: str
    credentials_ref: str
    kubeconfig_ref: str


def cluster_ref(job: AccessJob) -> ClusterRef:
    return ClusterRef(job.cluster_name, job.cluster_region, job.cluster_account)


def job_session_name(job: AccessJob) -> str:
    return session_name(job.requester_id, job.cluster_name, job.start_time)


def job_principal(job: AccessJob) -> str:
    return principal_arn(job.cluster_account, job.role_arn, job_session_name(job))


def secret_labels(job: AccessJob) -> dict[str, str]:
    return {
        "jit.rebelops.io/job": job.name,
        "jit.rebelops.io/request": job.request_id,
        "jit.rebelops.io/user": job.requester_id,
    }


class GrantExecutor:
    def __init__(self, minter: StsMinter, binder: EksBinder, secrets: SecretStore):
        self.minter = minter
        self.binder = binder
        self.secrets = secrets

    def session_ttl(self, job: AccessJob, now: Optional[datetime] = None) -> timedelta:
        """min(duration, time left in the window). Raises once the window can no longer host a session."""
        now = now or utcnow()
        remaining = job.expiry_time - now
        if remaining + CLOCK_SKEW_BUDGET < PROVIDER_MIN_TTL:
            raise InvalidPolicy(
                f"job {job.name}: access window ends at {job.expiry_time.isoformat()}, too late to mint a session",
                reason="WindowElapsed",
            )
        ttl = min(parse_duration(job.duration), remaining)
        return max(ttl, PROVIDER_MIN_TTL)

    def grant(self, job: AccessJob, ctx: Optional[ReconcileContext] = None) -> GrantResult:
        ctx = ctx or background_context()
        if job.start_time is None or job.expiry_time is None:
            raise InvalidPolicy(f"job {job.name} has no access window", reason="NoWindow")

        ttl = self.session_ttl(job)
        session = job_session_name(job)
        principal = job_principal(job)
        cluster = cluster_ref(job)

        ctx.check("mint")
        credentials = self.minter.mint(
            role_arn=job.role_arn,
            session=session,
            ttl=ttl,
            policy=inline_policy(job.cluster_name, job.cluster_region, job.cluster_account),
            tags={
                "Purpose":   "JITAccess",
                "UserID":    job.requester_id,
                "ClusterID": job.cluster_name,
                "RequestID": job.request_id,
            },
        )

        ctx.check("bind")
        try:
            self.binder.bind(
                cluster,
                principal,
                username_for(job.requester_id),
                policies_for(job.permissions or [], job.namespaces or []),
                tags={
                    "Purpose":   "JITAccess",
                    "CreatedBy": "jit-access",
                    "Temporary": "true",
                    "RequestID": job.request_id,
                },
            )
            ctx.check("describe")
            description = self.binder.describe_cluster(cluster)
            kubeconfig = render_kubeconfig(description, credentials, job.cluster_region)
            labels = secret_labels(job)
            credentials_ref = self.secrets.put(
                credentials_secret_name(job.name), credentials.as_secret_data(), labels
            )
            kubeconfig_ref = self.secrets.put(
                kubeconfig_secret_name(job.name), {"kubeconfig": kubeconfig}, labels
            )
        except Exception as exc:
            self._compensate(job, cluster, principal, exc)
            raise

        logger.info(
            "grant_completed",
            job=job.name,
            cluster=job.cluster_name,
            session=session,
            expires_at=credentials.expires_at.isoformat(),
        )
        return GrantResult(
            credentials=credentials,
            kubeconfig=kubeconfig,
            expires_at=credentials.expires_at,
            principal=principal,
            session_name=session,
            credentials_ref=credentials_ref,
            kubeconfig_ref=kubeconfig_ref,
        )

    def _compensate(self, job: AccessJob, cluster: ClusterRef, principal: str, cause: Exception) -> None:
        logger.warning("grant_compensating", job=job.name, cluster=cluster.name, error=str(cause))
        self.secrets.delete(credentials_secret_name(job.name))
        self.secrets.delete(kubeconfig_secret_name(job.name))
        try:
            self.binder.unbind(cluster, principal)
        except NotFound:
            pass
        except Exception as exc:
            logger.error("grant_compensation_failed", job=job.name, principal=principal, error=str(exc))
            raise CompensationFailed(
                f"job {job.name}: grant failed ({cause}) and the access entry could not be removed"
            ) from exc

    def revoke(self, job: AccessJob, ctx: Optional[ReconcileContext] = None) -> None:
        ctx = ctx or background_context()
        if job.start_time is not None:
            principal = job_principal(job)
        else:
            principal = job.principal_arn
        if principal:
            ctx.check("unbind")
            try:
                self.binder.unbind(cluster_ref(job), principal)
            except NotFound:
                logger.info("revoke_entry_already_absent", job=job.name, principal=principal)
        self.secrets.delete(job.credentials_ref or credentials_secret_name(job.name))
        self.secrets.delete(job.kubeconfig_ref or kubeconfig_secret_name(job.name))
        logger.info("revoke_completed", job=job.name, cluster=job.cluster_name)
