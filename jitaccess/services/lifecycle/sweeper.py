"""
Expiry Sweeper
--------------
Runs as a background asyncio task. Every SWEEP interval:
1. Lists the access entries of every enabled cluster
2. Keeps principals that are assumed-role sessions named jit-*
3. Parses {requester, cluster, timestamp} from the session name
4. Looks up the Job that owns the session
     no Job, or Job already finished → unbind the entry (orphan)
     Job past its expiry_time        → mark the Request Expired, move the Job
                                       to Expiring, hand both to the reconcilers

Correctness does not depend on this loop: every minted session carries its
own cloud-side TTL. A failure on one cluster is reported and the sweep moves on.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy.orm.exc import StaleDataError

from jitaccess.connectors.aws.eks_binder import ClusterRef, EksBinder
from jitaccess.connectors.aws.sts_minter import SESSION_TIMESTAMP_FORMAT
from jitaccess.services.shared.audit import emit_audit
from jitaccess.services.shared.clusters import ClusterRegistry
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.errors import JitError, NotFound
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    CleanupPolicy,
    JobPhase,
    JOB_TERMINAL,
    RequestPhase,
    set_condition,
    transition_job,
    transition_request,
)
from jitaccess.services.shared.schemas import Cluster

logger = structlog.get_logger()

SESSION_RE = re.compile(r"^jit-(?P<requester>[^-]+)-(?P<cluster>.+)-(?P<ts>\d{8}-\d{6})$")
ACTOR = "jit-sweeper"


@dataclass
class SessionInfo:
    session_name: str
    requester: str
    cluster: str
    timestamp: datetime


@dataclass
class SweepReport:
    cluster: str
    scanned: int = 0
    orphans_removed: int = 0
    expired_marked: int = 0
    errors: list[str] = field(default_factory=list)


def session_from_principal(principal: str) -> Optional[str]:
    if ":assumed-role/" not in principal:
        return None
    session = principal.rsplit("/", 1)[-1]
    return session if session.startswith("jit-") else None


def parse_session_name(session: str) -> Optional[SessionInfo]:
    match = SESSION_RE.match(session)
    if not match:
        return None
    try:
        stamp = datetime.strptime(match.group("ts"), SESSION_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return SessionInfo(session, match.group("requester"), match.group("cluster"), stamp)


class ExpirySweeper:
    def __init__(
        self,
        session_factory,
        registry: ClusterRegistry,
        binder: EksBinder,
        cluster_prefix: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.binder = binder
        self.cluster_prefix = cluster_prefix
        self.enqueue_request: Callable[[str], None] = lambda request_id: None
        self.enqueue_job: Callable[[str], None] = lambda name: None
        self.last_reports: list[SweepReport] = []

    def clusters(self) -> list[Cluster]:
        clusters = self.registry.list(enabled_only=True)
        if self.cluster_prefix:
            clusters = [c for c in clusters if c.name.startswith(self.cluster_prefix)]
        return clusters

    def sweep(self) -> list[SweepReport]:
        reports = []
        for cluster in self.clusters():
            try:
                reports.append(self.sweep_cluster(cluster))
            except JitError as exc:
                logger.error("sweep_cluster_failed", cluster=cluster.name, error=exc.message)
                reports.append(SweepReport(cluster=cluster.name, errors=[exc.message]))
        self.last_reports = reports
        return reports

    def sweep_cluster(self, cluster: Cluster, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        ref = ClusterRef(cluster.name, cluster.region, cluster.account_id)
        report = SweepReport(cluster=cluster.name)

        for principal in self.binder.list_entries(ref):
            session = session_from_principal(principal)
            if session is None:
                continue
            info = parse_session_name(session)
            if info is None:
                logger.warning("sweep_unparsable_session", cluster=cluster.name, session=session)
                continue
            report.scanned += 1
            try:
                self._sweep_entry(ref, principal, info, now, report)
            except (JitError, StaleDataError) as exc:
                report.errors.append(f"{session}: {exc}")
                logger.warning("sweep_entry_failed", cluster=cluster.name, session=session, error=str(exc))

        logger.info(
            "sweep_cluster_done",
            cluster=cluster.name,
            scanned=report.scanned,
            orphans_removed=report.orphans_removed,
            expired_marked=report.expired_marked,
            errors=len(report.errors),
        )
        return report

    def _sweep_entry(self, ref: ClusterRef, principal: str, info: SessionInfo, now, report: SweepReport) -> None:
        db = self.session_factory()
        request_id = job_name = None
        try:
            job = db.query(AccessJob).filter_by(session_name=info.session_name).first()
            if job is None or job.phase in JOB_TERMINAL:
                self._unbind(ref, principal)
                emit_audit(db, ACTOR, "orphan_access_removed", f"cluster:{ref.name}",
                           {"principal": principal, "requester": info.requester,
                            "job": job.name if job else None})
                db.commit()
                report.orphans_removed += 1
                return

            if job.expiry_time is None or now < job.expiry_time or job.phase != JobPhase.active:
                return
            if job.cleanup_policy == CleanupPolicy.manual:
                return

            request = db.get(AccessRequest, job.request_id)
            if request is not None and request.phase == RequestPhase.active:
                transition_request(request, RequestPhase.expired)
                request.message = "Access expired"
                set_condition(request, "Expired", "SweeperExpired", "Expired access found by sweeper")
            transition_job(job, JobPhase.expiring)
            job.message = "Revoking cluster access"
            set_condition(job, "Expiring", "SweeperExpired", "Expired access found by sweeper")
            emit_audit(db, ACTOR, "expired_access_marked", f"access_job:{job.name}",
                       {"principal": principal})
            db.commit()
            request_id, job_name = job.request_id, job.name
            report.expired_marked += 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if job_name:
            self.enqueue_job(job_name)
            self.enqueue_request(request_id)

    def _unbind(self, ref: ClusterRef, principal: str) -> None:
        try:
            self.binder.unbind(ref, principal)
        except NotFound:
            pass
        logger.info("orphan_access_removed", cluster=ref.name, principal=principal)

    def cleanup_user(self, user_id: str, cluster: Optional[Cluster] = None) -> int:
        """Remove every JIT entry belonging to one requester that no live Job accounts for."""
        removed = 0
        targets = [cluster] if cluster else self.clusters()
        for target in targets:
            ref = ClusterRef(target.name, target.region, target.account_id)
            for principal in self.binder.list_entries(ref):
                session = session_from_principal(principal)
                info = parse_session_name(session) if session else None
                if info is None or info.requester != user_id:
                    continue
                db = self.session_factory()
                try:
                    job = db.query(AccessJob).filter_by(session_name=info.session_name).first()
                    live = job is not None and job.phase not in JOB_TERMINAL
                finally:
                    db.close()
                if live:
                    continue
                self._unbind(ref, principal)
                removed += 1
        return removed

    async def run(self, interval: float) -> None:
        """Background loop: sweep every `interval` seconds."""
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception as exc:
                logger.error("sweeper_loop_error", error=str(exc))
