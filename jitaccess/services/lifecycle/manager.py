"""
Runs the request and job controllers side by side.

A change on either side enqueues the other: the request reconciler enqueues
the job it created or is waiting on, and every job phase change enqueues the
parent request. At start every live record is enqueued once, so work left
over from a previous process resumes.
"""

import structlog

from jitaccess.services.lifecycle.controller import Controller
from jitaccess.services.lifecycle.job_reconciler import JobReconciler
from jitaccess.services.lifecycle.request_reconciler import RequestReconciler
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    JOB_TERMINAL,
    RequestPhase,
)

logger = structlog.get_logger()


class Manager:
    def __init__(
        self,
        session_factory,
        request_reconciler: RequestReconciler,
        job_reconciler: JobReconciler,
        workers: int = 2,
        timeout: float = 30.0,
    ):
        self.session_factory = session_factory
        self.requests = Controller("access-request", request_reconciler.reconcile, workers, timeout)
        self.jobs = Controller("access-job", job_reconciler.reconcile, workers, timeout)
        request_reconciler.enqueue_job = self.jobs.enqueue
        job_reconciler.enqueue_request = self.requests.enqueue
        self.running = False

    def enqueue_request(self, request_id: str) -> None:
        self.requests.enqueue(request_id)

    def enqueue_job(self, name: str) -> None:
        self.jobs.enqueue(name)

    def resync(self) -> int:
        """Enqueue every Request and Job that may still need work."""
        db = self.session_factory()
        try:
            request_ids = [
                r.id for r in db.query(AccessRequest.id)
                .filter(AccessRequest.phase != RequestPhase.denied).all()
            ]
            job_names = [
                j.name for j in db.query(AccessJob.name)
                .filter(AccessJob.phase.notin_(list(JOB_TERMINAL))).all()
            ]
        finally:
            db.close()
        for request_id in request_ids:
            self.enqueue_request(request_id)
        for name in job_names:
            self.enqueue_job(name)
        logger.info("manager_resync", requests=len(request_ids), jobs=len(job_names))
        return len(request_ids) + len(job_names)

    async def start(self) -> None:
        self.requests.start()
        self.jobs.start()
        self.running = True
        self.resync()

    async def stop(self) -> None:
        self.running = False
        await self.requests.stop()
        await self.jobs.stop()
        logger.info("manager_stopped")
