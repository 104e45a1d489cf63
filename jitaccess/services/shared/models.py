"""
JIT access SQLAlchemy ORM models - all persisted records in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column.

  AccessRequest  intent authored by a requester (owns one AccessJob)
  AccessJob      the side-effect enacting a Request: session + cluster binding
  AuditLog       one row per mutating operation

Phases are explicit enums advanced only through transition_request() /
transition_job(); there are no boolean status flags. Both Request and Job
carry resource_version for optimistic concurrency: a write against a stale
version raises StaleDataError on flush.

List/dict JSON columns are always reassigned, never mutated in place, so the
ORM sees the change.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Enum as SAEnum, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from jitaccess.services.shared.database import Base, UTCDateTime, utcnow
from jitaccess.services.shared.errors import Conflict


# ── Enumerations ──────────────────────────────────────────────────────────────

class RequestPhase(str, enum.Enum):
    pending  = "Pending"
    approved = "Approved"
    denied   = "Denied"
    active   = "Active"
    expired  = "Expired"
    revoked  = "Revoked"


class JobPhase(str, enum.Enum):
    pending   = "Pending"
    creating  = "Creating"
    active    = "Active"
    expiring  = "Expiring"
    completed = "Completed"
    failed    = "Failed"


class CleanupPolicy(str, enum.Enum):
    on_expiry = "OnExpiry"
    on_delete = "OnDelete"
    manual    = "Manual"


REQUEST_TERMINAL = {RequestPhase.denied}
JOB_TERMINAL     = {JobPhase.completed, JobPhase.failed}
JOB_HOLDS_ACCESS = {JobPhase.active, JobPhase.expiring}
REQUEST_HAS_ENTRY = {RequestPhase.active, RequestPhase.expired, RequestPhase.revoked}

_REQUEST_TRANSITIONS: dict[RequestPhase, set[RequestPhase]] = {
    RequestPhase.pending:  {RequestPhase.approved, RequestPhase.denied},
    RequestPhase.approved: {RequestPhase.active},
    RequestPhase.active:   {RequestPhase.expired, RequestPhase.revoked},
    RequestPhase.denied:   set(),
    RequestPhase.expired:  set(),
    RequestPhase.revoked:  set(),
}

_JOB_TRANSITIONS: dict[JobPhase, set[JobPhase]] = {
    JobPhase.pending:   {JobPhase.creating, JobPhase.failed},
    JobPhase.creating:  {JobPhase.active, JobPhase.failed},
    JobPhase.active:    {JobPhase.expiring},
    JobPhase.expiring:  {JobPhase.completed},
    JobPhase.completed: set(),
    JobPhase.failed:    set(),
}


# ── Conditions ────────────────────────────────────────────────────────────────

def make_condition(type_: str, reason: str, message: str, status: str = "True") -> dict:
    return {
        "type":      type_,
        "status":    status,
        "timestamp": utcnow().isoformat(),
        "reason":    reason,
        "message":   message,
    }


def set_condition(obj, type_: str, reason: str, message: str, status: str = "True") -> None:
    """Add a condition, or update the existing one of that type when its reason or status changed."""
    conditions = list(obj.conditions or [])
    for i, existing in enumerate(conditions):
        if existing["type"] == type_:
            if existing["reason"] == reason and existing["status"] == status:
                return
            conditions[i] = make_condition(type_, reason, message, status)
            obj.conditions = conditions
            return
    conditions.append(make_condition(type_, reason, message, status))
    obj.conditions = conditions


def has_condition(obj, type_: str) -> bool:
    return any(c["type"] == type_ for c in (obj.conditions or []))


# ── Access Request ────────────────────────────────────────────────────────────

class AccessRequest(Base):
    """
    A requester's intent to obtain access to one cluster.
    Lifecycle: Pending → Approved → Active → Expired | Revoked, or Pending → Denied.
    """
    __tablename__ = "access_requests"

    id:                 Mapped[str]            = mapped_column(String(36), primary_key=True,
                                                               default=lambda: str(uuid.uuid4()))
    requester_id:       Mapped[str]            = mapped_column(String(64), nullable=False, index=True)
    requester_email:    Mapped[str]            = mapped_column(String(254), nullable=False)
    cluster_name:       Mapped[str]            = mapped_column(String(100), nullable=False, index=True)
    cluster_account:    Mapped[str]            = mapped_column(String(12), nullable=False)
    cluster_region:     Mapped[str]            = mapped_column(String(32), nullable=False)
    environment:        Mapped[str]            = mapped_column(String(32), nullable=False, default="production")
    reason:             Mapped[str]            = mapped_column(Text, nullable=False)
    duration:           Mapped[str]            = mapped_column(String(32), nullable=False, default="1h")
    permissions:        Mapped[list]           = mapped_column(JSON, nullable=False, default=list)
    namespaces:         Mapped[list]           = mapped_column(JSON, nullable=False, default=list)
    required_approvers: Mapped[list]           = mapped_column(JSON, nullable=False, default=list)
    min_approvals:      Mapped[int]            = mapped_column(Integer, nullable=False, default=0)
    approvals:          Mapped[list]           = mapped_column(JSON, nullable=False, default=list)
    phase:              Mapped[RequestPhase]   = mapped_column(SAEnum(RequestPhase), nullable=False,
                                                               default=RequestPhase.pending, index=True)
    conditions:         Mapped[list]           = mapped_column(JSON, nullable=False, default=list)
    access_entry:       Mapped[Optional[Any]]  = mapped_column(JSON, nullable=True)
    message:            Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    channel_id:         Mapped[Optional[str]]  = mapped_column(String(64), nullable=True)
    created_at:         Mapped[datetime]       = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at:         Mapped[datetime]       = mapped_column(UTCDateTime, nullable=False, default=utcnow,
                                                               onupdate=utcnow)
    resource_version:   Mapped[int]            = mapped_column(Integer, nullable=False)

    job: Mapped[Optional["AccessJob"]] = relationship(
        "AccessJob", back_populates="request", uselist=False,
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": resource_version}
    __table_args__ = (
        Index("ix_access_requests_requester_cluster", "requester_id", "cluster_name"),
    )


# ── Access Job ────────────────────────────────────────────────────────────────

class AccessJob(Base):
    """
    Intended effect of an approved Request.
    Lifecycle: Pending → Creating → Active → Expiring → Completed, or → Failed.
    expiry_time is fixed once set (start_time + duration).
    """
    __tablename__ = "access_jobs"

    name:            Mapped[str]                = mapped_column(String(128), primary_key=True)
    request_id:      Mapped[str]                = mapped_column(String(36),
                                                                ForeignKey("access_requests.id", ondelete="CASCADE"),
                                                                nullable=False, unique=True)
    requester_id:    Mapped[str]                = mapped_column(String(64), nullable=False)
    cluster_name:    Mapped[str]                = mapped_column(String(100), nullable=False, index=True)
    cluster_account: Mapped[str]                = mapped_column(String(12), nullable=False)
    cluster_region:  Mapped[str]                = mapped_column(String(32), nullable=False)
    duration:        Mapped[str]                = mapped_column(String(32), nullable=False)
    permissions:     Mapped[list]               = mapped_column(JSON, nullable=False, default=list)
    namespaces:      Mapped[list]               = mapped_column(JSON, nullable=False, default=list)
    role_arn:        Mapped[str]                = mapped_column(String(256), nullable=False)
    cleanup_policy:  Mapped[CleanupPolicy]      = mapped_column(SAEnum(CleanupPolicy), nullable=False,
                                                                default=CleanupPolicy.on_expiry)
    phase:           Mapped[JobPhase]           = mapped_column(SAEnum(JobPhase), nullable=False,
                                                                default=JobPhase.pending, index=True)
    start_time:      Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expiry_time:     Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completion_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    principal_arn:   Mapped[Optional[str]]      = mapped_column(String(256), nullable=True)
    session_name:    Mapped[Optional[str]]      = mapped_column(String(64), nullable=True, index=True)
    credentials_ref: Mapped[Optional[str]]      = mapped_column(String(256), nullable=True)
    kubeconfig_ref:  Mapped[Optional[str]]      = mapped_column(String(256), nullable=True)
    attempts:        Mapped[int]                = mapped_column(Integer, nullable=False, default=0)
    message:         Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    conditions:      Mapped[list]               = mapped_column(JSON, nullable=False, default=list)
    created_at:      Mapped[datetime]           = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at:      Mapped[datetime]           = mapped_column(UTCDateTime, nullable=False, default=utcnow,
                                                                onupdate=utcnow)
    resource_version: Mapped[int]               = mapped_column(Integer, nullable=False)

    request: Mapped["AccessRequest"] = relationship("AccessRequest", back_populates="job")

    __mapper_args__ = {"version_id_col": resource_version}

    @validates("expiry_time")
    def _expiry_is_immutable(self, key, value):
        current = self.__dict__.get("expiry_time")
        if current is not None and value != current:
            raise Conflict(f"job {self.name}: expiry_time is immutable once set")
        return value


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditLog(Base):
    """Append-only record of every mutating operation."""
    __tablename__ = "audit_logs"

    id:        Mapped[int]           = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor:     Mapped[str]           = mapped_column(String(128), nullable=False)
    action:    Mapped[str]           = mapped_column(String(64), nullable=False, index=True)
    resource:  Mapped[str]           = mapped_column(String(256), nullable=False)
    detail:    Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime]      = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)


# ── Transitions ───────────────────────────────────────────────────────────────

def transition_request(req: AccessRequest, target: RequestPhase) -> None:
    """Move a Request one edge along its state machine or raise Conflict."""
    current = req.phase
    if target not in _REQUEST_TRANSITIONS[current]:
        raise Conflict(f"request {req.id}: cannot move from {current.value} to {target.value}")
    if target in REQUEST_HAS_ENTRY and not req.access_entry:
        raise Conflict(f"request {req.id}: {target.value} requires an access entry")
    req.phase = target


def transition_job(job: AccessJob, target: JobPhase) -> None:
    current = job.phase
    if target not in _JOB_TRANSITIONS[current]:
        raise Conflict(f"job {job.name}: cannot move from {current.value} to {target.value}")
    job.phase = target


def job_name_for(requester_id: str, request_id: str) -> str:
    return f"jit-{requester_id.lower()}-{request_id.lower()}"
