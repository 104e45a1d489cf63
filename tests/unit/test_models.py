"""
Unit tests for the Request/Job state machines, condition helpers and the
optimistic-concurrency version column.
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.errors import Conflict
from jitaccess.services.shared.models import (
    AccessJob,
    AccessRequest,
    JobPhase,
    RequestPhase,
    has_condition,
    job_name_for,
    set_condition,
    transition_job,
    transition_request,
)

from conftest import ACCOUNT, REGION, REQUESTER


def make_request(**kwargs) -> AccessRequest:
    defaults = dict(
        requester_id=REQUESTER,
        requester_email="dev@example.com",
        cluster_name="dev-cluster",
        cluster_account=ACCOUNT,
        cluster_region=REGION,
        environment="development",
        reason="Investigating a failing deployment",
        duration="1h",
        permissions=["view"],
        namespaces=[],
        required_approvers=[],
        approvals=[],
        conditions=[],
        phase=RequestPhase.pending,
    )
    defaults.update(kwargs)
    return AccessRequest(**defaults)


def make_job(request_id: str = "req-1", **kwargs) -> AccessJob:
    defaults = dict(
        name=job_name_for(REQUESTER, request_id),
        request_id=request_id,
        requester_id=REQUESTER,
        cluster_name="dev-cluster",
        cluster_account=ACCOUNT,
        cluster_region=REGION,
        duration="1h",
        permissions=["view"],
        namespaces=[],
        role_arn=f"arn:aws:iam::{ACCOUNT}:role/JITAccessRole",
        conditions=[],
        phase=JobPhase.pending,
    )
    defaults.update(kwargs)
    return AccessJob(**defaults)


class TestRequestTransitions:
    def test_pending_to_approved(self):
        req = make_request()
        transition_request(req, RequestPhase.approved)
        assert req.phase == RequestPhase.approved

    def test_pending_cannot_jump_to_active(self):
        req = make_request(access_entry={"principal": "x"})
        with pytest.raises(Conflict):
            transition_request(req, RequestPhase.active)

    def test_active_requires_access_entry(self):
        req = make_request(phase=RequestPhase.approved)
        with pytest.raises(Conflict):
            transition_request(req, RequestPhase.active)

    def test_denied_is_terminal(self):
        req = make_request(phase=RequestPhase.denied)
        for target in RequestPhase:
            with pytest.raises(Conflict):
                transition_request(req, target)

    def test_active_to_revoked(self):
        req = make_request(phase=RequestPhase.active, access_entry={"principal": "x"})
        transition_request(req, RequestPhase.revoked)
        assert req.phase == RequestPhase.revoked


class TestJobTransitions:
    def test_happy_path(self):
        job = make_job()
        for target in (JobPhase.creating, JobPhase.active, JobPhase.expiring, JobPhase.completed):
            transition_job(job, target)
        assert job.phase == JobPhase.completed

    def test_active_cannot_fail(self):
        job = make_job(phase=JobPhase.active)
        with pytest.raises(Conflict):
            transition_job(job, JobPhase.failed)


class TestConditions:
    def test_set_adds_once(self):
        req = make_request()
        set_condition(req, "Approved", "AutoApproved", "ok")
        set_condition(req, "Approved", "AutoApproved", "ok again")
        assert len(req.conditions) == 1
        assert req.conditions[0]["message"] == "ok"

    def test_set_replaces_on_reason_change(self):
        req = make_request()
        set_condition(req, "Retrying", "Transient", "first", status="False")
        set_condition(req, "Retrying", "Throttled", "second", status="False")
        assert len(req.conditions) == 1
        assert req.conditions[0]["reason"] == "Throttled"

    def test_condition_shape(self):
        req = make_request()
        set_condition(req, "Submitted", "RequestSubmitted", "submitted")
        cond = req.conditions[0]
        assert set(cond) == {"type", "status", "timestamp", "reason", "message"}
        assert has_condition(req, "Submitted")
        assert not has_condition(req, "Approved")


class TestExpiryImmutability:
    def test_expiry_set_once(self):
        job = make_job()
        now = utcnow()
        job.expiry_time = now + timedelta(hours=1)
        with pytest.raises(Conflict):
            job.expiry_time = now + timedelta(hours=2)

    def test_same_value_is_allowed(self):
        job = make_job()
        value = utcnow() + timedelta(hours=1)
        job.expiry_time = value
        job.expiry_time = value


class TestPersistence:
    def test_job_name(self):
        assert job_name_for("U0ABC", "ABC-123") == "jit-u0abc-abc-123"

    def test_stale_write_rejected(self, session_factory):
        s1 = session_factory()
        req = make_request()
        s1.add(req)
        s1.commit()
        request_id = req.id

        s2 = session_factory()
        other = s2.get(AccessRequest, request_id)
        other.message = "written by another session"
        s2.commit()

        req.message = "stale write"
        with pytest.raises(StaleDataError):
            s1.commit()
        s1.close()
        s2.close()

    def test_delete_cascades_to_job(self, db):
        req = make_request()
        db.add(req)
        db.flush()
        db.add(make_job(request_id=req.id))
        db.commit()

        db.delete(req)
        db.commit()
        assert db.query(AccessJob).count() == 0
