"""
Unit tests for the grant executor: session minting, binding, kubeconfig
storage, compensation on partial failure and idempotent revoke.
"""

import threading
from datetime import timedelta

import pytest
import yaml

from jitaccess.connectors.aws.eks_binder import EksBinder
from jitaccess.connectors.aws.sts_minter import StsMinter
from jitaccess.services.lifecycle.controller import ReconcileContext
from jitaccess.services.lifecycle.grant_executor import GrantExecutor, job_principal, job_session_name
from jitaccess.services.lifecycle.secrets import (
    InMemorySecretStore,
    SecretStore,
    credentials_secret_name,
    kubeconfig_secret_name,
)
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.errors import (
    AuthDenied,
    CompensationFailed,
    DeadlineExceeded,
    InvalidPolicy,
    TransientClusterError,
)
from jitaccess.services.shared.models import AccessJob, JobPhase, job_name_for

from conftest import ACCOUNT, REGION, REQUESTER


def make_job(duration: str = "1h", window: timedelta = timedelta(hours=1), **kwargs) -> AccessJob:
    start = utcnow().replace(microsecond=0)
    defaults = dict(
        name=job_name_for(REQUESTER, "req-1"),
        request_id="req-1",
        requester_id=REQUESTER,
        cluster_name="dev-cluster",
        cluster_account=ACCOUNT,
        cluster_region=REGION,
        duration=duration,
        permissions=["view"],
        namespaces=[],
        role_arn=f"arn:aws:iam::{ACCOUNT}:role/JITAccessRole",
        conditions=[],
        phase=JobPhase.creating,
        start_time=start,
        expiry_time=start + window,
    )
    defaults.update(kwargs)
    return AccessJob(**defaults)


@pytest.fixture
def secrets():
    return InMemorySecretStore()


@pytest.fixture
def executor(fake_sts, fake_eks, secrets):
    return GrantExecutor(StsMinter(fake_sts), EksBinder(lambda region: fake_eks), secrets)


class TestGrant:
    def test_grant_binds_and_stores(self, executor, fake_sts, fake_eks, secrets):
        job = make_job()
        result = executor.grant(job)

        assert result.principal == job_principal(job)
        assert result.session_name == job_session_name(job)
        assert fake_eks.has_entry("dev-cluster", result.principal)

        call = fake_sts.calls[0]
        assert call["RoleSessionName"] == result.session_name
        assert 3500 <= call["DurationSeconds"] <= 3600
        tags = {t["Key"]: t["Value"] for t in call["Tags"]}
        assert tags == {"Purpose": "JITAccess", "UserID": REQUESTER, "ClusterID": "dev-cluster", "RequestID": "req-1"}

        assert result.credentials_ref == credentials_secret_name(job.name)
        assert secrets.get(result.credentials_ref)["aws-session-token"] == "fake-session-token"
        kubeconfig = yaml.safe_load(secrets.get(result.kubeconfig_ref)["kubeconfig"])
        assert kubeconfig["clusters"][0]["cluster"]["server"] == "https://dev-cluster.eks.amazonaws.com"
        assert secrets.labels(result.kubeconfig_ref)["jit.rebelops.io/job"] == job.name

    def test_grant_twice_keeps_one_entry(self, executor, fake_eks):
        job = make_job()
        first = executor.grant(job)
        second = executor.grant(job)
        assert first.principal == second.principal
        assert list(fake_eks.entries["dev-cluster"]) == [first.principal]

    def test_no_window(self, executor, fake_sts):
        job = make_job(start_time=None, expiry_time=None)
        with pytest.raises(InvalidPolicy) as exc:
            executor.grant(job)
        assert exc.value.reason == "NoWindow"
        assert fake_sts.calls == []

    def test_cancelled_context_stops_before_mint(self, executor, fake_sts):
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(DeadlineExceeded):
            executor.grant(make_job(), ReconcileContext(30, cancelled))
        assert fake_sts.calls == []


class TestCompensation:
    def test_describe_failure_unbinds(self, executor, fake_eks, secrets):
        fake_eks.fail_describe = "InternalError"
        job = make_job()
        with pytest.raises(TransientClusterError):
            executor.grant(job)
        assert not fake_eks.has_entry("dev-cluster", job_principal(job))
        assert secrets.names() == []

    def test_failed_rollback_is_reported(self, executor, fake_eks):
        fake_eks.fail_describe = "InternalError"
        fake_eks.fail_delete = "InternalError"
        job = make_job()
        with pytest.raises(CompensationFailed):
            executor.grant(job)
        # the binding is still live and must be surfaced, not hidden
        assert fake_eks.has_entry("dev-cluster", job_principal(job))


    def test_policy_association_failure_unbinds(self, executor, fake_eks, secrets):
        fake_eks.fail_associate = "AccessDeniedException"
        job = make_job()
        with pytest.raises(AuthDenied):
            executor.grant(job)
        assert not fake_eks.has_entry("dev-cluster", job_principal(job))
        assert fake_eks.deleted == [job_principal(job)]
        assert secrets.names() == []

    def test_policy_association_failure_with_failed_rollback(self, executor, fake_eks):
        fake_eks.fail_associate = "AccessDeniedException"
        fake_eks.fail_delete = "InternalError"
        job = make_job()
        with pytest.raises(CompensationFailed):
            executor.grant(job)
        assert fake_eks.has_entry("dev-cluster", job_principal(job))


class TestRevoke:
    def test_revoke_removes_everything(self, executor, fake_eks, secrets):
        job = make_job()
        result = executor.grant(job)
        job.credentials_ref = result.credentials_ref
        job.kubeconfig_ref = result.kubeconfig_ref

        executor.revoke(job)
        assert not fake_eks.has_entry("dev-cluster", result.principal)
        assert not secrets.exists(result.credentials_ref)
        assert not secrets.exists(kubeconfig_secret_name(job.name))

    def test_revoke_twice(self, executor, fake_eks):
        job = make_job()
        executor.grant(job)
        executor.revoke(job)
        executor.revoke(job)
        assert fake_eks.deleted == [job_principal(job)]

    def test_revoke_before_window(self, executor, fake_eks):
        job = make_job(start_time=None, expiry_time=None, phase=JobPhase.pending)
        executor.revoke(job)
        assert fake_eks.deleted == []


class TestSessionTtl:
    def test_duration_within_window(self, executor):
        job = make_job(duration="30m")
        assert executor.session_ttl(job, now=job.start_time) == timedelta(minutes=30)

    def test_clipped_to_remaining_window(self, executor):
        job = make_job()
        now = job.start_time + timedelta(minutes=30)
        assert executor.session_ttl(job, now=now) == timedelta(minutes=30)

    def test_short_remainder_raised_to_minimum(self, executor):
        job = make_job()
        now = job.expiry_time - timedelta(minutes=14, seconds=30)
        assert executor.session_ttl(job, now=now) == timedelta(minutes=15)

    def test_window_elapsed(self, executor):
        job = make_job()
        with pytest.raises(InvalidPolicy) as exc:
            executor.session_ttl(job, now=job.expiry_time - timedelta(minutes=5))
        assert exc.value.reason == "WindowElapsed"


class TestSecretStore:
    def test_incomplete_backend_cannot_be_built(self):
        class WriteOnlyStore(SecretStore):
            def put(self, name, data, labels=None):
                return name

        with pytest.raises(TypeError):
            WriteOnlyStore()

    def test_in_memory_store(self):
        store = InMemorySecretStore()
        ref = store.put("jit-kubeconfig-j", {"kubeconfig": "x"}, {"team": "sre"})
        assert store.get(ref) == {"kubeconfig": "x"}
        assert store.labels(ref) == {"app": "jit-access", "team": "sre"}
        assert store.delete(ref) is True
        assert store.delete(ref) is False
        assert not store.exists(ref)
