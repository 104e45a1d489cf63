"""
Control-plane assembly.

build_plane() turns one JitSettings into the full object graph: cluster
registry, role table, request policy, AWS connectors, secret store, the two
reconcilers behind a Manager, the expiry sweeper, the access service and the
chat command handler. Tests pass their own session factory and stubbed
clients; production code passes settings only.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from fastapi import Request
from sqlalchemy.orm import sessionmaker

from jitaccess.connectors.aws.clients import RegionalClients, make_client
from jitaccess.connectors.aws.eks_binder import EksBinder
from jitaccess.connectors.aws.sts_minter import StsMinter
from jitaccess.services.access.service import AccessService
from jitaccess.services.access.slack_client import SlackClient
from jitaccess.services.access.slack_commands import SlackCommandHandler
from jitaccess.services.lifecycle.grant_executor import GrantExecutor
from jitaccess.services.lifecycle.job_reconciler import JobReconciler
from jitaccess.services.lifecycle.manager import Manager
from jitaccess.services.lifecycle.request_reconciler import RequestReconciler
from jitaccess.services.lifecycle.secrets import InMemorySecretStore, SecretStore
from jitaccess.services.lifecycle.sweeper import ExpirySweeper
from jitaccess.services.policy.request_policy import RequestPolicy
from jitaccess.services.shared import database
from jitaccess.services.shared.auth import RoleTable
from jitaccess.services.shared.clusters import ClusterRegistry
from jitaccess.services.shared.config import JitSettings

logger = structlog.get_logger()


@dataclass
class AccessPlane:
    settings: JitSettings
    session_factory: sessionmaker
    registry: ClusterRegistry
    roles: RoleTable
    policy: RequestPolicy
    secrets: SecretStore
    executor: GrantExecutor
    manager: Manager
    sweeper: ExpirySweeper
    service: AccessService
    slack: SlackClient
    commands: SlackCommandHandler


def build_plane(
    settings: JitSettings,
    session_factory: Optional[sessionmaker] = None,
    sts_client=None,
    eks_client_factory: Optional[Callable] = None,
    secrets: Optional[SecretStore] = None,
    slack_client: Optional[SlackClient] = None,
) -> AccessPlane:
    if session_factory is None:
        database.init_engine(settings.database.url)
        session_factory = database.SessionLocal

    registry = ClusterRegistry()
    seeded = registry.seed(settings.clusters)
    roles = RoleTable(admins=settings.auth.admin_users, approvers=settings.auth.approvers)
    policy = RequestPolicy(
        approval_required=settings.access.approval_required,
        allowed_accounts=settings.aws.account_ids,
        teams=settings.auth.teams,
    )
    secrets = secrets or InMemorySecretStore()

    minter = StsMinter(
        sts_client or make_client("sts", settings.aws),
        operator_max_ttl=settings.access.max_duration,
    )
    binder = EksBinder(eks_client_factory or RegionalClients("eks", settings.aws))
    executor = GrantExecutor(minter, binder, secrets)

    request_reconciler = RequestReconciler(
        session_factory, registry, roles, policy, role_name=settings.aws.role_name,
    )
    job_reconciler = JobReconciler(
        session_factory, executor, max_attempts=settings.controller.max_grant_attempts,
    )
    manager = Manager(
        session_factory,
        request_reconciler,
        job_reconciler,
        workers=settings.controller.workers,
        timeout=settings.controller.reconcile_timeout.total_seconds(),
    )

    sweeper = ExpirySweeper(session_factory, registry, binder, cluster_prefix=settings.aws.eks_cluster_prefix)
    sweeper.enqueue_request = manager.enqueue_request
    sweeper.enqueue_job = manager.enqueue_job

    service = AccessService(
        registry, roles, policy, secrets,
        sweeper=sweeper,
        enqueue_request=manager.enqueue_request,
        enqueue_job=manager.enqueue_job,
    )
    slack = slack_client or SlackClient(
        settings.slack.token,
        api_base_url=settings.slack.api_base_url,
        email_domain=settings.slack.email_domain,
    )
    commands = SlackCommandHandler(service, registry, roles, slack)

    logger.info("access_plane_built", clusters=seeded, workers=settings.controller.workers)
    return AccessPlane(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        roles=roles,
        policy=policy,
        secrets=secrets,
        executor=executor,
        manager=manager,
        sweeper=sweeper,
        service=service,
        slack=slack,
        commands=commands,
    )


def get_plane(request: Request) -> AccessPlane:
    """FastAPI dependency: the plane attached to app.state by create_app()."""
    return request.app.state.plane
