"""
Cluster access binder.

Creates and removes EKS access entries for JIT session principals and
associates the managed access policy that matches the requested
permissions. The access-entry username (jit:<requester>) is cosmetic;
authority comes only from the associated policy.

Permission → policy table:
  view                                  → AmazonEKSViewPolicy
  edit, debug, logs, exec, port-forward → AmazonEKSEditPolicy
  admin, cluster-admin                  → AmazonEKSClusterAdminPolicy (cluster scope)
Non-admin policies are namespace-scoped when namespaces are given.
"""

from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional

import structlog
from botocore.exceptions import ClientError

from jitaccess.connectors.aws.clients import NETWORK_ERRORS, TRANSIENT_CODES, error_code, error_message
from jitaccess.services.shared.errors import (
    AuthDenied,
    Conflict,
    ExternalFailure,
    NotFound,
    TransientClusterError,
)

logger = structlog.get_logger()

POLICY_PREFIX = "arn:aws:eks::aws:cluster-access-policy/"
VIEW_POLICY   = POLICY_PREFIX + "AmazonEKSViewPolicy"
EDIT_POLICY   = POLICY_PREFIX + "AmazonEKSEditPolicy"
ADMIN_POLICY  = POLICY_PREFIX + "AmazonEKSClusterAdminPolicy"

PERMISSION_POLICIES = {
    "view":          VIEW_POLICY,
    "edit":          EDIT_POLICY,
    "debug":         EDIT_POLICY,
    "logs":          EDIT_POLICY,
    "exec":          EDIT_POLICY,
    "port-forward":  EDIT_POLICY,
    "admin":         ADMIN_POLICY,
    "cluster-admin": ADMIN_POLICY,
}

CLUSTER_WIDE_POLICIES = {ADMIN_POLICY}


class ClusterRef(NamedTuple):
    name: str
    region: str
    account: str


@dataclass(frozen=True)
class PolicyBinding:
    policy_arn: str
    scope_type: str
    namespaces: tuple = ()

    def access_scope(self) -> dict:
        scope = {"type": self.scope_type}
        if self.scope_type == "namespace":
            scope["namespaces"] = list(self.namespaces)
        return scope


@dataclass(frozen=True)
class ClusterDescription:
    name: str
    arn: str
    endpoint: str
    certificate_authority: str


def username_for(requester_id: str) -> str:
    return f"jit:{requester_id}"


def policies_for(permissions: Iterable[str], namespaces: Iterable[str] = ()) -> list[PolicyBinding]:
    """One binding per distinct policy, in first-requested order. Unknown permissions fall back to view."""
    ns = tuple(namespaces)
    seen, bindings = set(), []
    for perm in permissions:
        arn = PERMISSION_POLICIES.get(perm, VIEW_POLICY)
        if arn in seen:
            continue
        seen.add(arn)
        if arn in CLUSTER_WIDE_POLICIES or not ns:
            bindings.append(PolicyBinding(arn, "cluster"))
        else:
            bindings.append(PolicyBinding(arn, "namespace", ns))
    return bindings


class EksBinder:
    def __init__(self, client_factory):
        # client_factory(region) → boto3 "eks" client
        self._client_for = client_factory

    def _raise_mapped(self, exc: ClientError, action: str, cluster: ClusterRef):
        code = error_code(exc)
        message = f"{action} on cluster {cluster.name} failed: {error_message(exc)}"
        if code == "ResourceNotFoundException":
            raise NotFound(message) from exc
        if code == "ResourceInUseException":
            raise Conflict(message) from exc
        if code in ("AccessDeniedException", "UnauthorizedException"):
            raise AuthDenied(message) from exc
        if code in TRANSIENT_CODES:
            raise TransientClusterError(message) from exc
        raise ExternalFailure(message) from exc

    def bind(
        self,
        cluster: ClusterRef,
        principal: str,
        username: str,
        policies: list[PolicyBinding],
        tags: Optional[dict[str, str]] = None,
    ) -> None:
        """Create the access entry and associate policies. Safe to repeat."""
        client = self._client_for(cluster.region)
        try:
            entry = dict(clusterName=cluster.name, principalArn=principal, username=username, type="STANDARD")
            if tags:
                entry["tags"] = tags
            client.create_access_entry(**entry)
            logger.info("eks_access_entry_created", cluster=cluster.name, principal=principal)
        except ClientError as exc:
            if error_code(exc) != "ResourceInUseException":
                self._raise_mapped(exc, "create access entry", cluster)
            logger.info("eks_access_entry_exists", cluster=cluster.name, principal=principal)
        except NETWORK_ERRORS as exc:
            raise TransientClusterError(f"EKS unreachable: {exc}") from exc

        for binding in policies:
            try:
                client.associate_access_policy(
                    clusterName=cluster.name,
                    principalArn=principal,
                    policyArn=binding.policy_arn,
                    accessScope=binding.access_scope(),
                )
            except ClientError as exc:
                self._raise_mapped(exc, "associate access policy", cluster)
            except NETWORK_ERRORS as exc:
                raise TransientClusterError(f"EKS unreachable: {exc}") from exc
        logger.info(
            "eks_access_policies_associated",
            cluster=cluster.name,
            principal=principal,
            policies=[b.policy_arn.rsplit("/", 1)[-1] for b in policies],
        )

    def unbind(self, cluster: ClusterRef, principal: str) -> None:
        """Delete the access entry. Raises NotFound when it is already gone."""
        client = self._client_for(cluster.region)
        try:
            client.delete_access_entry(clusterName=cluster.name, principalArn=principal)
        except ClientError as exc:
            self._raise_mapped(exc, "delete access entry", cluster)
        except NETWORK_ERRORS as exc:
            raise TransientClusterError(f"EKS unreachable: {exc}") from exc
        logger.info("eks_access_entry_deleted", cluster=cluster.name, principal=principal)

    def list_entries(self, cluster: ClusterRef) -> list[str]:
        client = self._client_for(cluster.region)
        principals: list[str] = []
        try:
            paginator = client.get_paginator("list_access_entries")
            for page in paginator.paginate(clusterName=cluster.name):
                principals.extend(page.get("accessEntries", []))
        except ClientError as exc:
            self._raise_mapped(exc, "list access entries", cluster)
        except NETWORK_ERRORS as exc:
            raise TransientClusterError(f"EKS unreachable: {exc}") from exc
        return principals

    def describe_cluster(self, cluster: ClusterRef) -> ClusterDescription:
        client = self._client_for(cluster.region)
        try:
            resp = client.describe_cluster(name=cluster.name)
        except ClientError as exc:
            self._raise_mapped(exc, "describe cluster", cluster)
        except NETWORK_ERRORS as exc:
            raise TransientClusterError(f"EKS unreachable: {exc}") from exc
        info = resp["cluster"]
        return ClusterDescription(
            name=info["name"],
            arn=info.get("arn", ""),
            endpoint=info.get("endpoint", ""),
            certificate_authority=info.get("certificateAuthority", {}).get("data", ""),
        )
