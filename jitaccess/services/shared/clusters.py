"""
In-memory cluster registry.

Administrators create, update and delete entries over the HTTP API; the
registry is seeded from the `clusters` list in the config file at startup.
Requests reference clusters by name. All access goes through an RWLock.
"""

import re
import uuid
from typing import Iterable, Optional

import structlog

from jitaccess.services.shared.config import ClusterSeed
from jitaccess.services.shared.database import utcnow
from jitaccess.services.shared.durations import format_duration, parse_duration
from jitaccess.services.shared.errors import Conflict, NotFound, ValidationFailed
from jitaccess.services.shared.locks import RWLock
from jitaccess.services.shared.schemas import Cluster, ClusterCreate, ClusterUpdate

logger = structlog.get_logger()

ACCOUNT_RE      = re.compile(r"^\d{12}$")
REGION_RE       = re.compile(r"^[a-z]{2}-[a-z]+-\d$")
CLUSTER_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

DEFAULT_MAX_DURATION = "1h"

_ENVIRONMENT_MARKERS = (
    ("prod", "production"),
    ("stag", "staging"),
    ("dev",  "development"),
    ("qa",   "qa"),
)


def infer_environment(cluster_name: str) -> str:
    """Guess the environment from the cluster name; unknown names count as production."""
    name = cluster_name.lower()
    for marker, environment in _ENVIRONMENT_MARKERS:
        if marker in name:
            return environment
    return "production"


def _validate(name: str, account_id: str, region: str, max_duration: str) -> None:
    if not CLUSTER_NAME_RE.match(name) or len(name) > 100:
        raise ValidationFailed(f"invalid cluster name {name!r}")
    if not ACCOUNT_RE.match(account_id):
        raise ValidationFailed(f"invalid AWS account ID {account_id!r}: must be 12 digits")
    if not REGION_RE.match(region):
        raise ValidationFailed(f"invalid AWS region {region!r}")
    if parse_duration(max_duration).total_seconds() <= 0:
        raise ValidationFailed("max_duration must be positive")


class ClusterRegistry:
    def __init__(self):
        self._lock = RWLock()
        self._clusters: dict[str, Cluster] = {}

    def _lookup(self, id_or_name: str) -> Optional[Cluster]:
        cluster = self._clusters.get(id_or_name)
        if cluster:
            return cluster
        key = id_or_name.lower()
        for c in self._clusters.values():
            if c.name == key:
                return c
        return None

    def create(self, data: ClusterCreate, created_by: str) -> Cluster:
        name = data.name.strip().lower()
        max_duration = format_duration(parse_duration(data.max_duration or DEFAULT_MAX_DURATION))
        _validate(name, data.account_id, data.region, max_duration)
        if data.required_approvers < 0:
            raise ValidationFailed("required_approvers must not be negative")

        now = utcnow()
        cluster = Cluster(
            id=str(uuid.uuid4()),
            name=name,
            display_name=data.display_name or name,
            account_id=data.account_id,
            region=data.region,
            environment=(data.environment or infer_environment(name)).lower(),
            max_duration=max_duration,
            required_approvers=data.required_approvers,
            enabled=data.enabled,
            role_arn=data.role_arn,
            tags=dict(data.tags),
            created_at=now,
            updated_at=now,
            created_by=created_by,
        )
        with self._lock.write():
            if self._lookup(name):
                raise Conflict(f"cluster {name} already exists")
            self._clusters[cluster.id] = cluster
        logger.info("cluster_created", cluster=name, environment=cluster.environment, by=created_by)
        return cluster

    def seed(self, seeds: Iterable[ClusterSeed]) -> int:
        count = 0
        for seed in seeds:
            data = ClusterCreate(**seed.model_dump())
            try:
                self.create(data, created_by="config")
            except Conflict:
                logger.warning("cluster_seed_duplicate", cluster=seed.name)
                continue
            count += 1
        return count

    def get(self, id_or_name: str) -> Cluster:
        with self._lock.read():
            cluster = self._lookup(id_or_name)
        if cluster is None:
            raise NotFound(f"cluster not found: {id_or_name}")
        return cluster

    def find(self, id_or_name: str) -> Optional[Cluster]:
        with self._lock.read():
            return self._lookup(id_or_name)

    def list(self, enabled_only: bool = False) -> list[Cluster]:
        with self._lock.read():
            clusters = list(self._clusters.values())
        if enabled_only:
            clusters = [c for c in clusters if c.enabled]
        return sorted(clusters, key=lambda c: c.name)

    def update(self, id_or_name: str, data: ClusterUpdate) -> Cluster:
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "max_duration" in changes:
            changes["max_duration"] = format_duration(parse_duration(changes["max_duration"]))
        if changes.get("required_approvers", 0) < 0:
            raise ValidationFailed("required_approvers must not be negative")
        with self._lock.write():
            current = self._lookup(id_or_name)
            if current is None:
                raise NotFound(f"cluster not found: {id_or_name}")
            updated = current.model_copy(update={**changes, "updated_at": utcnow()})
            self._clusters[current.id] = updated
        logger.info("cluster_updated", cluster=updated.name, fields=sorted(changes))
        return updated

    def set_enabled(self, id_or_name: str, enabled: bool) -> Cluster:
        return self.update(id_or_name, ClusterUpdate(enabled=enabled))

    def delete(self, id_or_name: str) -> Cluster:
        with self._lock.write():
            current = self._lookup(id_or_name)
            if current is None:
                raise NotFound(f"cluster not found: {id_or_name}")
            del self._clusters[current.id]
        logger.info("cluster_deleted", cluster=current.name)
        return current
