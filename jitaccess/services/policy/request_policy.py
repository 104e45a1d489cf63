"""
Request policy: defaulting, validation and approval rules.

Pure functions over a RequestDraft. Ingress surfaces (chat command, HTTP
grant) call RequestPolicy.prepare() before a Request row is written; a
failed rule raises PolicyViolation and nothing is persisted.

Validation order (first failure wins):
  identity → cluster → duration → permissions → namespaces → reason → approvers
"""

import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Iterable, Optional

from jitaccess.services.shared.clusters import ACCOUNT_RE, REGION_RE, infer_environment
from jitaccess.services.shared.durations import normalize_duration, parse_duration
from jitaccess.services.shared.errors import InvalidDuration, PolicyViolation

USER_ID_RE   = re.compile(r"^U[A-Z0-9]{10}$")
EMAIL_RE     = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
TEAM_RE      = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")

MIN_DURATION = timedelta(minutes=15)
MAX_DURATION = timedelta(days=7)

REASON_MIN_LENGTH               = 10
REASON_MAX_LENGTH               = 500
CLUSTER_ADMIN_REASON_MIN_LENGTH = 50

DEFAULT_PERMISSIONS = ["view"]
DEFAULT_DURATION    = "1h"

ALLOWED_PERMISSIONS = frozenset({
    "view", "edit", "admin", "cluster-admin",
    "debug", "logs", "exec", "port-forward",
})

ELEVATED_PERMISSIONS = frozenset({
    "admin", "cluster-admin", "edit", "exec", "port-forward", "debug",
})

# cluster-admin reasons may not contain any of these (case-insensitive)
BANNED_PHRASES = (
    "need access",
    "want access",
    "need to debug",
    "want to check",
    "testing something",
    "trying to",
)

# a reason consisting solely of one of these is rejected for every request
GENERIC_REASONS = frozenset({
    "test", "testing", "debug", "debugging", "temp", "temporary",
    "asdf", "xxx", "...", "n/a",
})

PRODUCTION_APPROVERS = ["platform-team", "sre-team"]
SECURITY_APPROVER    = "security-team"
STAGING_APPROVERS    = ["platform-team"]

CLUSTER_ADMIN_JUSTIFICATION = "cluster-admin permission requires detailed justification"
CLUSTER_ADMIN_NAMESPACES    = "cluster-admin applies cluster-wide; namespaces must not be specified"


@dataclass
class RequestDraft:
    """Caller input for a new access request, before defaults are applied."""

    requester_id: str
    requester_email: str
    cluster_name: str
    account: str
    region: str
    reason: str
    duration: Optional[str] = None
    permissions: list[str] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)
    approvers: list[str] = field(default_factory=list)
    environment: Optional[str] = None


def is_elevated(permissions: Iterable[str]) -> bool:
    return any(p in ELEVATED_PERMISSIONS for p in permissions)


def derive_approvers(environment: str, permissions: Iterable[str]) -> list[str]:
    elevated = is_elevated(permissions)
    if environment == "production":
        approvers = list(PRODUCTION_APPROVERS)
        if elevated:
            approvers.append(SECURITY_APPROVER)
        return approvers
    if environment == "staging" and elevated:
        return list(STAGING_APPROVERS)
    return []


def _dedupe(values: Iterable[str]) -> list[str]:
    seen, out = set(), []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def apply_defaults(draft: RequestDraft) -> RequestDraft:
    permissions = _dedupe(p.strip().lower() for p in draft.permissions if p.strip())
    environment = (draft.environment or infer_environment(draft.cluster_name)).lower()
    permissions = permissions or list(DEFAULT_PERMISSIONS)
    approvers = [a.strip() for a in draft.approvers if a.strip()]
    return replace(
        draft,
        cluster_name=draft.cluster_name.strip().lower(),
        region=draft.region.strip().lower(),
        account=draft.account.strip(),
        reason=draft.reason.strip(),
        duration=normalize_duration(draft.duration) if draft.duration else DEFAULT_DURATION,
        permissions=permissions,
        namespaces=[n.strip() for n in draft.namespaces if n.strip()],
        approvers=approvers or derive_approvers(environment, permissions),
        environment=environment,
    )


# ── Validation ────────────────────────────────────────────────────────────────

def validate_identity(user_id: str, email: str) -> None:
    if not USER_ID_RE.match(user_id or ""):
        raise PolicyViolation(f"invalid user ID {user_id!r}")
    if not EMAIL_RE.match(email or ""):
        raise PolicyViolation(f"invalid email address {email!r}")


def validate_cluster(account: str, region: str, allowed_accounts: Iterable[str] = ()) -> None:
    if not ACCOUNT_RE.match(account or ""):
        raise PolicyViolation("AWS account ID must be 12 digits")
    allowed = set(allowed_accounts)
    if allowed and account not in allowed:
        raise PolicyViolation(f"AWS account {account} is not an allowed JIT target")
    if not REGION_RE.match(region or ""):
        raise PolicyViolation(f"invalid AWS region format: {region}")


def validate_duration(duration: str, max_duration: Optional[timedelta] = None) -> timedelta:
    try:
        value = parse_duration(duration)
    except InvalidDuration as exc:
        raise PolicyViolation(exc.message) from exc
    if value < MIN_DURATION:
        raise PolicyViolation("duration must be at least 15 minutes")
    if value > MAX_DURATION:
        raise PolicyViolation("duration cannot exceed 7 days")
    if max_duration is not None and value > max_duration:
        raise PolicyViolation(f"requested duration {duration} exceeds cluster limit")
    return value


def validate_permissions(permissions: list[str]) -> None:
    if not permissions:
        raise PolicyViolation("at least one permission must be specified")
    for p in permissions:
        if p not in ALLOWED_PERMISSIONS:
            raise PolicyViolation(
                f"invalid permission {p!r}, allowed: {', '.join(sorted(ALLOWED_PERMISSIONS))}"
            )
    if "cluster-admin" in permissions and len(permissions) > 1:
        raise PolicyViolation("cluster-admin permission cannot be combined with other permissions")


def validate_namespaces(namespaces: list[str], permissions: list[str]) -> None:
    if "cluster-admin" in permissions and namespaces:
        raise PolicyViolation(CLUSTER_ADMIN_NAMESPACES)
    seen = set()
    for ns in namespaces:
        if not NAMESPACE_RE.match(ns) or len(ns) > 63:
            raise PolicyViolation(f"invalid namespace name: {ns}")
        if ns in seen:
            raise PolicyViolation(f"duplicate namespace: {ns}")
        seen.add(ns)


def validate_reason(reason: str, permissions: list[str]) -> None:
    text = (reason or "").strip()
    if not text:
        raise PolicyViolation("reason cannot be empty")
    if len(text) < REASON_MIN_LENGTH:
        raise PolicyViolation(f"reason must be at least {REASON_MIN_LENGTH} characters long")
    if len(text) > REASON_MAX_LENGTH:
        raise PolicyViolation(f"reason cannot exceed {REASON_MAX_LENGTH} characters")
    lowered = text.lower()
    if lowered in GENERIC_REASONS:
        raise PolicyViolation("please provide a meaningful business reason for access")
    if "cluster-admin" in permissions:
        if len(text) < CLUSTER_ADMIN_REASON_MIN_LENGTH:
            raise PolicyViolation(CLUSTER_ADMIN_JUSTIFICATION)
        if any(phrase in lowered for phrase in BANNED_PHRASES):
            raise PolicyViolation(CLUSTER_ADMIN_JUSTIFICATION)


def is_valid_approver(approver: str) -> bool:
    return bool(USER_ID_RE.match(approver) or TEAM_RE.match(approver))


def validate_approvers(approvers: list[str]) -> None:
    seen = set()
    for a in approvers:
        if a in seen:
            raise PolicyViolation(f"duplicate approver: {a}")
        seen.add(a)
        if not is_valid_approver(a):
            raise PolicyViolation(f"invalid approver format: {a}")


def validate(
    draft: RequestDraft,
    max_duration: Optional[timedelta] = None,
    allowed_accounts: Iterable[str] = (),
) -> None:
    """Run every rule against an already-defaulted draft."""
    validate_identity(draft.requester_id, draft.requester_email)
    validate_cluster(draft.account, draft.region, allowed_accounts)
    validate_duration(draft.duration, max_duration)
    validate_permissions(draft.permissions)
    validate_namespaces(draft.namespaces, draft.permissions)
    validate_reason(draft.reason, draft.permissions)
    validate_approvers(draft.approvers)


# ── Approval rules ────────────────────────────────────────────────────────────

def auto_approve_eligible(
    permissions: Iterable[str],
    environment: str,
    can_create_requests: bool,
    approval_required: bool = True,
) -> bool:
    """
    view-only requests on a non-production cluster from an identity allowed to
    create requests skip approval. With approval_required off, everything does.
    """
    if not approval_required:
        return True
    perms = set(permissions)
    return bool(perms) and perms <= {"view"} and environment != "production" and can_create_requests


def matches_required(actor_id: str, required: str, teams: dict[str, list[str]]) -> bool:
    return actor_id == required or actor_id in teams.get(required, ())


def approvals_satisfied(
    required: list[str],
    approvals: list[dict],
    min_approvals: int = 0,
) -> bool:
    """
    Every required approver identity must be covered, and the number of
    distinct valid approvers must reach min_approvals. With no required set,
    every recorded approval counts as valid.
    """
    covered = {a["approver_id"] for a in approvals}
    if any(r not in covered for r in required):
        return False
    if required:
        valid = {a["actor_id"] for a in approvals if a["approver_id"] in required}
    else:
        valid = {a["actor_id"] for a in approvals}
    return len(valid) >= min_approvals


class RequestPolicy:
    """Binds the pure rules to operator configuration."""

    def __init__(
        self,
        approval_required: bool = True,
        allowed_accounts: Iterable[str] = (),
        teams: Optional[dict[str, list[str]]] = None,
    ):
        self.approval_required = approval_required
        self.allowed_accounts = list(allowed_accounts)
        self.teams = teams or {}

    def prepare(self, draft: RequestDraft, max_duration: Optional[timedelta] = None) -> RequestDraft:
        prepared = apply_defaults(draft)
        validate(prepared, max_duration=max_duration, allowed_accounts=self.allowed_accounts)
        return prepared

    def should_auto_approve(self, permissions, environment: str, can_create_requests: bool) -> bool:
        return auto_approve_eligible(permissions, environment, can_create_requests, self.approval_required)

    def approval_slot(self, actor_id: str, required: list[str], approvals: list[dict]) -> Optional[str]:
        """The first still-uncovered required identity this actor can satisfy, if any."""
        covered = {a["approver_id"] for a in approvals}
        for r in required:
            if r not in covered and matches_required(actor_id, r, self.teams):
                return r
        return None
