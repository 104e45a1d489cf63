"""
Cloud session minter.

Exchanges the durable JIT role for short-lived credentials via STS
AssumeRole, attaching a least-privilege inline session policy and the
tracking tags {Purpose, UserID, ClusterID, RequestID}.

Session names are deterministic, jit-<requester>-<cluster>-<yyyymmdd-hhmmss>,
derived from the Job start time so retries reuse the same principal.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from botocore.exceptions import ClientError

from jitaccess.connectors.aws.clients import NETWORK_ERRORS, TRANSIENT_CODES, error_code, error_message
from jitaccess.services.shared.errors import AuthDenied, InvalidPolicy, TransientCloudError

logger = structlog.get_logger()

PROVIDER_MAX_TTL = timedelta(hours=8)
PROVIDER_MIN_TTL = timedelta(minutes=15)
SESSION_NAME_MAX_LENGTH = 64
SESSION_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_AUTH_DENIED_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "RegionDisabledException",
})

_INVALID_POLICY_CODES = frozenset({
    "MalformedPolicyDocument",
    "MalformedPolicyDocumentException",
    "PackedPolicyTooLarge",
    "PackedPolicyTooLargeException",
    "ValidationError",
})


@dataclass(frozen=True)
class SessionCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expires_at: datetime

    def as_secret_data(self) -> dict[str, str]:
        return {
            "aws-access-key-id":     self.access_key_id,
            "aws-secret-access-key": self.secret_access_key,
            "aws-session-token":     self.session_token,
            "expires-at":            self.expires_at.isoformat(),
        }


def session_name(requester_id: str, cluster_name: str, start_time: datetime) -> str:
    """jit-<requester>-<cluster>-<ts>; the cluster part is cut to fit STS's 64-char limit."""
    stamp = start_time.astimezone(timezone.utc).strftime(SESSION_TIMESTAMP_FORMAT)
    fixed = len("jit-") + len(requester_id) + 1 + 1 + len(stamp)
    cluster = cluster_name[: max(1, SESSION_NAME_MAX_LENGTH - fixed)].rstrip("-")
    return f"jit-{requester_id}-{cluster}-{stamp}"[:SESSION_NAME_MAX_LENGTH]


def cluster_arn(cluster_name: str, region: str = "*", account: str = "*") -> str:
    return f"arn:aws:eks:{region}:{account}:cluster/{cluster_name}"


def inline_policy(cluster_name: str, region: str = "*", account: str = "*") -> str:
    """Describe + Kubernetes API access on exactly one cluster."""
    document = {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["eks:DescribeCluster", "eks:AccessKubernetesApi"],
                "Resource": cluster_arn(cluster_name, region, account),
            }
        ],
    }
    return json.dumps(document, separators=(",", ":"))


def role_name_from_arn(role_arn: str) -> str:
    # arn:aws:iam::123456789012:role/path/JITAccessRole → JITAccessRole
    return role_arn.rsplit("/", 1)[-1]


def principal_arn(account: str, role_arn: str, session: str) -> str:
    return f"arn:aws:sts::{account}:assumed-role/{role_name_from_arn(role_arn)}/{session}"


def clamp_ttl(ttl: timedelta, operator_max: timedelta = None) -> timedelta:
    bounds = [ttl, PROVIDER_MAX_TTL]
    if operator_max is not None:
        bounds.append(operator_max)
    return min(bounds)


class StsMinter:
    def __init__(self, client, operator_max_ttl: timedelta = None):
        self.client = client
        self.operator_max_ttl = operator_max_ttl

    def mint(
        self,
        role_arn: str,
        session: str,
        ttl: timedelta,
        policy: str,
        tags: dict[str, str],
    ) -> SessionCredentials:
        effective = clamp_ttl(ttl, self.operator_max_ttl)
        if effective < PROVIDER_MIN_TTL:
            raise InvalidPolicy(
                f"session ttl {int(effective.total_seconds())}s is below the 900s provider minimum",
                reason="TTLTooShort",
            )
        try:
            resp = self.client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session,
                DurationSeconds=int(effective.total_seconds()),
                Policy=policy,
                Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
            )
        except ClientError as exc:
            code = error_code(exc)
            logger.warning("sts_assume_role_failed", role_arn=role_arn, session=session, code=code)
            if code in _AUTH_DENIED_CODES:
                raise AuthDenied(f"assume role {role_arn} denied: {error_message(exc)}") from exc
            if code in _INVALID_POLICY_CODES:
                raise InvalidPolicy(f"session policy rejected: {error_message(exc)}") from exc
            if code in TRANSIENT_CODES:
                raise TransientCloudError(f"STS unavailable: {code}") from exc
            raise TransientCloudError(f"assume role failed: {code or exc}") from exc
        except NETWORK_ERRORS as exc:
            raise TransientCloudError(f"STS unreachable: {exc}") from exc

        creds = resp["Credentials"]
        expires_at = creds["Expiration"]
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        logger.info(
            "sts_session_minted",
            session=session,
            ttl_seconds=int(effective.total_seconds()),
            expires_at=expires_at.isoformat(),
        )
        return SessionCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expires_at=expires_at,
        )
