"""
Slack slash-command webhook.

Every request is verified before the form is parsed:
  basestring = "v0:" + X-Slack-Request-Timestamp + ":" + raw body
  expected   = "v0=" + hex(HMAC-SHA256(signing_secret, basestring))
Requests older or newer than slack.requestTolerance, or with a signature
that does not match (constant-time compare), are rejected with 401.
"""

import hashlib
import hmac
import time
from typing import Optional
from urllib.parse import parse_qs

import structlog
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from jitaccess.services.access.plane import AccessPlane, get_plane
from jitaccess.services.access.slack_commands import SlackCommand
from jitaccess.services.shared.database import get_db
from jitaccess.services.shared.errors import Unauthenticated, ValidationFailed

logger = structlog.get_logger()

router = APIRouter()

SIGNATURE_VERSION = "v0"


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    base = f"{SIGNATURE_VERSION}:{timestamp}:".encode() + body
    digest = hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_signature(
    secret: str,
    timestamp: Optional[str],
    signature: Optional[str],
    body: bytes,
    tolerance: float = 300.0,
    now: Optional[float] = None,
) -> None:
    if not timestamp or not signature:
        raise Unauthenticated("missing slack signature headers")
    try:
        ts = int(timestamp)
    except ValueError:
        raise Unauthenticated("invalid slack request timestamp")
    now = time.time() if now is None else now
    if abs(now - ts) > tolerance:
        raise Unauthenticated("slack request timestamp outside the allowed window")
    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise Unauthenticated("invalid slack signature")


def parse_command(body: bytes) -> SlackCommand:
    form = {k: v[0] for k, v in parse_qs(body.decode("utf-8"), keep_blank_values=True).items()}
    if not form.get("user_id"):
        raise ValidationFailed("slack command is missing user_id")
    return SlackCommand(
        command=form.get("command", "/jit"),
        text=form.get("text", ""),
        user_id=form["user_id"],
        user_name=form.get("user_name", ""),
        channel_id=form.get("channel_id"),
    )


@router.post("/slack/commands")
async def slack_commands(
    request: Request,
    plane: AccessPlane = Depends(get_plane),
    db=Depends(get_db),
):
    body = await request.body()
    slack = plane.settings.slack
    try:
        verify_signature(
            slack.signing_secret,
            request.headers.get("X-Slack-Request-Timestamp"),
            request.headers.get("X-Slack-Signature"),
            body,
            tolerance=slack.request_tolerance.total_seconds(),
        )
    except Unauthenticated as exc:
        logger.warning("slack_signature_rejected", error=exc.message)
        raise
    cmd = parse_command(body)
    return await run_in_threadpool(plane.commands.handle, db, cmd)
