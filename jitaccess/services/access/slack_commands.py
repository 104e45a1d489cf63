"""
/jit slash-command handler.

Parses the command text, calls the access service and renders an ephemeral
reply. Every failure is answered in-channel with a "❌ " prefix; the webhook
itself always returns 200 once the signature has been verified.

  /jit request <cluster> <reason…> [--duration 1h] [--permissions view,edit] [--namespaces a,b]
  /jit list
  /jit status <id>
  /jit approve <id> [comment]
  /jit deny <id> [reason]
  /jit revoke <id>
  /jit admin enable-cluster|disable-cluster <cluster>
  /jit admin grant-role <user> <role>
  /jit admin cleanup <cluster> [user]
  /jit help
"""

import re
import shlex
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.orm.exc import StaleDataError

from jitaccess.services.access.service import AccessService
from jitaccess.services.access.slack_client import SlackClient
from jitaccess.services.shared.auth import Permission, RoleTable
from jitaccess.services.shared.clusters import ClusterRegistry
from jitaccess.services.shared.errors import JitError, ValidationFailed
from jitaccess.services.shared.models import AccessRequest, RequestPhase

logger = structlog.get_logger()

PHASE_GLYPHS = {
    RequestPhase.pending:  "⏳",
    RequestPhase.approved: "✅",
    RequestPhase.denied:   "❌",
    RequestPhase.active:   "🟢",
    RequestPhase.expired:  "⏰",
    RequestPhase.revoked:  "🚫",
}

REQUEST_FLAGS = {
    "-d": "duration", "--duration": "duration",
    "-p": "permissions", "--permissions": "permissions",
    "-n": "namespaces", "--namespaces": "namespaces",
}

MENTION_RE = re.compile(r"^<@(?P<id>[A-Z0-9]+)(\|[^>]*)?>$")

HELP_TEXT = (
    "*JIT access commands*\n"
    "• `/jit request <cluster> <reason> [--duration 1h] [--permissions view,edit] [--namespaces a,b]`\n"
    "• `/jit list` - your access requests\n"
    "• `/jit status <id>` - details of one request\n"
    "• `/jit approve <id> [comment]` - approve a pending request\n"
    "• `/jit deny <id> [reason]` - deny a pending request\n"
    "• `/jit revoke <id>` - revoke active access\n"
    "• `/jit admin enable-cluster|disable-cluster <cluster>`\n"
    "• `/jit admin grant-role <user> <admin|approver|requester>`\n"
    "• `/jit admin cleanup <cluster> [user]`"
)


@dataclass
class SlackCommand:
    command: str
    text: str
    user_id: str
    user_name: str = ""
    channel_id: Optional[str] = None


def ephemeral(text: str) -> dict:
    return {"response_type": "ephemeral", "text": text}


def error_reply(message: str) -> dict:
    return ephemeral(f"❌ {message}")


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_request_args(args: list[str]) -> dict:
    """Split `<cluster> <reason…>` and the --duration/--permissions/--namespaces flags."""
    values: dict = {"duration": None, "permissions": [], "namespaces": []}
    positional: list[str] = []
    expanded: list[str] = []
    for token in args:
        flag, eq, value = token.partition("=")
        if eq and flag in REQUEST_FLAGS:
            expanded.extend([flag, value])
        else:
            expanded.append(token)
    args = expanded

    i = 0
    while i < len(args):
        token = args[i]
        key = REQUEST_FLAGS.get(token)
        if key is not None:
            if i + 1 >= len(args):
                raise ValidationFailed(f"{token} requires a value")
            value = args[i + 1]
            values[key] = value if key == "duration" else _csv(value)
            i += 2
            continue
        positional.append(token)
        i += 1

    if len(positional) < 2:
        raise ValidationFailed("Usage: /jit request <cluster> <reason> [--duration 1h] "
                               "[--permissions view] [--namespaces default]")
    values["cluster"] = positional[0]
    values["reason"] = " ".join(positional[1:])
    return values


def user_from_mention(token: str) -> str:
    match = MENTION_RE.match(token)
    return match.group("id") if match else token.lstrip("@")


def summarize(req: AccessRequest) -> str:
    glyph = PHASE_GLYPHS.get(req.phase, "•")
    return (f"{glyph} `{req.id}` - {req.cluster_name} ({req.duration}, "
            f"{', '.join(req.permissions or [])}) - {req.phase.value}")


class SlackCommandHandler:
    def __init__(
        self,
        service: AccessService,
        registry: ClusterRegistry,
        roles: RoleTable,
        slack: SlackClient,
    ):
        self.service = service
        self.registry = registry
        self.roles = roles
        self.slack = slack

    def handle(self, db, cmd: SlackCommand) -> dict:
        try:
            args = shlex.split(cmd.text or "")
        except ValueError as exc:
            return error_reply(f"Could not parse command: {exc}")
        if not args or args[0].lower() == "help":
            return ephemeral(HELP_TEXT)

        sub, rest = args[0].lower(), args[1:]
        handler = {
            "request": self._request,
            "list":    self._list,
            "status":  self._status,
            "approve": self._approve,
            "deny":    self._deny,
            "revoke":  self._revoke,
            "admin":   self._admin,
        }.get(sub)
        if handler is None:
            return error_reply(f"Unknown command `{sub}`. Try `/jit help`.")

        logger.info("slack_command", sub=sub, user_id=cmd.user_id, channel_id=cmd.channel_id)
        try:
            return handler(db, cmd, rest)
        except JitError as exc:
            db.rollback()
            logger.info("slack_command_rejected", sub=sub, user_id=cmd.user_id, reason=exc.reason)
            return error_reply(exc.message)
        except StaleDataError:
            db.rollback()
            return error_reply("The request was modified concurrently, please retry")

    # ── Sub-commands ──────────────────────────────────────────────────────────

    def _request(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        values = parse_request_args(args)
        email = self.slack.lookup_email(cmd.user_id, cmd.user_name)
        req = self.service.create_request(
            db,
            requester_id=cmd.user_id,
            requester_email=email,
            cluster_id=values["cluster"],
            reason=values["reason"],
            duration=values["duration"],
            permissions=values["permissions"],
            namespaces=values["namespaces"],
            channel_id=cmd.channel_id,
        )
        approvers = ", ".join(req.required_approvers or []) or "none"
        return ephemeral(
            f"⏳ JIT access request `{req.id}` submitted\n"
            f"*Cluster:* {req.cluster_name} ({req.environment})\n"
            f"*Duration:* {req.duration}\n"
            f"*Permissions:* {', '.join(req.permissions)}\n"
            f"*Namespaces:* {', '.join(req.namespaces) or 'all'}\n"
            f"*Approvers:* {approvers}"
        )

    def _list(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        requests = self.service.list_requests(db, caller=cmd.user_id, user_id=cmd.user_id)
        if not requests:
            return ephemeral("📋 No JIT access requests found")
        lines = ["📋 *Your JIT access requests*"] + [summarize(r) for r in requests]
        return ephemeral("\n".join(lines))

    def _status(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        if not args:
            raise ValidationFailed("Usage: /jit status <id>")
        req = self.service.status(db, args[0], cmd.user_id)
        lines = [
            summarize(req),
            f"*Reason:* {req.reason}",
            f"*Approvals:* {len(req.approvals or [])}",
        ]
        if req.access_entry:
            lines.append(f"*Expires at:* {req.access_entry.get('expires_at')}")
        if req.message:
            lines.append(f"*Status:* {req.message}")
        return ephemeral("\n".join(lines))

    def _approve(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        if not args:
            raise ValidationFailed("Usage: /jit approve <id> [comment]")
        comment = " ".join(args[1:]) or None
        req, changed = self.service.approve(db, args[0], cmd.user_id, comment)
        if not changed:
            return ephemeral(f"ℹ️ You already approved request `{req.id}`")
        return ephemeral(f"✅ Approved request `{req.id}` by <@{cmd.user_id}>")

    def _deny(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        if not args:
            raise ValidationFailed("Usage: /jit deny <id> [reason]")
        reason = " ".join(args[1:]) or None
        req, _ = self.service.deny(db, args[0], cmd.user_id, reason)
        return ephemeral(f"❌ Denied request `{req.id}` by <@{cmd.user_id}>")

    def _revoke(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        if not args:
            raise ValidationFailed("Usage: /jit revoke <id>")
        req, changed = self.service.revoke(db, args[0], cmd.user_id)
        if not changed:
            return ephemeral(f"🚫 Access for `{req.id}` is already {req.phase.value.lower()}")
        return ephemeral(f"🚫 Revoked access for request `{req.id}`")

    def _admin(self, db, cmd: SlackCommand, args: list[str]) -> dict:
        if not args:
            raise ValidationFailed("Usage: /jit admin <enable-cluster|disable-cluster|grant-role|cleanup> ...")
        sub, rest = args[0].lower(), args[1:]

        if sub in ("enable-cluster", "disable-cluster"):
            self.roles.check(cmd.user_id, Permission.manage_clusters)
            if not rest:
                raise ValidationFailed(f"Usage: /jit admin {sub} <cluster>")
            enabled = sub == "enable-cluster"
            cluster = self.registry.set_enabled(rest[0], enabled)
            logger.info("cluster_toggled", cluster=cluster.name, enabled=enabled, actor=cmd.user_id)
            return ephemeral(f"✅ Cluster `{cluster.name}` {'enabled' if enabled else 'disabled'}")

        if sub == "grant-role":
            self.roles.check(cmd.user_id, Permission.manage_users)
            if len(rest) < 2:
                raise ValidationFailed("Usage: /jit admin grant-role <user> <admin|approver|requester>")
            user = user_from_mention(rest[0])
            role = self.roles.assign(user, rest[1])
            return ephemeral(f"✅ <@{user}> is now {role.value}")

        if sub == "cleanup":
            if not rest:
                raise ValidationFailed("Usage: /jit admin cleanup <cluster> [user]")
            user = user_from_mention(rest[1]) if len(rest) > 1 else None
            out = self.service.cleanup(db, rest[0], cmd.user_id, user_id=user)
            text = f"🧹 {out.message}: removed {out.cleaned_count}, expired {out.expired_count}"
            if out.errors:
                text += f"\n⚠️ {len(out.errors)} errors: " + "; ".join(out.errors[:3])
            return ephemeral(text)

        raise ValidationFailed(f"Unknown admin command `{sub}`")
