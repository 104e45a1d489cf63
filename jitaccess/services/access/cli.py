"""
jitaccess command line.

  jitaccess serve [--config FILE] [--port N] [--slack-token T] ...
  jitaccess version

Flags override the environment and the YAML file. An invalid configuration
or a missing Slack secret exits with status 1 before anything is started.
"""

import argparse
import os
import sys
from typing import Any, Optional

import structlog
import uvicorn

from jitaccess.services.shared.errors import FatalConfigError

logger = structlog.get_logger()

VERSION = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jitaccess", description="Just-in-time EKS access service.")
    parser.add_argument("--config", default=None, help="YAML config file (overrides JIT_CONFIG).")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Log level (overrides settings/env).",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API, Slack webhook and reconcilers.")
    serve.add_argument("--host", default=None, help="Bind address.")
    serve.add_argument("--port", type=int, default=None, help="Server port.")
    serve.add_argument("--slack-token", default=None, help="Slack bot token.")
    serve.add_argument("--slack-signing-secret", default=None, help="Slack signing secret.")
    serve.add_argument("--aws-region", default=None, help="Default AWS region.")
    serve.add_argument("--aws-account-ids", default=None, help="Comma separated allowed account IDs.")
    serve.add_argument("--saml-provider-arn", default=None, help="SAML provider ARN.")
    serve.add_argument("--eks-cluster-prefix", default=None, help="Only sweep clusters with this prefix.")
    serve.add_argument("--max-access-duration", default=None, help="Maximum credential lifetime, e.g. 1h.")
    serve.add_argument(
        "--approval-required",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Require approval for access requests.",
    )

    sub.add_parser("version", help="Print the version and exit.")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Nested settings overrides for the flags that were given."""
    flags = {
        ("server", "host"):               getattr(args, "host", None),
        ("server", "port"):               getattr(args, "port", None),
        ("slack", "token"):               getattr(args, "slack_token", None),
        ("slack", "signing_secret"):      getattr(args, "slack_signing_secret", None),
        ("aws", "region"):                getattr(args, "aws_region", None),
        ("aws", "saml_provider_arn"):     getattr(args, "saml_provider_arn", None),
        ("aws", "eks_cluster_prefix"):    getattr(args, "eks_cluster_prefix", None),
        ("access", "max_duration"):       getattr(args, "max_access_duration", None),
        ("access", "approval_required"):  getattr(args, "approval_required", None),
        ("log", "level"):                 args.log_level,
    }
    account_ids = getattr(args, "aws_account_ids", None)
    if account_ids:
        flags[("aws", "account_ids")] = [a.strip() for a in account_ids.split(",") if a.strip()]

    overrides: dict[str, Any] = {}
    for (section, key), value in flags.items():
        if value is not None:
            overrides.setdefault(section, {})[key] = value
    return overrides


def serve(args: argparse.Namespace) -> int:
    from jitaccess.services.access.main import create_app
    from jitaccess.services.shared.config import load_settings

    if args.config:
        os.environ["JIT_CONFIG"] = args.config
    try:
        settings = load_settings(**overrides_from_args(args))
        app = create_app(settings)
    except FatalConfigError as exc:
        print(f"jitaccess: {exc}", file=sys.stderr)
        return 1

    server = settings.server
    logger.info("jit_access_serving", host=server.host, port=server.port)
    uvicorn.run(
        app,
        host=server.host,
        port=server.port,
        timeout_keep_alive=int(server.idle_timeout.total_seconds()),
        log_level=settings.log.level,
        log_config=None,
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "version":
        print(f"jitaccess {VERSION}")
        return 0
    if args.command == "serve":
        return serve(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
