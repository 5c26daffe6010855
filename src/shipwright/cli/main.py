from __future__ import annotations

import argparse
import sys
from typing import Callable, Sequence

from shipwright import __version__
from shipwright.cli.deploy import handle_deploy_command, register_deploy_parser
from shipwright.cli.domain import handle_domain_command, register_domain_parser
from shipwright.cli.identity import handle_identity_command, register_identity_parser
from shipwright.cli.lock import handle_lock_command, register_lock_parser
from shipwright.cli.provision import (
    handle_plan_command,
    handle_provision_command,
    register_provision_parsers,
)
from shipwright.cli.rollback import handle_rollback_command, register_rollback_parser
from shipwright.cli.status import handle_status_command, register_status_parser
from shipwright.cli.up import handle_up_command, register_up_parser

HANDLERS: dict[str, Callable[[argparse.Namespace], int]] = {
    "plan": handle_plan_command,
    "provision": handle_provision_command,
    "grant-identity": handle_identity_command,
    "deploy": handle_deploy_command,
    "rollback": handle_rollback_command,
    "status": handle_status_command,
    "up": handle_up_command,
    "domain-check": handle_domain_command,
    "unlock": handle_lock_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipwright",
        description="Provision cloud infrastructure and deploy a containerized app to it",
    )
    parser.add_argument("--version", action="version", version=f"shipwright {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    register_provision_parsers(subparsers)
    register_identity_parser(subparsers)
    register_deploy_parser(subparsers)
    register_rollback_parser(subparsers)
    register_status_parser(subparsers)
    register_up_parser(subparsers)
    register_domain_parser(subparsers)
    register_lock_parser(subparsers)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = HANDLERS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(2)
    sys.exit(int(handler(args)))


if __name__ == "__main__":
    main()
