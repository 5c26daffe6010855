"""
CLI command for clearing a lock left behind by a crashed run.

Commands:
    shipwright unlock -f manifest.yaml          # Asks before removing
    shipwright unlock -f manifest.yaml --yes
"""

from __future__ import annotations

import argparse
import asyncio

from shipwright.cli.common import add_common_arguments, open_provider, print_json, start_run
from shipwright.cli.ux import confirm, info, success, warning
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.providers.lock import force_unlock, read_lock
from shipwright.specs.manifest import load_manifest


@main_with_error_handling()
def unlock_command(
    manifest_path: str,
    yes: bool = False,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    start_run("unlock", log_level)
    manifest = load_manifest(manifest_path)
    provider = open_provider(manifest)

    holder = asyncio.run(read_lock(provider))
    if holder is None:
        if output_format == "json":
            print_json({"released": None})
        else:
            info(f"No lock is held on {manifest.resource_group}")
        return ExitCode.SUCCESS

    if not yes:
        warning(f"Run {holder.run_id} has held the lock since {holder.acquired_at.isoformat()}")
        if not confirm("Remove the lock? Only do this if that run is no longer active.", default=False):
            info("Lock left in place")
            return ExitCode.SUCCESS

    released = asyncio.run(force_unlock(provider))
    if output_format == "json":
        print_json({"released": released.encode() if released else None})
    else:
        success(f"Lock released on {manifest.resource_group}")
    return ExitCode.SUCCESS


def register_lock_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("unlock", help="Force-release the advisory run lock")
    add_common_arguments(parser)
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")


def handle_lock_command(args: argparse.Namespace) -> int:
    return unlock_command(
        args.manifest,
        yes=args.yes,
        output_format=args.output,
        log_level=args.log_level,
    )
