"""
CLI command for moving traffic back to an earlier revision.

Commands:
    shipwright rollback -f manifest.yaml                          # Most recent prior revision
    shipwright rollback -f manifest.yaml --revision app--v1-0101  # A named revision
    shipwright rollback -f manifest.yaml --image twentycrm:v1     # Redeploy an older image
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict

from shipwright.cli.common import (
    add_common_arguments,
    app_secrets,
    open_provider,
    print_json,
    run_lock,
    start_run,
)
from shipwright.cli.deploy import deploy_locked, print_deployment
from shipwright.cli.ux import header, info, success
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.orchestration.deployment import parse_assignments, resolve_environment
from shipwright.orchestration.rollback import RollbackController, RollbackResult
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import load_manifest


async def _rollback(provider: ControlPlane, app: str, run_id: str, revision: str | None) -> RollbackResult:
    async with run_lock(provider, run_id):
        return await RollbackController(provider).rollback(app, revision)


@main_with_error_handling()
def rollback_command(
    manifest_path: str,
    revision: str | None = None,
    image: str | None = None,
    env_pairs: list[str] | None = None,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    run_id = start_run("rollback", log_level)
    manifest = load_manifest(manifest_path)
    app = manifest.require_app()

    if image:
        # An older image goes through the normal deploy path, health check included
        env = resolve_environment(app, parse_assignments(env_pairs))
        secrets = app_secrets(app)
        provider = open_provider(manifest)

        deployment = asyncio.run(deploy_locked(provider, app, run_id, image, env, secrets, None))
        if output_format == "json":
            print_json({"run_id": run_id, **deployment.to_dict()})
        else:
            header(f"Rollback: {app.name}")
            print_deployment(deployment)
            success(f"Redeployed {deployment.image} as {deployment.revision}")
        return ExitCode.SUCCESS

    provider = open_provider(manifest)
    result = asyncio.run(_rollback(provider, app.name, run_id, revision))

    if output_format == "json":
        print_json({"run_id": run_id, **asdict(result)})
    elif result.changed:
        header(f"Rollback: {app.name}")
        success(f"Traffic moved from {result.previous or '-'} to {result.target}")
        if result.reactivated:
            info(f"Revision {result.target} was reactivated")
    else:
        info(f"Revision {result.target} already serves all traffic; nothing to do")
    return ExitCode.SUCCESS


def register_rollback_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("rollback", help="Move traffic back to an earlier revision")
    add_common_arguments(parser)
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--revision", help="Revision name to restore")
    target.add_argument("--image", help="Redeploy this image reference instead")
    parser.add_argument(
        "--env",
        dest="env_pairs",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment assignment when redeploying with --image (repeatable)",
    )


def handle_rollback_command(args: argparse.Namespace) -> int:
    return rollback_command(
        args.manifest,
        revision=args.revision,
        image=args.image,
        env_pairs=args.env_pairs,
        output_format=args.output,
        log_level=args.log_level,
    )
