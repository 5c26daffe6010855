"""
CLI command for shipping a new image to the compute app.

Commands:
    shipwright deploy -f manifest.yaml --image twentycrm:v2 --env SERVER_URL=https://crm.example.com

The new revision only keeps traffic if its health endpoint answers 2xx
within the configured window; otherwise traffic goes back to the
previous revision and the exit code is 23.
"""

from __future__ import annotations

import argparse
import asyncio

from shipwright.cli.common import (
    add_common_arguments,
    app_secrets,
    deployment_driver,
    open_provider,
    print_json,
    run_lock,
    start_run,
)
from shipwright.cli.ux import header, print_key_value, spinner, success
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.orchestration.deployment import parse_assignments, resolve_environment
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import load_manifest
from shipwright.specs.models import AppContract, DeploymentResult


async def deploy_locked(
    provider: ControlPlane,
    app: AppContract,
    run_id: str,
    image: str,
    env: dict[str, str],
    secrets: dict[str, str],
    source_image: str | None,
) -> DeploymentResult:
    async with run_lock(provider, run_id):
        return await deployment_driver(provider).deploy(
            app, image, env, secrets, source_image=source_image
        )


def print_deployment(result: DeploymentResult) -> None:
    print_key_value(
        {
            "Revision": result.revision,
            "Image": result.image or "-",
            "Status": result.status.value,
            "Previous": result.previous_revision or "-",
        }
    )


@main_with_error_handling()
def deploy_command(
    manifest_path: str,
    image: str,
    env_pairs: list[str] | None = None,
    source_image: str | None = None,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    """Deploy ``image`` as a new revision and verify it before keeping it."""
    run_id = start_run("deploy", log_level)
    manifest = load_manifest(manifest_path)
    app = manifest.require_app()
    # Everything the app needs is checked before anything changes
    env = resolve_environment(app, parse_assignments(env_pairs))
    secrets = app_secrets(app)
    provider = open_provider(manifest)

    with spinner(f"Deploying {image}..."):
        result = asyncio.run(deploy_locked(provider, app, run_id, image, env, secrets, source_image))

    if output_format == "json":
        print_json({"run_id": run_id, **result.to_dict()})
        return ExitCode.SUCCESS

    header(f"Deploy: {app.name}")
    print_deployment(result)
    success(f"Revision {result.revision} is healthy and serving 100% of traffic")
    return ExitCode.SUCCESS


def add_deploy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--image", required=True, help="Image reference, e.g. twentycrm:v2")
    parser.add_argument(
        "--env",
        dest="env_pairs",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment assignment for the app (repeatable)",
    )
    parser.add_argument(
        "--source-image",
        help="Import this image into the app registry before deploying",
    )


def register_deploy_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("deploy", help="Deploy an image and verify its health")
    add_common_arguments(parser)
    add_deploy_arguments(parser)


def handle_deploy_command(args: argparse.Namespace) -> int:
    return deploy_command(
        args.manifest,
        args.image,
        env_pairs=args.env_pairs,
        source_image=args.source_image,
        output_format=args.output,
        log_level=args.log_level,
    )
