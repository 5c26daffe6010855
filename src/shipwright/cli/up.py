"""
CLI command running the whole sequence: provision, grant, deploy, verify.

Commands:
    shipwright up -f manifest.yaml --image twentycrm:v2 --env SERVER_URL=https://crm.example.com

Grants are re-verified on every run; re-checking a held role costs one
read per grant.
"""

from __future__ import annotations

import argparse
import asyncio

from shipwright.cli.common import (
    add_common_arguments,
    app_secrets,
    deployment_driver,
    identity_binder,
    open_provider,
    print_json,
    run_lock,
    start_run,
)
from shipwright.cli.deploy import add_deploy_arguments, print_deployment
from shipwright.cli.identity import print_binding
from shipwright.cli.provision import print_changes
from shipwright.cli.ux import header, spinner, success
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.orchestration.deployment import parse_assignments, resolve_environment
from shipwright.orchestration.pipeline import DeploymentPipeline, PipelineOutcome
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import Manifest, load_manifest


async def run_pipeline(
    provider: ControlPlane,
    manifest: Manifest,
    run_id: str,
    image: str,
    env: dict[str, str],
    secrets: dict[str, str],
    source_image: str | None = None,
) -> PipelineOutcome:
    await provider.ensure_scope()
    async with run_lock(provider, run_id):
        pipeline = DeploymentPipeline(
            provider,
            binder=identity_binder(provider),
            driver=deployment_driver(provider),
        )
        return await pipeline.run(manifest, image, env, secrets, source_image=source_image)


@main_with_error_handling()
def up_command(
    manifest_path: str,
    image: str,
    env_pairs: list[str] | None = None,
    source_image: str | None = None,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    run_id = start_run("up", log_level)
    manifest = load_manifest(manifest_path)
    app = manifest.require_app()
    env = resolve_environment(app, parse_assignments(env_pairs))
    secrets = app_secrets(app)
    provider = open_provider(manifest)

    with spinner(f"Provisioning and deploying {image}..."):
        outcome = asyncio.run(
            run_pipeline(provider, manifest, run_id, image, env, secrets, source_image=source_image)
        )

    if output_format == "json":
        print_json({"run_id": run_id, **outcome.to_dict()})
        return ExitCode.SUCCESS

    if outcome.convergence is not None:
        header(f"Provision: {manifest.resource_group}")
        print_changes(outcome.convergence)
    if outcome.binding is not None:
        header(f"Identity: {app.name}")
        print_binding(outcome.binding)
    if outcome.deployment is not None:
        header(f"Deploy: {app.name}")
        print_deployment(outcome.deployment)
        success(f"{app.name} is {outcome.state.value} on revision {outcome.deployment.revision}")
    return ExitCode.SUCCESS


def register_up_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "up",
        help="Provision, grant identity, deploy and verify in one run",
    )
    add_common_arguments(parser)
    add_deploy_arguments(parser)


def handle_up_command(args: argparse.Namespace) -> int:
    return up_command(
        args.manifest,
        args.image,
        env_pairs=args.env_pairs,
        source_image=args.source_image,
        output_format=args.output,
        log_level=args.log_level,
    )
