"""
CLI command for binding the compute identity to the resources it uses.

Commands:
    shipwright grant-identity -f manifest.yaml
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict

from shipwright.cli.common import (
    add_common_arguments,
    identity_binder,
    open_provider,
    print_json,
    run_lock,
    start_run,
)
from shipwright.cli.ux import console, header, success
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.orchestration.identity import BindingResult
from shipwright.orchestration.pipeline import bind_manifest_grants
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import Manifest, load_manifest


async def _grant(provider: ControlPlane, manifest: Manifest, run_id: str) -> BindingResult:
    async with run_lock(provider, run_id):
        return await bind_manifest_grants(provider, manifest, identity_binder(provider))


def print_binding(result: BindingResult) -> None:
    for grant in result.granted:
        console.print(f"  [green]+ granted[/green]  {grant.role} on {grant.scope}")
    for grant in result.already_held:
        console.print(f"  [dim]= held[/dim]     {grant.role} on {grant.scope}")


@main_with_error_handling()
def grant_identity_command(
    manifest_path: str,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    """Grant every role listed under ``grants`` to the app's managed identity."""
    run_id = start_run("grant-identity", log_level)
    manifest = load_manifest(manifest_path)
    app = manifest.require_app()
    provider = open_provider(manifest)

    result = asyncio.run(_grant(provider, manifest, run_id))

    if output_format == "json":
        print_json(
            {
                "run_id": run_id,
                "app": app.name,
                "granted": [asdict(g) for g in result.granted],
                "already_held": [asdict(g) for g in result.already_held],
            }
        )
        return ExitCode.SUCCESS

    header(f"Identity: {app.name}")
    print_binding(result)
    console.print()
    success(f"{result.total} role assignment(s) in place, {len(result.granted)} new")
    return ExitCode.SUCCESS


def register_identity_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "grant-identity",
        help="Grant the app's managed identity its declared roles",
    )
    add_common_arguments(parser)


def handle_identity_command(args: argparse.Namespace) -> int:
    return grant_identity_command(args.manifest, output_format=args.output, log_level=args.log_level)
