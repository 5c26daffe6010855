"""
CLI commands for previewing and converging declared infrastructure.

Commands:
    shipwright plan -f manifest.yaml        # Dry run, no mutations
    shipwright provision -f manifest.yaml   # Create or update drifted resources
"""

from __future__ import annotations

import argparse
import asyncio

from shipwright.cli.common import add_common_arguments, open_provider, print_json, run_lock, start_run
from shipwright.cli.ux import console, header, spinner
from shipwright.core.errors import ExitCode, main_with_error_handling
from shipwright.orchestration.engine import ConvergenceEngine
from shipwright.orchestration.plan_builder import build_plan
from shipwright.orchestration.results import ConvergenceResult
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import load_manifest
from shipwright.specs.models import Plan

ACTION_STYLE = {
    "create": ("green", "+"),
    "update": ("yellow", "~"),
    "noop": ("dim", "="),
}


def print_changes(result: ConvergenceResult) -> None:
    """Print one line per resource with the action taken or planned."""
    for change in result.changes:
        color, symbol = ACTION_STYLE[change.action]
        line = f"  [{color}]{symbol} {change.action:<6}[/{color}] {change.resource} [dim]({change.kind})[/dim]"
        if change.action == "update" and change.before and change.after:
            diffs = ", ".join(
                f"{name}: {change.before.get(name)} → {change.after.get(name)}" for name in change.after
            )
            line += f"  {diffs}"
        console.print(line)

    created, updated, unchanged = result.count("create"), result.count("update"), result.count("noop")
    console.print()
    if result.dry_run:
        console.print(f"[bold]{created} to create, {updated} to update, {unchanged} unchanged[/bold]")
    else:
        console.print(
            f"[bold]{created} created, {updated} updated, {unchanged} unchanged[/bold] "
            f"[dim]in {result.duration_seconds:.1f}s[/dim]"
        )


async def converge_with_lock(provider: ControlPlane, plan: Plan, run_id: str) -> ConvergenceResult:
    # The lock lives on the resource group, so it has to exist first
    await provider.ensure_scope()
    async with run_lock(provider, run_id):
        return await ConvergenceEngine(provider).converge(plan)


@main_with_error_handling()
def plan_command(manifest_path: str, output_format: str = "text", log_level: str = "WARNING") -> int:
    """Show what provision would change, without changing anything."""
    start_run("plan", log_level)
    manifest = load_manifest(manifest_path)
    plan = build_plan(manifest.resources)
    provider = open_provider(manifest)

    result = asyncio.run(ConvergenceEngine(provider).converge(plan, dry_run=True))

    if output_format == "json":
        print_json({"order": plan.names(), **result.to_dict()})
    else:
        header(f"Plan: {manifest.resource_group}")
        print_changes(result)
    return ExitCode.SUCCESS


@main_with_error_handling()
def provision_command(manifest_path: str, output_format: str = "text", log_level: str = "WARNING") -> int:
    """Converge every declared resource, in dependency order."""
    run_id = start_run("provision", log_level)
    manifest = load_manifest(manifest_path)
    plan = build_plan(manifest.resources)
    provider = open_provider(manifest)

    with spinner(f"Converging {len(plan)} resources..."):
        result = asyncio.run(converge_with_lock(provider, plan, run_id))

    if output_format == "json":
        print_json({"run_id": run_id, **result.to_dict()})
    else:
        header(f"Provision: {manifest.resource_group}")
        print_changes(result)
    return ExitCode.SUCCESS


def register_provision_parsers(subparsers: argparse._SubParsersAction) -> None:
    plan_parser = subparsers.add_parser("plan", help="Preview infrastructure changes (dry run)")
    add_common_arguments(plan_parser)

    provision_parser = subparsers.add_parser("provision", help="Create or update declared resources")
    add_common_arguments(provision_parser)


def handle_plan_command(args: argparse.Namespace) -> int:
    return plan_command(args.manifest, output_format=args.output, log_level=args.log_level)


def handle_provision_command(args: argparse.Namespace) -> int:
    return provision_command(args.manifest, output_format=args.output, log_level=args.log_level)
