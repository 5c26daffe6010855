"""
CLI command for reporting current state without changing it.

Commands:
    shipwright status -f manifest.yaml
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from typing import Any

from shipwright.cli.common import add_common_arguments, open_provider, print_json, start_run
from shipwright.cli.ux import console, header, info, print_table
from shipwright.core.errors import ExitCode, ProviderError, main_with_error_handling
from shipwright.orchestration.engine import ConvergenceEngine
from shipwright.orchestration.plan_builder import build_plan
from shipwright.orchestration.results import ConvergenceResult
from shipwright.providers.base import ControlPlane
from shipwright.providers.lock import LockHolder, read_lock
from shipwright.specs.manifest import Manifest, load_manifest
from shipwright.specs.models import Revision

STATE_NAME = {"create": "missing", "update": "drifted", "noop": "in_sync"}

STATE_LABEL = {
    "create": "[red]missing[/red]",
    "update": "[yellow]drifted[/yellow]",
    "noop": "[green]in sync[/green]",
}


@dataclass
class StatusReport:
    resources: ConvergenceResult
    revisions: list[Revision] = field(default_factory=list)
    lock: LockHolder | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resources": [
                {**change.to_dict(), "state": STATE_NAME[change.action]}
                for change in self.resources.changes
            ],
            "revisions": [
                {
                    "name": rev.name,
                    "image": rev.image,
                    "traffic_weight": rev.traffic_weight,
                    "active": rev.active,
                    "created_at": rev.created_at.isoformat(),
                }
                for rev in self.revisions
            ],
            "lock": self.lock.encode() if self.lock else None,
        }


async def collect_status(provider: ControlPlane, manifest: Manifest) -> StatusReport:
    health = await provider.health_check()
    if health.status == "unreachable":
        raise ProviderError(f"Control plane is unreachable: {health.details}", {"provider": provider.name})

    plan = build_plan(manifest.resources)
    report = StatusReport(resources=await ConvergenceEngine(provider).converge(plan, dry_run=True))

    if manifest.app is not None:
        app_change = next(c for c in report.resources.changes if c.resource == manifest.app.name)
        if app_change.action != "create":
            report.revisions = sorted(
                await provider.list_revisions(manifest.app.name),
                key=lambda rev: rev.created_at,
                reverse=True,
            )
    report.lock = await read_lock(provider)
    return report


def print_status(report: StatusReport) -> None:
    print_table(
        "Resources",
        ["Resource", "Kind", "State"],
        [[c.resource, c.kind, STATE_LABEL[c.action]] for c in report.resources.changes],
    )
    if report.revisions:
        print_table(
            "Revisions",
            ["Revision", "Image", "Traffic", "Active", "Created"],
            [
                [
                    rev.name,
                    rev.image or "-",
                    f"{rev.traffic_weight}%",
                    "yes" if rev.active else "no",
                    rev.created_at.strftime("%Y-%m-%d %H:%M"),
                ]
                for rev in report.revisions
            ],
        )
    console.print()
    if report.lock:
        console.print(
            f"[warning]Locked by run {report.lock.run_id} since {report.lock.acquired_at.isoformat()}[/warning]"
        )
    else:
        info("No run holds the lock")


@main_with_error_handling()
def status_command(manifest_path: str, output_format: str = "text", log_level: str = "WARNING") -> int:
    start_run("status", log_level)
    manifest = load_manifest(manifest_path)
    provider = open_provider(manifest)

    report = asyncio.run(collect_status(provider, manifest))

    if output_format == "json":
        print_json(report.to_dict())
    else:
        header(f"Status: {manifest.resource_group}")
        print_status(report)
    return ExitCode.SUCCESS


def register_status_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("status", help="Show resource drift, revisions and lock holder")
    add_common_arguments(parser)


def handle_status_command(args: argparse.Namespace) -> int:
    return status_command(args.manifest, output_format=args.output, log_level=args.log_level)
