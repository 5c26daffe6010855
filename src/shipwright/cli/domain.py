"""
CLI command for checking custom domain DNS before binding.

Commands:
    shipwright domain-check -f manifest.yaml crm.example.com
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict

from shipwright.cli.common import add_common_arguments, open_provider, print_json, start_run
from shipwright.cli.ux import console, header, print_table, success, warning
from shipwright.core.errors import ConfigurationError, ExitCode, main_with_error_handling
from shipwright.providers.base import HostnameAnalysis
from shipwright.specs.manifest import Manifest, load_manifest
from shipwright.specs.models import ResourceKind


def app_for_hostname(manifest: Manifest, hostname: str) -> str:
    """The compute app a hostname is (or would be) bound to."""
    binding = manifest.resources.get(hostname)
    if binding is not None and binding.kind == ResourceKind.DOMAIN_BINDING:
        app = binding.prop("app")
        if app:
            return app
    if manifest.app is not None:
        return manifest.app.name
    raise ConfigurationError(
        f"Cannot tell which app '{hostname}' belongs to; declare a domain-binding with an 'app' property",
        {"resource": hostname},
    )


def print_analysis(analysis: HostnameAnalysis) -> None:
    print_table(
        "Required DNS records",
        ["Type", "Name", "Value", "Currently"],
        [
            ["TXT", analysis.txt_record, analysis.txt_value or "-", ", ".join(analysis.observed_txt) or "-"],
            [
                "CNAME",
                analysis.hostname,
                analysis.cname_target or "-",
                ", ".join(analysis.observed_cname) or "-",
            ],
        ],
    )
    if analysis.failure:
        console.print(f"[muted]{analysis.failure}[/muted]")


@main_with_error_handling()
def domain_check_command(
    manifest_path: str,
    hostname: str,
    output_format: str = "text",
    log_level: str = "WARNING",
) -> int:
    """Report whether DNS for ``hostname`` is ready; exit 20 when it is not."""
    start_run("domain-check", log_level)
    manifest = load_manifest(manifest_path)
    app = app_for_hostname(manifest, hostname)
    provider = open_provider(manifest)

    analysis = asyncio.run(provider.analyze_hostname(app, hostname))
    exit_code = ExitCode.SUCCESS if analysis.verified else ExitCode.PROVISIONING_ERROR

    if output_format == "json":
        print_json({"app": app, **asdict(analysis)})
        return exit_code

    header(f"Domain: {hostname}")
    print_analysis(analysis)
    console.print()
    if analysis.verified:
        success(f"{hostname} is verified and can be bound to {app}")
    else:
        warning(f"{hostname} is not verified yet; create the records above and re-run")
    return exit_code


def register_domain_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("domain-check", help="Check DNS records for a custom domain")
    add_common_arguments(parser)
    parser.add_argument("hostname", help="Custom hostname, e.g. crm.example.com")


def handle_domain_command(args: argparse.Namespace) -> int:
    return domain_check_command(
        args.manifest,
        args.hostname,
        output_format=args.output,
        log_level=args.log_level,
    )
