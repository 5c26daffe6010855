"""
Shared plumbing for CLI commands: arguments, run context, provider wiring.
"""

from __future__ import annotations

import argparse
import json
import uuid
from typing import Any

from shipwright.config import Settings, get_settings
from shipwright.logging import bind_context, clear_context, configure_logging
from shipwright.orchestration.deployment import DeploymentDriver
from shipwright.orchestration.identity import IdentityBinder
from shipwright.providers import create_provider
from shipwright.providers.base import ControlPlane
from shipwright.providers.lock import RunLock
from shipwright.specs.manifest import Manifest
from shipwright.specs.models import AppContract

DEFAULT_PROVIDER = "azure"


def add_common_arguments(parser: argparse.ArgumentParser, *, output: bool = True) -> None:
    """Arguments every command accepts."""
    parser.add_argument(
        "-f",
        "--file",
        dest="manifest",
        default="shipwright.yaml",
        help="Path to deployment manifest (default: shipwright.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Structured log level written to stderr (default: WARNING)",
    )
    if output:
        parser.add_argument(
            "--output",
            choices=["text", "json"],
            default="text",
            help="Output format (default: text)",
        )


def start_run(command: str, log_level: str = "WARNING") -> str:
    """Configure logging and bind a fresh run id to every log event."""
    configure_logging(log_level)
    clear_context()
    run_id = uuid.uuid4().hex[:12]
    bind_context(run_id=run_id, command=command)
    return run_id


def open_provider(manifest: Manifest, settings: Settings | None = None) -> ControlPlane:
    settings = settings or get_settings()
    return create_provider(
        DEFAULT_PROVIDER,
        settings=settings,
        resource_group=manifest.resource_group,
        location=manifest.location,
        subscription_id=manifest.subscription,
    )


def run_lock(provider: ControlPlane, run_id: str, settings: Settings | None = None) -> RunLock:
    settings = settings or get_settings()
    return RunLock(provider, run_id, ttl_seconds=settings.lock_ttl_seconds)


def identity_binder(provider: ControlPlane, settings: Settings | None = None) -> IdentityBinder:
    settings = settings or get_settings()
    return IdentityBinder(
        provider,
        max_attempts=settings.grant_max_attempts,
        backoff_seconds=settings.grant_backoff_seconds,
    )


def deployment_driver(provider: ControlPlane, settings: Settings | None = None) -> DeploymentDriver:
    settings = settings or get_settings()
    return DeploymentDriver(
        provider,
        health_timeout=settings.health_timeout_seconds,
        health_interval=settings.health_interval_seconds,
        request_timeout=settings.health_request_timeout,
        log_tail_lines=settings.log_tail_lines,
    )


def app_secrets(app: AppContract, settings: Settings | None = None) -> dict[str, str]:
    """The application secret keyed by the env name the app reads it from."""
    if not app.secret_env:
        return {}
    settings = settings or get_settings()
    return {app.secret_env: settings.require_app_secret()}


def print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))
