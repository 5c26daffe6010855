"""
Unified error handling for shipwright CLI commands.

Every failure category maps to its own exit code so calling automation
can branch on the outcome without parsing console output.

Exit Codes:
- 0: Success
- 10: Configuration error (manifest, settings, missing env assignments)
- 11: Provider error (control-plane call failed after retries)
- 12: Validation error (cyclic or unknown dependency in the plan)
- 20: Provisioning failure
- 21: Identity binding failure
- 22: Deployment failure
- 23: Health check failure
- 24: Rollback failure
- 25: Another run holds the advisory lock
- 127: Unknown/internal error
- 130: Interrupted
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import structlog

if TYPE_CHECKING:
    from shipwright.specs.models import DeploymentResult

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    PROVISIONING_ERROR = 20
    IDENTITY_ERROR = 21
    DEPLOYMENT_ERROR = 22
    HEALTH_ERROR = 23
    ROLLBACK_ERROR = 24
    CONCURRENT_RUN = 25
    UNKNOWN_ERROR = 127
    INTERRUPTED = 130


class ShipwrightError(Exception):
    """Base exception for shipwright errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(ShipwrightError):
    """Raised for manifest, settings or argument problems."""

    exit_code = ExitCode.CONFIG_ERROR


class ProviderError(ShipwrightError):
    """Raised when the control plane keeps failing after retries."""

    exit_code = ExitCode.PROVIDER_ERROR


class RejectedRequestError(ProviderError):
    """Raised when the control plane refuses a request outright (4xx)."""

    def __init__(self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, {**(details or {}), "status_code": status_code})
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class PlanError(ShipwrightError):
    """Raised when a plan cannot be built from the declared resources."""

    exit_code = ExitCode.VALIDATION_ERROR


class CyclicDependencyError(PlanError):
    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            {"cycle": cycle},
        )
        self.cycle = cycle


class UnknownDependencyError(PlanError):
    def __init__(self, resource: str, dependency: str):
        super().__init__(
            f"Resource '{resource}' depends on undeclared resource '{dependency}'",
            {"resource": resource, "dependency": dependency},
        )
        self.resource = resource
        self.dependency = dependency


class ProvisioningError(ShipwrightError):
    """Raised when creating or updating a resource fails."""

    exit_code = ExitCode.PROVISIONING_ERROR

    def __init__(self, resource: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, {"resource": resource, **(details or {})})
        self.resource = resource


class IdentityError(ShipwrightError):
    exit_code = ExitCode.IDENTITY_ERROR


class GrantTimeoutError(IdentityError):
    """Raised when a role assignment is never confirmed by the provider."""

    def __init__(self, principal_id: str, scope: str, role: str, attempts: int):
        super().__init__(
            f"Role '{role}' for principal {principal_id} not confirmed after {attempts} attempts",
            {"principal_id": principal_id, "resource": scope, "role": role},
        )
        self.principal_id = principal_id
        self.scope = scope
        self.role = role


class DeploymentError(ShipwrightError):
    exit_code = ExitCode.DEPLOYMENT_ERROR


class DeploymentHealthError(DeploymentError):
    """Raised when a new revision never reports healthy within the window."""

    exit_code = ExitCode.HEALTH_ERROR

    def __init__(self, result: DeploymentResult, message: str | None = None):
        super().__init__(
            message or f"Revision '{result.revision}' failed its health check",
            {"revision": result.revision},
        )
        self.result = result

    @property
    def log_excerpt(self) -> list[str]:
        return self.result.log_excerpt


class RollbackError(ShipwrightError):
    exit_code = ExitCode.ROLLBACK_ERROR


class NoPriorRevisionError(RollbackError):
    def __init__(self, app: str, revision: str | None = None):
        if revision:
            message = f"Revision '{revision}' not found for app '{app}'"
        else:
            message = f"App '{app}' has no prior revision to roll back to"
        details: dict[str, Any] = {"app": app}
        if revision:
            details["revision"] = revision
        super().__init__(message, details)
        self.app = app


class ConcurrentRunError(ShipwrightError):
    """Raised when another invocation holds the advisory lock."""

    exit_code = ExitCode.CONCURRENT_RUN

    def __init__(self, holder: str, scope: str):
        super().__init__(
            f"Another run holds the lock on {scope}: {holder}",
            {"holder": holder, "scope": scope},
        )
        self.holder = holder


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Exit codes:
        - ShipwrightError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except ShipwrightError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=e.kind,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                report_error(e)
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: ShipwrightError) -> str:
    """Format an error message for display to users."""
    msg = f"{error.kind}: {error.message}"
    shown = {k: v for k, v in error.details.items() if k in ("resource", "revision", "app")}
    if shown:
        detail_str = ", ".join(f"{k}={v}" for k, v in shown.items())
        msg = f"{msg} ({detail_str})"
    return msg


def report_error(error: ShipwrightError) -> None:
    """Print the error kind, the resource involved and any log tail."""
    from shipwright.cli.ux import console
    from shipwright.cli.ux import error as print_error

    print_error(format_error_message(error))
    if isinstance(error, DeploymentHealthError) and error.log_excerpt:
        console.print("[muted]Recent application log lines:[/muted]")
        for line in error.log_excerpt:
            console.print(f"  │ {line}", markup=False, highlight=False)
