"""
CLI commands for shipwright.
"""

from shipwright.cli.deploy import deploy_command
from shipwright.cli.domain import domain_check_command
from shipwright.cli.identity import grant_identity_command
from shipwright.cli.lock import unlock_command
from shipwright.cli.provision import plan_command, provision_command
from shipwright.cli.rollback import rollback_command
from shipwright.cli.status import status_command
from shipwright.cli.up import up_command

__all__ = [
    "plan_command",
    "provision_command",
    "grant_identity_command",
    "deploy_command",
    "rollback_command",
    "status_command",
    "up_command",
    "domain_check_command",
    "unlock_command",
]
