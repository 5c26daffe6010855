"""Desired-state models and the manifest loader."""

from shipwright.specs.manifest import Manifest, load_manifest, parse_manifest
from shipwright.specs.models import (
    AppContract,
    DeploymentResult,
    GrantRequest,
    HealthStatus,
    IdentityGrant,
    ObservedResource,
    Plan,
    ResourceKind,
    ResourceSpec,
    Revision,
)

__all__ = [
    "AppContract",
    "DeploymentResult",
    "GrantRequest",
    "HealthStatus",
    "IdentityGrant",
    "Manifest",
    "ObservedResource",
    "Plan",
    "ResourceKind",
    "ResourceSpec",
    "Revision",
    "load_manifest",
    "parse_manifest",
]
