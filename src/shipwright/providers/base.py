from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

from shipwright.specs.models import (
    AppContract,
    IdentityGrant,
    ObservedResource,
    ResourceSpec,
    Revision,
)


@dataclass(frozen=True)
class ProviderHealth:
    status: Literal["healthy", "degraded", "unreachable"]
    details: str | None = None


@dataclass(frozen=True)
class HostnameAnalysis:
    """DNS verification state of a custom hostname for an app."""

    hostname: str
    verified: bool
    txt_record: str
    txt_value: str | None
    cname_target: str | None
    failure: str | None = None
    observed_txt: list[str] = field(default_factory=list)
    observed_cname: list[str] = field(default_factory=list)


class ControlPlane(Protocol):
    """Everything shipwright needs from a cloud control plane.

    The provider is the single source of truth: implementations never cache
    observed state across calls.
    """

    name: str

    async def health_check(self) -> ProviderHealth:
        ...

    # Scope and advisory lock
    @property
    def lock_scope(self) -> str:
        ...

    async def ensure_scope(self) -> None:
        ...

    async def read_tags(self) -> dict[str, str]:
        ...

    async def merge_tags(self, tags: dict[str, str]) -> None:
        ...

    async def delete_tags(self, tags: dict[str, str]) -> None:
        ...

    # Resources
    def resource_id(self, spec: ResourceSpec) -> str:
        ...

    async def observe(self, spec: ResourceSpec) -> ObservedResource | None:
        ...

    async def create(self, spec: ResourceSpec) -> None:
        ...

    async def update(self, spec: ResourceSpec, observed: ObservedResource) -> None:
        ...

    async def analyze_hostname(self, app: str, hostname: str) -> HostnameAnalysis:
        ...

    # Identity
    async def principal_id(self, app: str) -> str:
        ...

    async def list_role_assignments(self, principal_id: str, scope: str) -> list[IdentityGrant]:
        ...

    async def create_role_assignment(self, grant: IdentityGrant) -> None:
        ...

    # Images and revisions
    async def image_exists(self, registry: str, image: str) -> bool:
        ...

    async def import_image(self, registry: str, source: str, image: str) -> None:
        ...

    def qualify_image(self, registry: str | None, image: str) -> str:
        ...

    async def list_revisions(self, app: str) -> list[Revision]:
        ...

    async def update_app_template(
        self,
        app: AppContract,
        image: str,
        env: dict[str, str],
        secrets: dict[str, str],
        traffic: dict[str, int],
    ) -> str:
        ...

    async def wait_revision_ready(self, app: str, revision: str) -> Revision:
        ...

    async def set_traffic(
        self,
        app: str,
        weights: dict[str, int],
        labels: dict[str, str] | None = None,
    ) -> None:
        ...

    async def activate_revision(self, app: str, revision: str) -> None:
        ...

    async def deactivate_revision(self, app: str, revision: str) -> None:
        ...

    async def revision_base_url(self, app: str, revision: str) -> str:
        ...

    async def tail_logs(self, app: AppContract, revision: str, lines: int) -> list[str]:
        ...
