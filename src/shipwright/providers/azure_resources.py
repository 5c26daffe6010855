"""
Azure Resource Manager handlers, one per resource kind.

Each handler knows the ARM type, API version and request body for its
kind, and how to read the tracked fields (sku, tier, location) back out
of the provider's representation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from shipwright.clients.arm import ArmClient
from shipwright.core.errors import ProvisioningError
from shipwright.providers.base import HostnameAnalysis
from shipwright.specs.models import ObservedResource, ResourceSpec

logger = structlog.get_logger()

PLACEHOLDER_IMAGE = "mcr.microsoft.com/k8se/quickstart:latest"
APPS_API = "2023-05-01"


class ArmResource:
    """Shared behaviour for resources addressed by type and name in one group."""

    TYPE = ""
    API_VERSION = ""

    def __init__(self, arm: ArmClient) -> None:
        self._arm = arm

    def resource_id(self, spec: ResourceSpec) -> str:
        return self._arm.resource_path(self.TYPE, spec.name)

    async def observe(self, spec: ResourceSpec) -> ObservedResource | None:
        body = await self._arm.get_or_none(self.resource_id(spec), self.API_VERSION)
        if body is None:
            return None
        sku, tier = self.read_sku(body)
        return ObservedResource(
            name=spec.name,
            resource_id=body.get("id", self.resource_id(spec)),
            location=_normalize_location(body.get("location")),
            sku=sku,
            tier=tier,
            provisioning_state=(body.get("properties") or {}).get("provisioningState"),
            raw=body,
        )

    async def create(self, spec: ResourceSpec) -> None:
        path = self.resource_id(spec)
        await self._arm.call("PUT", path, self.API_VERSION, json=self.body(spec))
        await self._arm.wait_until_provisioned(path, self.API_VERSION)

    async def update(self, spec: ResourceSpec, observed: ObservedResource) -> None:
        path = self.resource_id(spec)
        await self._arm.call("PATCH", path, self.API_VERSION, json=self.patch_body(spec))
        await self._arm.wait_until_provisioned(path, self.API_VERSION)

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        raise NotImplementedError

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"sku": _sku(spec)}

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        sku = body.get("sku") or {}
        return sku.get("name"), sku.get("tier")


class RegistryResource(ArmResource):
    TYPE = "Microsoft.ContainerRegistry/registries"
    API_VERSION = "2023-07-01"

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "location": spec.location,
            "sku": {"name": spec.sku or "Basic"},
            "properties": {"adminUserEnabled": False},
        }

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        # ACR reports tier == name; only the name is meaningful
        return (body.get("sku") or {}).get("name"), None


class DatabaseResource(ArmResource):
    TYPE = "Microsoft.DBforPostgreSQL/flexibleServers"
    API_VERSION = "2022-12-01"

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "location": spec.location,
            "sku": _sku(spec, default_name="Standard_B1ms", default_tier="Burstable"),
            "properties": {
                "version": str(spec.prop("version", "16")),
                "storage": {"storageSizeGB": int(spec.prop("storage_gb", 32))},
                # The app authenticates with its managed identity; no passwords
                "authConfig": {
                    "activeDirectoryAuth": "Enabled",
                    "passwordAuth": "Disabled",
                },
            },
        }

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"sku": _sku(spec, default_name="Standard_B1ms", default_tier="Burstable")}


class CacheResource(ArmResource):
    TYPE = "Microsoft.Cache/redis"
    API_VERSION = "2023-08-01"

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "location": spec.location,
            "properties": {
                "sku": self._redis_sku(spec),
                "enableNonSslPort": False,
                "minimumTlsVersion": "1.2",
                "redisConfiguration": {"aad-enabled": "true"},
            },
        }

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"properties": {"sku": self._redis_sku(spec)}}

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        sku = (body.get("properties") or {}).get("sku") or {}
        tier = None
        if sku.get("family") is not None and sku.get("capacity") is not None:
            tier = f"{sku['family']}{sku['capacity']}"
        return sku.get("name"), tier

    @staticmethod
    def _redis_sku(spec: ResourceSpec) -> dict[str, Any]:
        size = spec.tier or "C0"
        return {"name": spec.sku or "Basic", "family": size[0], "capacity": int(size[1:])}


class StorageResource(ArmResource):
    TYPE = "Microsoft.Storage/storageAccounts"
    API_VERSION = "2023-01-01"

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "location": spec.location,
            "kind": "StorageV2",
            "sku": {"name": spec.sku or "Standard_LRS"},
            "properties": {
                "allowSharedKeyAccess": False,
                "minimumTlsVersion": "TLS1_2",
                "supportsHttpsTrafficOnly": True,
            },
        }

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"sku": {"name": spec.sku or "Standard_LRS"}}

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        return (body.get("sku") or {}).get("name"), None


class ComputeEnvironmentResource(ArmResource):
    TYPE = "Microsoft.App/managedEnvironments"
    API_VERSION = APPS_API

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "location": spec.location,
            "properties": {
                "workloadProfiles": [
                    {"name": "Consumption", "workloadProfileType": "Consumption"},
                ],
            },
        }

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"location": spec.location}

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        return None, None


class ComputeAppResource(ArmResource):
    TYPE = "Microsoft.App/containerApps"
    API_VERSION = APPS_API

    def body(self, spec: ResourceSpec) -> dict[str, Any]:
        environment = spec.prop("environment")
        if not environment:
            raise ProvisioningError(
                spec.name,
                f"compute-app '{spec.name}' needs an 'environment' property",
            )
        env_id = self._arm.resource_path(ComputeEnvironmentResource.TYPE, environment)
        return {
            "location": spec.location,
            "identity": {"type": "SystemAssigned"},
            "properties": {
                "managedEnvironmentId": env_id,
                "configuration": {
                    "activeRevisionsMode": "Multiple",
                    "ingress": {
                        "external": True,
                        "targetPort": int(spec.prop("port", 3000)),
                        "transport": "auto",
                        "traffic": [{"latestRevision": True, "weight": 100}],
                    },
                },
                "template": {
                    "containers": [
                        {
                            "name": spec.prop("container_name", "app"),
                            "image": PLACEHOLDER_IMAGE,
                            "resources": {
                                "cpu": float(spec.prop("cpu", 1.0)),
                                "memory": spec.prop("memory", "2Gi"),
                            },
                        }
                    ],
                    "scale": {
                        "minReplicas": int(spec.prop("min_replicas", 1)),
                        "maxReplicas": int(spec.prop("max_replicas", 3)),
                    },
                },
            },
        }

    def patch_body(self, spec: ResourceSpec) -> dict[str, Any]:
        return {"location": spec.location}

    def read_sku(self, body: dict[str, Any]) -> tuple[str | None, str | None]:
        return None, None


Sleep = Callable[[float], Awaitable[None]]


class DomainBindingResource(ArmResource):
    """Custom hostname with a managed certificate bound to a container app.

    Creation mirrors the manual procedure: verify DNS, add the hostname,
    request a CNAME-validated managed certificate, then bind it with SNI.
    Every step checks current state first, so an interrupted create resumes.
    """

    TYPE = ComputeAppResource.TYPE
    API_VERSION = APPS_API

    def __init__(
        self,
        arm: ArmClient,
        *,
        certificate_max_polls: int = 60,
        certificate_poll_interval: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(arm)
        self._cert_max_polls = certificate_max_polls
        self._cert_poll_interval = certificate_poll_interval
        self._sleep = sleep

    def app_name(self, spec: ResourceSpec) -> str:
        app = spec.prop("app")
        if app:
            return app
        if len(spec.depends_on) == 1:
            return next(iter(spec.depends_on))
        raise ProvisioningError(spec.name, f"domain-binding '{spec.name}' needs an 'app' property")

    def app_id(self, app: str) -> str:
        return self._arm.resource_path(ComputeAppResource.TYPE, app)

    def resource_id(self, spec: ResourceSpec) -> str:
        return f"{self.app_id(self.app_name(spec))}/customDomains/{spec.name}"

    async def observe(self, spec: ResourceSpec) -> ObservedResource | None:
        app = await self._arm.get_or_none(self.app_id(self.app_name(spec)), APPS_API)
        if app is None:
            return None
        domain = _find_domain(app, spec.name)
        if domain is None or domain.get("bindingType") != "SniEnabled":
            return None
        return ObservedResource(
            name=spec.name,
            resource_id=self.resource_id(spec),
            provisioning_state="Bound",
            raw=domain,
        )

    async def analyze(self, app_name: str, hostname: str) -> HostnameAnalysis:
        app_id = self.app_id(app_name)
        app = await self._arm.call("GET", app_id, APPS_API)
        result = await self._arm.call(
            "POST",
            f"{app_id}/listCustomHostNameAnalysis",
            APPS_API,
            params={"customHostname": hostname},
        )
        props = app.get("properties") or {}
        ingress = (props.get("configuration") or {}).get("ingress") or {}
        verified = bool(result.get("isHostnameAlreadyVerified")) or (
            result.get("customDomainVerificationTest") == "Passed"
        )
        failure = (result.get("customDomainVerificationFailureInfo") or {}).get("message")
        if result.get("conflictingContainerAppResourceId"):
            verified = False
            failure = f"Hostname is already bound to {result['conflictingContainerAppResourceId']}"
        return HostnameAnalysis(
            hostname=hostname,
            verified=verified,
            txt_record=f"asuid.{hostname}",
            txt_value=props.get("customDomainVerificationId"),
            cname_target=ingress.get("fqdn"),
            failure=failure,
            observed_txt=list(result.get("txtRecords") or []),
            observed_cname=list(result.get("cNameRecords") or []),
        )

    async def create(self, spec: ResourceSpec) -> None:
        app_name = self.app_name(spec)
        hostname = spec.name
        analysis = await self.analyze(app_name, hostname)
        if not analysis.verified:
            raise ProvisioningError(
                hostname,
                f"DNS for {hostname} is not verified: create TXT {analysis.txt_record} -> "
                f"{analysis.txt_value} and CNAME {hostname} -> {analysis.cname_target}",
                {"failure": analysis.failure} if analysis.failure else None,
            )

        app_id = self.app_id(app_name)
        app = await self._arm.call("GET", app_id, APPS_API)
        if _find_domain(app, hostname) is None:
            await self._set_domain(app_id, app, {"name": hostname, "bindingType": "Disabled"})
            logger.info("hostname_added", hostname=hostname, app=app_name)

        certificate_id = await self._ensure_certificate(spec, app)
        app = await self._arm.call("GET", app_id, APPS_API)
        await self._set_domain(
            app_id,
            app,
            {"name": hostname, "bindingType": "SniEnabled", "certificateId": certificate_id},
        )
        logger.info("certificate_bound", hostname=hostname, app=app_name, certificate=certificate_id)

    async def update(self, spec: ResourceSpec, observed: ObservedResource) -> None:
        # Bound domains carry no tracked fields; binding again is the only repair
        await self.create(spec)

    async def _ensure_certificate(self, spec: ResourceSpec, app: dict[str, Any]) -> str:
        env_id = (app.get("properties") or {}).get("managedEnvironmentId")
        if not env_id:
            raise ProvisioningError(spec.name, "App has no managed environment to hold the certificate")
        cert_name = spec.prop("certificate_name") or f"{spec.name.replace('.', '-')}-cert"
        cert_id = f"{env_id}/managedCertificates/{cert_name}"

        existing = await self._arm.get_or_none(cert_id, APPS_API)
        if existing is None:
            await self._arm.call(
                "PUT",
                cert_id,
                APPS_API,
                json={
                    "location": app.get("location"),
                    "properties": {
                        "subjectName": spec.name,
                        "domainControlValidation": spec.prop("validation_method", "CNAME"),
                    },
                },
            )
            logger.info("certificate_requested", hostname=spec.name, certificate=cert_name)

        for _ in range(self._cert_max_polls):
            cert = await self._arm.get_or_none(cert_id, APPS_API) or {}
            state = (cert.get("properties") or {}).get("provisioningState")
            if state == "Succeeded":
                return cert.get("id", cert_id)
            if state in ("Failed", "Canceled"):
                raise ProvisioningError(
                    spec.name,
                    f"Managed certificate for {spec.name} ended in state {state}",
                    {"certificate": cert_name},
                )
            await self._sleep(self._cert_poll_interval)

        raise ProvisioningError(
            spec.name,
            f"Managed certificate for {spec.name} was not issued after {self._cert_max_polls} polls",
            {"certificate": cert_name},
        )

    async def _set_domain(self, app_id: str, app: dict[str, Any], domain: dict[str, Any]) -> None:
        ingress = dict(((app.get("properties") or {}).get("configuration") or {}).get("ingress") or {})
        domains = [d for d in ingress.get("customDomains") or [] if d.get("name") != domain["name"]]
        domains.append(domain)
        ingress["customDomains"] = domains
        await self._arm.call(
            "PATCH",
            app_id,
            APPS_API,
            json={"properties": {"configuration": {"ingress": ingress}}},
        )
        await self._arm.wait_until_provisioned(app_id, APPS_API)


def _find_domain(app: dict[str, Any], hostname: str) -> dict[str, Any] | None:
    ingress = ((app.get("properties") or {}).get("configuration") or {}).get("ingress") or {}
    for domain in ingress.get("customDomains") or []:
        if domain.get("name") == hostname:
            return domain
    return None


def _sku(
    spec: ResourceSpec,
    default_name: str | None = None,
    default_tier: str | None = None,
) -> dict[str, Any]:
    sku: dict[str, Any] = {"name": spec.sku or default_name}
    tier = spec.tier or default_tier
    if tier:
        sku["tier"] = tier
    return sku


def _normalize_location(location: str | None) -> str | None:
    """ARM returns display names ("Central US") for some types; compare as 'centralus'."""
    if location is None:
        return None
    return location.replace(" ", "").lower()
