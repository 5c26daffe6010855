from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from shipwright.clients.arm import ArmClient, Sleep
from shipwright.clients.auth import ARM_SCOPE, ClientCredentialTokenProvider
from shipwright.clients.registry import RegistryClient
from shipwright.config.settings import AzureCredentials, Settings
from shipwright.core.errors import (
    ConfigurationError,
    DeploymentError,
    IdentityError,
    RejectedRequestError,
    ShipwrightError,
)
from shipwright.providers.azure_resources import (
    APPS_API,
    ArmResource,
    CacheResource,
    ComputeAppResource,
    ComputeEnvironmentResource,
    DatabaseResource,
    DomainBindingResource,
    RegistryResource,
    StorageResource,
)
from shipwright.providers.base import HostnameAnalysis, ProviderHealth
from shipwright.providers.registry import register_provider
from shipwright.specs.models import (
    AppContract,
    IdentityGrant,
    ObservedResource,
    ResourceKind,
    ResourceSpec,
    Revision,
    parse_image,
)

logger = structlog.get_logger()

AUTHZ_API = "2022-04-01"
TAGS_API = "2021-04-01"
GROUPS_API = "2021-04-01"
APP_SECRET_NAME = "app-secret"
DEFAULT_USER_AGENT = "shipwright/0.1.0"


class AzureProvider:
    """Control plane adapter for Azure Container Apps and its dependencies."""

    name = "azure"

    def __init__(
        self,
        credentials: AzureCredentials,
        *,
        resource_group: str,
        location: str,
        subscription_id: str | None = None,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        settings = settings or Settings()
        subscription = subscription_id or credentials.subscription_id
        if not subscription:
            raise ConfigurationError(
                "No subscription id: set deployment.subscription or include subscriptionId in the credentials"
            )
        self._credentials = credentials
        self._settings = settings
        self._location = location
        self._tokens = ClientCredentialTokenProvider(
            credentials,
            login_endpoint=settings.login_endpoint,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            backoff_factor=settings.http_retry_backoff_factor,
        )
        self._arm = ArmClient(
            self._tokens,
            subscription,
            resource_group,
            base_url=settings.arm_endpoint,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            backoff_factor=settings.http_retry_backoff_factor,
            poll_interval=settings.operation_poll_interval,
            max_polls=settings.operation_max_polls,
            sleep=sleep,
        )
        self._handlers: dict[ResourceKind, ArmResource] = {
            ResourceKind.REGISTRY: RegistryResource(self._arm),
            ResourceKind.DATABASE: DatabaseResource(self._arm),
            ResourceKind.CACHE: CacheResource(self._arm),
            ResourceKind.STORAGE: StorageResource(self._arm),
            ResourceKind.COMPUTE_ENV: ComputeEnvironmentResource(self._arm),
            ResourceKind.COMPUTE_APP: ComputeAppResource(self._arm),
            ResourceKind.DOMAIN_BINDING: DomainBindingResource(
                self._arm,
                certificate_max_polls=settings.certificate_max_polls,
                certificate_poll_interval=settings.certificate_poll_interval,
                sleep=sleep,
            ),
        }
        self._role_names: dict[str, str] = {}
        self._role_ids: dict[tuple[str, str], str] = {}

    async def health_check(self) -> ProviderHealth:
        try:
            await self._arm.call("GET", f"/subscriptions/{self._arm.subscription_id}", GROUPS_API)
            return ProviderHealth(status="healthy")
        except ShipwrightError as exc:
            return ProviderHealth(status="unreachable", details=str(exc))

    # Scope and advisory lock

    @property
    def lock_scope(self) -> str:
        return self._arm.group_id

    async def ensure_scope(self) -> None:
        group = await self._arm.get_or_none(self._arm.group_id, GROUPS_API)
        if group is None:
            await self._arm.call("PUT", self._arm.group_id, GROUPS_API, json={"location": self._location})
            logger.info("resource_group_created", scope=self._arm.group_id, location=self._location)

    async def read_tags(self) -> dict[str, str]:
        body = await self._arm.get_or_none(self._tags_path, TAGS_API) or {}
        return dict((body.get("properties") or {}).get("tags") or {})

    async def merge_tags(self, tags: dict[str, str]) -> None:
        await self._arm.call(
            "PATCH",
            self._tags_path,
            TAGS_API,
            json={"operation": "Merge", "properties": {"tags": tags}},
        )

    async def delete_tags(self, tags: dict[str, str]) -> None:
        await self._arm.call(
            "PATCH",
            self._tags_path,
            TAGS_API,
            json={"operation": "Delete", "properties": {"tags": tags}},
        )

    @property
    def _tags_path(self) -> str:
        return f"{self._arm.group_id}/providers/Microsoft.Resources/tags/default"

    # Resources

    def _handler(self, spec: ResourceSpec) -> ArmResource:
        return self._handlers[spec.kind]

    def resource_id(self, spec: ResourceSpec) -> str:
        return self._handler(spec).resource_id(spec)

    async def observe(self, spec: ResourceSpec) -> ObservedResource | None:
        return await self._handler(spec).observe(spec)

    async def create(self, spec: ResourceSpec) -> None:
        await self._handler(spec).create(spec)

    async def update(self, spec: ResourceSpec, observed: ObservedResource) -> None:
        await self._handler(spec).update(spec, observed)

    async def analyze_hostname(self, app: str, hostname: str) -> HostnameAnalysis:
        handler = self._handlers[ResourceKind.DOMAIN_BINDING]
        assert isinstance(handler, DomainBindingResource)
        return await handler.analyze(app, hostname)

    # Identity

    def _app_id(self, app: str) -> str:
        return self._arm.resource_path(ComputeAppResource.TYPE, app)

    async def principal_id(self, app: str) -> str:
        body = await self._arm.get_or_none(self._app_id(app), APPS_API)
        if body is None:
            raise IdentityError(f"App '{app}' does not exist; run provision first", {"resource": app})
        principal = (body.get("identity") or {}).get("principalId")
        if not principal:
            raise IdentityError(
                f"App '{app}' has no system-assigned identity",
                {"resource": app},
            )
        return principal

    async def _role_definition_id(self, scope: str, role: str) -> str:
        key = (scope, role)
        if key not in self._role_ids:
            body = await self._arm.call(
                "GET",
                f"{scope}/providers/Microsoft.Authorization/roleDefinitions",
                AUTHZ_API,
                params={"$filter": f"roleName eq '{role}'"},
            )
            matches = body.get("value") or []
            if not matches:
                raise IdentityError(f"Unknown role '{role}'", {"resource": scope, "role": role})
            role_id = matches[0]["id"]
            self._role_ids[key] = role_id
            self._role_names[_role_guid(role_id)] = role
        return self._role_ids[key]

    async def _role_name(self, role_definition_id: str) -> str:
        guid = _role_guid(role_definition_id)
        if guid not in self._role_names:
            body = await self._arm.call("GET", role_definition_id, AUTHZ_API)
            self._role_names[guid] = (body.get("properties") or {}).get("roleName", guid)
        return self._role_names[guid]

    async def list_role_assignments(self, principal_id: str, scope: str) -> list[IdentityGrant]:
        body = await self._arm.call(
            "GET",
            f"{scope}/providers/Microsoft.Authorization/roleAssignments",
            AUTHZ_API,
            params={"$filter": f"principalId eq '{principal_id}'"},
        )
        grants = []
        for assignment in body.get("value") or []:
            props = assignment.get("properties") or {}
            if props.get("principalId") != principal_id:
                continue
            role = await self._role_name(props["roleDefinitionId"])
            grants.append(IdentityGrant(principal_id=principal_id, scope=scope, role=role))
        return grants

    async def create_role_assignment(self, grant: IdentityGrant) -> None:
        role_definition_id = await self._role_definition_id(grant.scope, grant.role)
        # Deterministic name so a retried PUT targets the same assignment
        name = uuid.uuid5(uuid.NAMESPACE_URL, f"{grant.scope}|{grant.principal_id}|{grant.role}")
        try:
            await self._arm.call(
                "PUT",
                f"{grant.scope}/providers/Microsoft.Authorization/roleAssignments/{name}",
                AUTHZ_API,
                json={
                    "properties": {
                        "roleDefinitionId": role_definition_id,
                        "principalId": grant.principal_id,
                        "principalType": "ServicePrincipal",
                    }
                },
            )
        except RejectedRequestError as exc:
            if exc.status_code == 409:
                logger.info("role_assignment_exists", scope=grant.scope, role=grant.role)
                return
            raise

    # Images

    async def _login_server(self, registry: str) -> str:
        body = await self._arm.call(
            "GET",
            self._arm.resource_path(RegistryResource.TYPE, registry),
            RegistryResource.API_VERSION,
        )
        return body["properties"]["loginServer"]

    def qualify_image(self, registry: str | None, image: str) -> str:
        ref = parse_image(image)
        if ref.host or not registry:
            return ref.qualified()
        return ref.qualified(host=f"{registry}.azurecr.io")

    async def image_exists(self, registry: str, image: str) -> bool:
        login_server = await self._login_server(registry)
        ref = parse_image(image)
        if ref.host and ref.host != login_server:
            raise DeploymentError(
                f"Image {image} is not in registry {login_server}",
                {"image": image, "registry": registry},
            )
        client = RegistryClient(
            login_server,
            self._credentials.tenant_id,
            timeout=self._settings.http_timeout,
            max_retries=self._settings.http_max_retries,
            backoff_factor=self._settings.http_retry_backoff_factor,
        )
        aad_token = await self._tokens.token(ARM_SCOPE)
        return await client.manifest_exists(aad_token, ref.repository, ref.reference)

    async def import_image(self, registry: str, source: str, image: str) -> None:
        ref = parse_image(image)
        source_ref = parse_image(source)
        registry_id = self._arm.resource_path(RegistryResource.TYPE, registry)
        source_body = {
            "registryUri": source_ref.host or "docker.io",
            "sourceImage": replace(source_ref, host=None).qualified(),
        }
        await self._arm.call(
            "POST",
            f"{registry_id}/importImage",
            RegistryResource.API_VERSION,
            json={
                "source": source_body,
                "targetTags": [f"{ref.repository}:{ref.tag or 'latest'}"],
                "mode": "Force",
            },
        )
        logger.info("image_imported", registry=registry, source=source, image=image)

    # Revisions

    async def list_revisions(self, app: str) -> list[Revision]:
        body = await self._arm.call("GET", f"{self._app_id(app)}/revisions", APPS_API)
        return [_revision_from(item) for item in body.get("value") or []]

    async def update_app_template(
        self,
        app: AppContract,
        image: str,
        env: dict[str, str],
        secrets: dict[str, str],
        traffic: dict[str, int],
    ) -> str:
        app_id = self._app_id(app.name)
        current = await self._arm.call("GET", app_id, APPS_API)
        props = current.get("properties") or {}
        configuration = props.get("configuration") or {}
        template = props.get("template") or {}

        suffix = _revision_suffix(image)
        env_entries: list[dict[str, str]] = [
            {"name": key, "value": value} for key, value in sorted(env.items())
        ]
        secret_entries = []
        for env_name, value in sorted(secrets.items()):
            secret_name = APP_SECRET_NAME if env_name == app.secret_env else env_name.lower().replace("_", "-")
            secret_entries.append({"name": secret_name, "value": value})
            env_entries.append({"name": env_name, "secretRef": secret_name})

        ingress = dict(configuration.get("ingress") or {})
        if traffic:
            # Pinned weights keep the new revision at zero traffic until shifted
            ingress["traffic"] = [
                {"revisionName": name, "weight": weight} for name, weight in traffic.items()
            ]
        new_configuration: dict[str, Any] = {"ingress": ingress}
        if secret_entries:
            new_configuration["secrets"] = secret_entries
        if app.registry:
            new_configuration["registries"] = [
                {"server": await self._login_server(app.registry), "identity": "system"}
            ]

        await self._arm.call(
            "PATCH",
            app_id,
            APPS_API,
            json={
                "properties": {
                    "configuration": new_configuration,
                    "template": {
                        "revisionSuffix": suffix,
                        "containers": [
                            {
                                "name": app.container_name,
                                "image": image,
                                "env": env_entries,
                                "resources": {"cpu": app.cpu, "memory": app.memory},
                            }
                        ],
                        "scale": template.get("scale") or {"minReplicas": 1, "maxReplicas": 3},
                    },
                }
            },
        )
        return f"{app.name}--{suffix}"

    async def wait_revision_ready(self, app: str, revision: str) -> Revision:
        path = f"{self._app_id(app)}/revisions/{revision}"
        body = await self._arm.wait_until_provisioned(path, APPS_API)
        return _revision_from(body)

    async def set_traffic(
        self,
        app: str,
        weights: dict[str, int],
        labels: dict[str, str] | None = None,
    ) -> None:
        labels = labels or {}
        app_id = self._app_id(app)
        current = await self._arm.call("GET", app_id, APPS_API)
        ingress = dict(((current.get("properties") or {}).get("configuration") or {}).get("ingress") or {})
        traffic = []
        for name, weight in weights.items():
            entry: dict[str, Any] = {"revisionName": name, "weight": weight}
            if name in labels:
                entry["label"] = labels[name]
            traffic.append(entry)
        ingress["traffic"] = traffic
        await self._arm.call(
            "PATCH",
            app_id,
            APPS_API,
            json={"properties": {"configuration": {"ingress": ingress}}},
        )
        await self._arm.wait_until_provisioned(app_id, APPS_API)

    async def activate_revision(self, app: str, revision: str) -> None:
        await self._arm.call("POST", f"{self._app_id(app)}/revisions/{revision}/activate", APPS_API)

    async def deactivate_revision(self, app: str, revision: str) -> None:
        await self._arm.call("POST", f"{self._app_id(app)}/revisions/{revision}/deactivate", APPS_API)

    async def revision_base_url(self, app: str, revision: str) -> str:
        body = await self._arm.call("GET", f"{self._app_id(app)}/revisions/{revision}", APPS_API)
        fqdn = (body.get("properties") or {}).get("fqdn")
        if not fqdn:
            app_body = await self._arm.call("GET", self._app_id(app), APPS_API)
            ingress = ((app_body.get("properties") or {}).get("configuration") or {}).get("ingress") or {}
            fqdn = ingress.get("fqdn")
        if not fqdn:
            raise DeploymentError(f"App '{app}' exposes no ingress FQDN", {"revision": revision})
        return f"https://{fqdn}"

    async def tail_logs(self, app: AppContract, revision: str, lines: int) -> list[str]:
        """Fetch recent console log lines of a revision; empty when unavailable."""
        app_id = self._app_id(app.name)
        try:
            app_body = await self._arm.call("GET", app_id, APPS_API)
            endpoint = (app_body.get("properties") or {}).get("eventStreamEndpoint")
            replicas = await self._arm.call("GET", f"{app_id}/revisions/{revision}/replicas", APPS_API)
            token = await self._arm.call("POST", f"{app_id}/getAuthToken", APPS_API)
        except ShipwrightError as exc:
            logger.warning("log_tail_unavailable", app=app.name, revision=revision, error=str(exc))
            return []

        replica_names = [item.get("name") for item in replicas.get("value") or [] if item.get("name")]
        auth = (token.get("properties") or {}).get("token")
        if not endpoint or not replica_names or not auth:
            return []

        base = endpoint[: endpoint.index("/subscriptions/")] if "/subscriptions/" in endpoint else endpoint
        url = (
            f"{base}{app_id}/revisions/{revision}/replicas/{replica_names[0]}"
            f"/containers/{app.container_name}/logstream"
        )
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout) as client:
                response = await client.get(
                    url,
                    params={"tailLines": lines, "follow": "false", "output": "text"},
                    headers={"Authorization": f"Bearer {auth}", "User-Agent": DEFAULT_USER_AGENT},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("log_tail_unavailable", app=app.name, revision=revision, error=str(exc))
            return []
        return response.text.splitlines()[-lines:]


def _revision_from(item: dict[str, Any]) -> Revision:
    props = item.get("properties") or {}
    containers = (props.get("template") or {}).get("containers") or []
    created = props.get("createdTime")
    return Revision(
        name=item.get("name", ""),
        image=containers[0].get("image") if containers else None,
        traffic_weight=int(props.get("trafficWeight") or 0),
        active=bool(props.get("active")),
        created_at=_parse_time(created),
        fqdn=props.get("fqdn"),
        provisioning_state=props.get("provisioningState"),
    )


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _role_guid(role_definition_id: str) -> str:
    return role_definition_id.rstrip("/").rsplit("/", 1)[-1].lower()


def _revision_suffix(image: str) -> str:
    """Revision suffixes must be lowercase alphanumerics and dashes."""
    ref = parse_image(image)
    label = (ref.tag or "latest").lower()
    label = "".join(ch if ch.isalnum() else "-" for ch in label).strip("-") or "rev"
    stamp = datetime.now(timezone.utc).strftime("%m%d%H%M%S")
    return f"{label[:20]}-{stamp}"


def _azure_factory(
    *,
    settings: Settings,
    resource_group: str,
    location: str,
    subscription_id: str | None = None,
    **kwargs: Any,
) -> AzureProvider:
    return AzureProvider(
        settings.credentials(),
        resource_group=resource_group,
        location=location,
        subscription_id=subscription_id,
        settings=settings,
        **kwargs,
    )


register_provider(
    "azure",
    _azure_factory,
    version="0.1.0",
    description="Azure Container Apps, ACR, PostgreSQL, Redis and Storage",
)
