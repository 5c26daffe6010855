from __future__ import annotations

from circuitbreaker import CircuitBreakerError

from shipwright.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from shipwright.core.errors import ProviderError, RejectedRequestError

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)


class RegistryClient(BaseHTTPClient):
    """Container registry data-plane client using the AAD token exchange."""

    def __init__(
        self,
        login_server: str,
        tenant_id: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
    ) -> None:
        super().__init__(
            f"https://{login_server}",
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
        )
        self._login_server = login_server
        self._tenant_id = tenant_id

    async def _exchange(self, aad_token: str, repository: str) -> str:
        refresh = await self._request(
            "POST",
            "/oauth2/exchange",
            data={
                "grant_type": "access_token",
                "service": self._login_server,
                "tenant": self._tenant_id,
                "access_token": aad_token,
            },
        )
        access = await self._request(
            "POST",
            "/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "service": self._login_server,
                "scope": f"repository:{repository}:pull",
                "refresh_token": refresh["refresh_token"],
            },
        )
        return access["access_token"]

    async def manifest_exists(self, aad_token: str, repository: str, reference: str) -> bool:
        try:
            token = await self._exchange(aad_token, repository)
            await self._request(
                "HEAD",
                f"/v2/{repository}/manifests/{reference}",
                headers={"Authorization": f"Bearer {token}", "Accept": MANIFEST_MEDIA_TYPES},
            )
        except PermanentHTTPError as exc:
            if exc.not_found:
                return False
            raise RejectedRequestError(
                f"Registry {self._login_server} rejected the manifest lookup: {exc}",
                exc.status_code,
                {"image": f"{repository}:{reference}"},
            ) from exc
        except (RetryableHTTPError, CircuitBreakerError) as exc:
            raise ProviderError(f"Registry {self._login_server} unavailable: {exc}") from exc
        return True
