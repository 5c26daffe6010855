from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict

from shipwright.core.errors import ConfigurationError

ProviderFactory = Callable[..., Any]


@dataclass(frozen=True)
class ProviderSpec:
    """Metadata describing a registered control-plane provider."""

    name: str
    factory: ProviderFactory
    version: str | None = None
    description: str | None = None


class ProviderRegistry:
    """Simple in-memory registry for control-plane providers."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderSpec] = {}

    def register(
        self,
        name: str,
        factory: ProviderFactory,
        *,
        version: str | None = None,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValueError("Provider name is required")
        spec = ProviderSpec(
            name=name,
            factory=factory,
            version=version,
            description=description,
        )
        self._providers[name] = spec

    def create(self, name: str, **kwargs: Any) -> Any:
        spec = self._providers.get(name)
        if spec is None:
            known = ", ".join(sorted(self._providers)) or "none"
            raise ConfigurationError(f"Provider '{name}' is not registered (known: {known})")
        return spec.factory(**kwargs)


provider_registry = ProviderRegistry()


def register_provider(
    name: str,
    factory: ProviderFactory,
    *,
    version: str | None = None,
    description: str | None = None,
) -> None:
    provider_registry.register(name, factory, version=version, description=description)


def create_provider(name: str, **kwargs: Any) -> Any:
    return provider_registry.create(name, **kwargs)
