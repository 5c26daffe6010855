"""Provider utilities and built-in registrations."""

# Import built-in providers for side effects (registration)
from shipwright.providers import azure as _azure  # noqa: F401
from shipwright.providers.registry import (
    create_provider,
    register_provider,
)

__all__ = [
    "create_provider",
    "register_provider",
]
