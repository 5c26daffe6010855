"""HTTP clients for the Azure control plane."""

from shipwright.clients.arm import ArmClient
from shipwright.clients.auth import ClientCredentialTokenProvider
from shipwright.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError

__all__ = [
    "ArmClient",
    "BaseHTTPClient",
    "ClientCredentialTokenProvider",
    "PermanentHTTPError",
    "RetryableHTTPError",
]
