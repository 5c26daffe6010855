"""Configuration: environment settings and deployment credentials."""

from shipwright.config.settings import AzureCredentials, Settings, get_settings

__all__ = ["AzureCredentials", "Settings", "get_settings"]
