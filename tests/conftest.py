"""Root test configuration."""

import logging

import pytest
import structlog
import yaml
from fake_provider import FakeControlPlane

from shipwright.config import get_settings

MANIFEST_YAML = """
deployment:
  subscription: 00000000-0000-0000-0000-000000000000
  resource_group: crm-rg
  location: centralus

resources:
  - kind: registry
    name: crmacr
    sku: Basic
  - kind: database
    name: crm-db
    sku: Standard_B1ms
    tier: Burstable
  - kind: cache
    name: crm-cache
    sku: Basic
    tier: C0
  - kind: compute-env
    name: crm-env
  - kind: compute-app
    name: crm-app
    depends_on: [crmacr, crm-db, crm-cache, crm-env]
    properties:
      environment: crm-env

app:
  name: crm-app
  registry: crmacr
  port: 3000
  health_path: /healthz
  required_env: [SERVER_URL]

grants:
  - target: crmacr
    role: AcrPull
  - target: crm-db
    role: Contributor
"""


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Each test reads SHIPWRIGHT_* variables anew."""
    for name in ("SHIPWRIGHT_AZURE_CREDENTIALS", "SHIPWRIGHT_APP_SECRET"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def provider():
    return FakeControlPlane()


@pytest.fixture
def manifest_file(tmp_path):
    path = tmp_path / "shipwright.yaml"
    path.write_text(MANIFEST_YAML)
    return path


@pytest.fixture
def manifest_data():
    return yaml.safe_load(MANIFEST_YAML)
