"""Declarative provisioning and deployment orchestrator for container apps."""

__version__ = "0.1.0"
