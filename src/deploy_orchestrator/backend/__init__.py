"""Durable state-store provisioning and locking."""

from deploy_orchestrator.backend.lock import EnvironmentLock
from deploy_orchestrator.backend.manager import BackendBootstrapManager, render_backend_config
from deploy_orchestrator.backend.store import AwsBackendStore, BackendStore

__all__ = [
    "AwsBackendStore",
    "BackendBootstrapManager",
    "BackendStore",
    "EnvironmentLock",
    "render_backend_config",
]
