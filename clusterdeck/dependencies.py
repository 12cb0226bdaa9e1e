from functools import lru_cache

from clusterdeck.config import get_settings
from clusterdeck.db import get_session_factory
from clusterdeck.services.cluster_registry import ClusterRegistry
from clusterdeck.services.cluster_service import ClusterService
from clusterdeck.services.kube_client import KubeClientFactory
from clusterdeck.services.supervisor import SessionSupervisor
from clusterdeck.services.vault import CredentialVault
from clusterdeck.websocket.manager import ConnectionManager


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    return CredentialVault(get_settings().resolved_vault_dir)


@lru_cache(maxsize=1)
def get_registry() -> ClusterRegistry:
    return ClusterRegistry(get_session_factory(), get_vault())


@lru_cache(maxsize=1)
def get_connection_manager() -> ConnectionManager:
    return ConnectionManager()


@lru_cache(maxsize=1)
def get_client_factory() -> KubeClientFactory:
    return KubeClientFactory(get_registry(), get_settings().client_connect_timeout_seconds)


@lru_cache(maxsize=1)
def get_supervisor() -> SessionSupervisor:
    settings = get_settings()
    return SessionSupervisor(
        get_registry(),
        get_client_factory(),
        get_connection_manager(),
        watch_timeout_seconds=settings.watch_timeout_seconds,
        log_tail_lines=settings.log_tail_lines,
    )


@lru_cache(maxsize=1)
def get_cluster_service() -> ClusterService:
    return ClusterService(get_registry(), get_client_factory(), get_supervisor())


def reset_dependencies() -> None:
    for provider in (
        get_vault,
        get_registry,
        get_connection_manager,
        get_client_factory,
        get_supervisor,
        get_cluster_service,
    ):
        provider.cache_clear()
