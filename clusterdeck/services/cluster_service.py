from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

import structlog

from clusterdeck.schemas.kubernetes import DeletePodResult, PodSummary
from clusterdeck.services.cluster_registry import ClusterRegistry
from clusterdeck.services.kube_client import ClusterClient, KubeClientFactory
from clusterdeck.services.pod_mapping import pod_to_summary
from clusterdeck.services.supervisor import SessionSupervisor

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ClusterService:
    """Cluster-scoped commands that need a live API client or span registry and sessions."""

    def __init__(
        self,
        registry: ClusterRegistry,
        clients: KubeClientFactory,
        supervisor: SessionSupervisor,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self._supervisor = supervisor

    async def delete_cluster(self, cluster_id: str) -> bool:
        """Stop the cluster's sessions, then drop its credential file and registry row."""
        await self._supervisor.stop_cluster_sessions(cluster_id)
        return await self._registry.delete(cluster_id)

    async def list_namespaces(self, cluster_id: str) -> list[str]:
        return await self._call(cluster_id, lambda api: api.list_namespaces())

    async def list_pods(self, cluster_id: str, namespace: str) -> list[PodSummary]:
        pods = await self._call(cluster_id, lambda api: api.list_pods(namespace))
        return [pod_to_summary(pod) for pod in pods]

    async def delete_pod(self, cluster_id: str, namespace: str, name: str) -> DeletePodResult:
        await self._call(cluster_id, lambda api: api.delete_pod(namespace, name))
        logger.info("clusters.pod_deleted", cluster_id=cluster_id, namespace=namespace, pod=name)
        return DeletePodResult(namespace=namespace, name=name)

    async def _call(self, cluster_id: str, fn: Callable[[ClusterClient], T]) -> T:
        api = await self._clients.for_cluster(cluster_id)
        try:
            result: Any = await asyncio.to_thread(fn, api)
        finally:
            api.close()
        await self._registry.touch(cluster_id)
        return result
