from fastapi import APIRouter, Depends, Query, status

from clusterdeck.config import Settings, get_settings
from clusterdeck.dependencies import get_cluster_service, get_registry
from clusterdeck.exceptions import ClusterNotFoundError
from clusterdeck.schemas.cluster import (
    ClusterCreate,
    ClusterCreated,
    ClusterDeleted,
    ClusterPatch,
    ClusterRecord,
    OkResponse,
)
from clusterdeck.schemas.discovery import MigrationResult
from clusterdeck.schemas.kubernetes import DeletePodResult, PodSummary
from clusterdeck.services.cluster_registry import ClusterRegistry
from clusterdeck.services.cluster_service import ClusterService
from clusterdeck.services.kube_client import ALL_NAMESPACES

router = APIRouter(prefix="/clusters", tags=["clusters"])


@router.get("/", response_model=list[ClusterRecord], summary="List clusters, most recently used first")
async def list_clusters(registry: ClusterRegistry = Depends(get_registry)) -> list[ClusterRecord]:
    return await registry.list_clusters()


@router.post(
    "/",
    response_model=ClusterCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Import one context from a credential bundle",
)
async def add_cluster(payload: ClusterCreate, registry: ClusterRegistry = Depends(get_registry)) -> ClusterCreated:
    record = await registry.import_cluster(payload)
    return ClusterCreated(id=record.id)


@router.post("/migrate", response_model=MigrationResult, summary="Register contexts from the legacy credential folder")
async def migrate_legacy(
    registry: ClusterRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> MigrationResult:
    return await registry.migrate_legacy(settings.resolved_legacy_dir, settings.discovery_max_depth)


@router.get("/{cluster_id}", response_model=ClusterRecord | None, summary="Get one cluster")
async def get_cluster(cluster_id: str, registry: ClusterRegistry = Depends(get_registry)) -> ClusterRecord | None:
    return await registry.get(cluster_id)


@router.patch("/{cluster_id}", response_model=OkResponse, summary="Update cluster metadata")
async def update_cluster(
    cluster_id: str, patch: ClusterPatch, registry: ClusterRegistry = Depends(get_registry)
) -> OkResponse:
    await registry.update(cluster_id, patch)
    return OkResponse()


@router.post("/{cluster_id}/touch", response_model=OkResponse, summary="Mark a cluster as just used")
async def touch_cluster(cluster_id: str, registry: ClusterRegistry = Depends(get_registry)) -> OkResponse:
    if not await registry.touch(cluster_id):
        raise ClusterNotFoundError(f"Cluster '{cluster_id}' not found", details={"cluster_id": cluster_id})
    return OkResponse()


@router.delete("/{cluster_id}", response_model=ClusterDeleted, summary="Delete a cluster and its credential")
async def delete_cluster(cluster_id: str, service: ClusterService = Depends(get_cluster_service)) -> ClusterDeleted:
    deleted = await service.delete_cluster(cluster_id)
    return ClusterDeleted(deleted=deleted)


@router.get("/{cluster_id}/namespaces", response_model=list[str], summary="List namespace names")
async def list_namespaces(cluster_id: str, service: ClusterService = Depends(get_cluster_service)) -> list[str]:
    return await service.list_namespaces(cluster_id)


@router.get("/{cluster_id}/pods", response_model=list[PodSummary], summary="List pods")
async def list_pods(
    cluster_id: str,
    namespace: str = Query(default=ALL_NAMESPACES, min_length=1),
    service: ClusterService = Depends(get_cluster_service),
) -> list[PodSummary]:
    return await service.list_pods(cluster_id, namespace)


@router.delete("/{cluster_id}/pods/{namespace}/{name}", response_model=DeletePodResult, summary="Delete a pod")
async def delete_pod(
    cluster_id: str, namespace: str, name: str, service: ClusterService = Depends(get_cluster_service)
) -> DeletePodResult:
    return await service.delete_pod(cluster_id, namespace, name)
