import asyncio

from fastapi import APIRouter, Depends

from clusterdeck.config import Settings, get_settings
from clusterdeck.schemas.discovery import DiscoveredContext, DiscoverFolderRequest, DiscoverRequest
from clusterdeck.services.discovery import discover_contexts_in_file, discover_contexts_in_folder

router = APIRouter(prefix="/discovery", tags=["discovery"])


@router.post("/file", response_model=list[DiscoveredContext], summary="List the contexts of one kubeconfig")
async def discover_in_file(payload: DiscoverRequest) -> list[DiscoveredContext]:
    return await asyncio.to_thread(discover_contexts_in_file, payload.path)


@router.post("/folder", response_model=list[DiscoveredContext], summary="Scan a folder tree for kubeconfig contexts")
async def discover_in_folder(
    payload: DiscoverFolderRequest, settings: Settings = Depends(get_settings)
) -> list[DiscoveredContext]:
    max_depth = payload.max_depth if payload.max_depth is not None else settings.discovery_max_depth
    return await asyncio.to_thread(discover_contexts_in_folder, payload.path, max_depth)
