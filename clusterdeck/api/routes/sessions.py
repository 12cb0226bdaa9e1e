from fastapi import APIRouter, Depends, Query

from clusterdeck.dependencies import get_supervisor
from clusterdeck.schemas.events import LogTailRequest, PodWatchRequest, SessionInfo, SessionStopped
from clusterdeck.services.supervisor import SessionSupervisor

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/", response_model=list[SessionInfo], summary="List live sessions")
async def list_sessions(supervisor: SessionSupervisor = Depends(get_supervisor)) -> list[SessionInfo]:
    return supervisor.list_sessions()


@router.post("/pod-watch", response_model=SessionInfo, summary="Start (or restart) a pod watch")
async def start_pod_watch(
    payload: PodWatchRequest, supervisor: SessionSupervisor = Depends(get_supervisor)
) -> SessionInfo:
    return await supervisor.start_resource_watch(payload.cluster_id, payload.namespace)


@router.delete("/pod-watch", response_model=SessionStopped, summary="Stop a pod watch")
async def stop_pod_watch(
    cluster_id: str = Query(..., min_length=1),
    namespace: str | None = Query(default=None),
    supervisor: SessionSupervisor = Depends(get_supervisor),
) -> SessionStopped:
    stopped = await supervisor.stop_resource_watch(cluster_id, namespace)
    return SessionStopped(stopped=stopped)


@router.post("/log-tail", response_model=SessionInfo, summary="Start (or restart) a container log tail")
async def start_log_tail(
    payload: LogTailRequest, supervisor: SessionSupervisor = Depends(get_supervisor)
) -> SessionInfo:
    return await supervisor.start_log_tail(
        payload.cluster_id, payload.namespace, payload.pod, payload.container, payload.stream_id
    )


@router.delete("/log-tail/{stream_id}", response_model=SessionStopped, summary="Stop a container log tail")
async def stop_log_tail(stream_id: str, supervisor: SessionSupervisor = Depends(get_supervisor)) -> SessionStopped:
    stopped = await supervisor.stop_log_tail(stream_id)
    return SessionStopped(stopped=stopped)
