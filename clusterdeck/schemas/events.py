from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionEventType(str, Enum):
    """Tags carried by every event a session emits."""
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    LINE = "Line"
    ENDED = "Ended"
    ERROR = "Error"


class SessionEvent(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    type: SessionEventType
    payload: Any = None


class ChannelMessage(BaseModel):
    """Frame sent to every GUI client over the event channel."""
    event: str
    payload: SessionEvent


class SessionKind(str, Enum):
    POD_WATCH = "pod_watch"
    LOG_TAIL = "log_tail"


class SessionInfo(BaseModel):
    key: list[str]
    kind: SessionKind
    cluster_id: str
    event_name: str
    started_at: float


class PodWatchRequest(BaseModel):
    cluster_id: str = Field(min_length=1)
    namespace: str | None = Field(default=None, description="Namespace to watch; omitted or \"all\" watches every namespace")


class LogTailRequest(BaseModel):
    cluster_id: str = Field(min_length=1)
    namespace: str = Field(min_length=1)
    pod: str = Field(min_length=1)
    container: str = Field(min_length=1)
    stream_id: str = Field(min_length=1, max_length=255)


class SessionStopped(BaseModel):
    ok: bool = True
    stopped: bool

