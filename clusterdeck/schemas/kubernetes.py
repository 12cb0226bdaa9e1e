from pydantic import BaseModel, Field


class PodSummary(BaseModel):
    name: str
    namespace: str
    status: str
    age: str
    creation_timestamp: str | None = None
    containers: int = 0
    restarts: int = 0
    node: str = ""
    qos: str = ""
    controlled_by: str = "-"
    labels: dict[str, str] = Field(default_factory=dict)
    pod_ip: str = "-"
    host_ip: str = "-"
    service_account: str = "default"


class DeletePodResult(BaseModel):
    ok: bool = True
    namespace: str
    name: str
