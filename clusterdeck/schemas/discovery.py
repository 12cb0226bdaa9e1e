from pydantic import BaseModel, Field


class DiscoveredContext(BaseModel):
    context_name: str
    cluster_name: str
    user_name: str
    namespace: str | None = None
    source_file: str


class DiscoverRequest(BaseModel):
    path: str = Field(min_length=1)


class DiscoverFolderRequest(DiscoverRequest):
    max_depth: int | None = Field(default=None, ge=0)


class MigrationResult(BaseModel):
    migrated: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict, description="context name -> error message")
