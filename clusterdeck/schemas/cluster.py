from typing import Any

from pydantic import BaseModel, Field, model_validator


class ClusterRecord(BaseModel):
    id: str
    name: str
    context_name: str
    config_path: str
    icon: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: int
    last_accessed: int


class ClusterCreate(BaseModel):
    """Register a cluster from one context of an external credential bundle."""

    name: str = Field(min_length=1, max_length=255)
    context_name: str = Field(min_length=1, max_length=255)
    source_file: str = Field(min_length=1, description="Path of the bundle to extract the context from")
    icon: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)


class ClusterCreated(BaseModel):
    id: str


class ClusterPatch(BaseModel):
    """Partial update of a cluster's display metadata.

    Presence matters, not only the value: a field missing from the payload is left
    untouched, while ``icon``/``description`` sent as ``null`` are cleared. ``name``
    and ``tags`` can be changed but not cleared.
    """

    name: str | None = Field(default=None, min_length=1, max_length=255)
    icon: str | None = None
    description: str | None = None
    tags: list[str] | None = None

    @model_validator(mode="after")
    def _reject_clearing_required(self) -> "ClusterPatch":
        for field in ("name", "tags"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"'{field}' cannot be cleared")
        return self

    def changes(self) -> dict[str, Any]:
        """Only the fields the caller actually sent, explicit nulls included."""
        return {field: getattr(self, field) for field in self.model_fields_set}

    def is_empty(self) -> bool:
        return not self.model_fields_set


class OkResponse(BaseModel):
    ok: bool = True


class ClusterDeleted(OkResponse):
    deleted: bool
