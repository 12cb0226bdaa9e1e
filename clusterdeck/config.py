from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    return Path.home() / ".clusterdeck"


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERDECK_", env_file=(".env",), env_file_encoding="utf-8", extra="ignore"
    )

    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    host: str = "127.0.0.1"
    port: int = 8765
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:1420", "tauri://localhost"])

    data_dir: Path = Field(default_factory=_default_data_dir)
    # Defaults to <data_dir>/kubeconfigs when unset
    vault_dir: Path | None = None
    # Older builds copied raw bundles straight into the vault directory
    legacy_kubeconfig_dir: Path | None = None
    database_url: str | None = None

    discovery_max_depth: int = Field(default=8, ge=0, description="Max directory depth for folder scans")
    client_connect_timeout_seconds: float = Field(default=10.0, gt=0, description="Bound on client construction")
    log_tail_lines: int = Field(default=1000, ge=0, description="Lines replayed when a log tail attaches")
    watch_timeout_seconds: int = Field(default=300, gt=0, description="Server-side watch window before relist")

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"

    @property
    def resolved_vault_dir(self) -> Path:
        return (self.vault_dir or self.data_dir / "kubeconfigs").expanduser()

    @property
    def resolved_legacy_dir(self) -> Path:
        return (self.legacy_kubeconfig_dir or self.resolved_vault_dir).expanduser()

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir.expanduser() / 'clusters.db'}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
