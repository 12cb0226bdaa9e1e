"""
Shared fixtures: a vault rooted in tmp_path, an in-memory registry database,
a controllable clock and kubeconfig bundle builders.
"""

from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import pytest
import yaml
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clusterdeck import models  # noqa: F401
from clusterdeck.db import Base
from clusterdeck.services.cluster_registry import ClusterRegistry
from clusterdeck.services.vault import CredentialVault


# =============================================================================
# Kubeconfig builders
# =============================================================================

def kubeconfig(*context_names: str, namespace: str | None = None) -> dict[str, Any]:
    """Bundle where context ``n`` points at cluster ``n-cluster`` and user ``n-user``."""
    contexts = []
    for name in context_names:
        body: dict[str, Any] = {"cluster": f"{name}-cluster", "user": f"{name}-user"}
        if namespace:
            body["namespace"] = namespace
        contexts.append({"name": name, "context": body})
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": f"{name}-cluster", "cluster": {"server": f"https://{name}.example.com:6443"}}
            for name in context_names
        ],
        "users": [{"name": f"{name}-user", "user": {"token": f"token-{name}"}} for name in context_names],
        "contexts": contexts,
        "current-context": context_names[0] if context_names else "",
    }


def write_yaml(path: Path, document: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def write_bundle(tmp_path: Path) -> Callable[..., Path]:
    """Write a kubeconfig under tmp_path/external and return its path."""

    def _write(relative: str, *context_names: str, **kwargs: Any) -> Path:
        return write_yaml(tmp_path / "external" / relative, kubeconfig(*context_names, **kwargs))

    return _write


# =============================================================================
# Vault and registry
# =============================================================================

class FakeClock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vault_root(tmp_path: Path) -> Path:
    return tmp_path / "vault"


@pytest.fixture
def vault(vault_root: Path) -> CredentialVault:
    vault = CredentialVault(vault_root)
    vault.ensure_root()
    return vault


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def registry(session_factory, vault: CredentialVault, clock: FakeClock) -> ClusterRegistry:
    return ClusterRegistry(session_factory, vault, clock=clock)
