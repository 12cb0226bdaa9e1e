from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clusterdeck.exceptions import AppException, ClusterNotFoundError
from clusterdeck.models.cluster import Cluster
from clusterdeck.schemas.cluster import ClusterCreate, ClusterPatch, ClusterRecord
from clusterdeck.schemas.discovery import MigrationResult
from clusterdeck.services.discovery import DEFAULT_MAX_DEPTH, discover_contexts_in_folder
from clusterdeck.services.vault import CredentialVault

logger = structlog.get_logger(__name__)


def _epoch_seconds() -> int:
    return int(time.time())


def _decode_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(value, list):
        return []
    return [str(tag) for tag in value]


def to_record(row: Cluster) -> ClusterRecord:
    return ClusterRecord(
        id=row.id,
        name=row.name,
        context_name=row.context_name,
        config_path=row.config_path,
        icon=row.icon,
        description=row.description,
        tags=_decode_tags(row.tags),
        created_at=row.created_at,
        last_accessed=row.last_accessed,
    )


def apply_patch(row: Cluster, changes: dict[str, Any]) -> None:
    """Merge a patch's present fields into a row; absent fields are untouched."""
    for field, value in changes.items():
        if field == "tags":
            row.tags = json.dumps(list(value))
        else:
            setattr(row, field, value)


class ClusterRegistry:
    """Durable catalog of registered clusters.

    All operations run as short transactions, one at a time, behind a single lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._clock = clock or _epoch_seconds
        self._lock = asyncio.Lock()

    @property
    def vault(self) -> CredentialVault:
        return self._vault

    async def add(
        self,
        name: str,
        context_name: str,
        credential_path: Path | str,
        icon: str | None = None,
        description: str | None = None,
        tags: Sequence[str] | None = None,
        *,
        cluster_id: str | None = None,
    ) -> ClusterRecord:
        config_path = self._vault.validate_path(credential_path)
        async with self._lock:
            async with self._session_factory() as session:
                row = self._new_row(
                    cluster_id or str(uuid.uuid4()), name, context_name, config_path, icon, description, tags
                )
                session.add(row)
                await session.commit()
                record = to_record(row)
        logger.info("registry.cluster_added", cluster_id=record.id, context=context_name)
        return record

    async def list_clusters(self) -> list[ClusterRecord]:
        async with self._lock:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Cluster).order_by(Cluster.last_accessed.desc(), Cluster.created_at.desc())
                )
                rows: Sequence[Cluster] = result.scalars().all()
                return [to_record(row) for row in rows]

    async def get(self, cluster_id: str) -> ClusterRecord | None:
        async with self._lock:
            async with self._session_factory() as session:
                row = await session.get(Cluster, cluster_id)
                return to_record(row) if row else None

    async def require(self, cluster_id: str) -> ClusterRecord:
        record = await self.get(cluster_id)
        if record is None:
            raise ClusterNotFoundError(f"Cluster '{cluster_id}' not found", details={"cluster_id": cluster_id})
        return record

    async def update(self, cluster_id: str, patch: ClusterPatch) -> None:
        if patch.is_empty():
            return
        async with self._lock:
            async with self._session_factory() as session:
                row = await session.get(Cluster, cluster_id)
                if row is None:
                    raise ClusterNotFoundError(
                        f"Cluster '{cluster_id}' not found", details={"cluster_id": cluster_id}
                    )
                apply_patch(row, patch.changes())
                await session.commit()
        logger.info("registry.cluster_updated", cluster_id=cluster_id, fields=sorted(patch.model_fields_set))

    async def touch(self, cluster_id: str) -> bool:
        async with self._lock:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Cluster).where(Cluster.id == cluster_id).values(last_accessed=self._clock())
                )
                await session.commit()
                return bool(result.rowcount)

    async def delete(self, cluster_id: str) -> bool:
        """Remove the credential file, then the row. Returns False if the id was unknown."""
        async with self._lock:
            async with self._session_factory() as session:
                row = await session.get(Cluster, cluster_id)
                if row is None:
                    return False
                config_path = row.config_path
                removed = await asyncio.to_thread(self._vault.remove_credential, config_path)
                await session.execute(delete(Cluster).where(Cluster.id == cluster_id))
                await session.commit()
        logger.info("registry.cluster_deleted", cluster_id=cluster_id, credential_removed=removed)
        return True

    async def context_exists(self, context_name: str) -> bool:
        async with self._lock:
            async with self._session_factory() as session:
                return await self._context_exists(session, context_name)

    async def import_cluster(self, payload: ClusterCreate) -> ClusterRecord:
        """Extract one context from an external bundle into the vault and register it."""
        cluster_id = str(uuid.uuid4())
        config_path = await asyncio.to_thread(
            self._vault.extract_context, payload.source_file, payload.context_name, cluster_id
        )
        try:
            return await self.add(
                payload.name,
                payload.context_name,
                config_path,
                payload.icon,
                payload.description,
                payload.tags,
                cluster_id=cluster_id,
            )
        except BaseException:
            await asyncio.to_thread(self._vault.remove_credential, config_path)
            raise

    async def migrate_legacy(self, legacy_dir: Path | str, max_depth: int = DEFAULT_MAX_DEPTH) -> MigrationResult:
        """Register every context found under ``legacy_dir`` that the registry does not know yet.

        Contexts are deduplicated by name. A context that fails to extract is
        recorded in ``failed`` and the batch carries on.
        """
        result = MigrationResult()
        legacy_root = Path(legacy_dir).expanduser()
        if not legacy_root.is_dir():
            return result

        discovered = await asyncio.to_thread(discover_contexts_in_folder, legacy_root, max_depth)
        for ctx in discovered:
            if await self.context_exists(ctx.context_name):
                continue
            cluster_id = str(uuid.uuid4())
            try:
                config_path = await asyncio.to_thread(
                    self._vault.extract_context, ctx.source_file, ctx.context_name, cluster_id
                )
            except AppException as exc:
                logger.warning("registry.migration_failed", context=ctx.context_name, error=exc.message)
                result.failed[ctx.context_name] = exc.message
                continue

            try:
                inserted = await self._insert_unless_known(
                    self._new_row(cluster_id, ctx.context_name, ctx.context_name, config_path, None, None, None)
                )
            except Exception as exc:
                await asyncio.to_thread(self._vault.remove_credential, config_path)
                logger.warning("registry.migration_failed", context=ctx.context_name, error=str(exc))
                result.failed[ctx.context_name] = str(exc) or exc.__class__.__name__
                continue
            if not inserted:
                # Registered concurrently while the file was being extracted
                await asyncio.to_thread(self._vault.remove_credential, config_path)
                continue
            result.migrated.append(ctx.context_name)

        logger.info("registry.migration_done", migrated=len(result.migrated), failed=len(result.failed))
        return result

    async def _insert_unless_known(self, row: Cluster) -> bool:
        async with self._lock:
            async with self._session_factory() as session:
                if await self._context_exists(session, row.context_name):
                    return False
                session.add(row)
                await session.commit()
        return True

    def _new_row(
        self,
        cluster_id: str,
        name: str,
        context_name: str,
        config_path: Path,
        icon: str | None,
        description: str | None,
        tags: Sequence[str] | None,
    ) -> Cluster:
        now = self._clock()
        return Cluster(
            id=cluster_id,
            name=name,
            context_name=context_name,
            config_path=str(config_path),
            icon=icon,
            description=description,
            tags=json.dumps(list(tags or [])),
            created_at=now,
            last_accessed=now,
        )

    @staticmethod
    async def _context_exists(session: AsyncSession, context_name: str) -> bool:
        result = await session.execute(
            select(func.count()).select_from(Cluster).where(Cluster.context_name == context_name)
        )
        return bool(result.scalar_one())
