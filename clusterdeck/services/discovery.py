from __future__ import annotations

import os
from pathlib import Path

import structlog

from clusterdeck.exceptions import AppException, CredentialReadError, NotFoundError
from clusterdeck.schemas.discovery import DiscoveredContext
from clusterdeck.services.vault import load_bundle

logger = structlog.get_logger(__name__)

DEFAULT_MAX_DEPTH = 8

# kubeconfigs are small; larger files are not worth parsing during a scan
MAX_BUNDLE_BYTES = 4 * 1024 * 1024

SKIPPED_DIRECTORIES = frozenset({"node_modules", "__pycache__", "venv", "site-packages", "cache", "http-cache"})


def discover_contexts_in_file(path: Path | str) -> list[DiscoveredContext]:
    """List the contexts of one kubeconfig. Parse failures raise CredentialReadError."""
    source = Path(path).expanduser()
    bundle = load_bundle(source)
    source_file = str(source)

    contexts: list[DiscoveredContext] = []
    for entry in bundle["contexts"]:
        if not isinstance(entry, dict):
            continue
        body = entry.get("context")
        name = entry.get("name")
        if not isinstance(body, dict) or not isinstance(name, str):
            continue
        namespace = body.get("namespace")
        contexts.append(
            DiscoveredContext(
                context_name=name,
                cluster_name=str(body.get("cluster") or ""),
                user_name=str(body.get("user") or ""),
                namespace=str(namespace) if namespace is not None else None,
                source_file=source_file,
            )
        )
    return contexts


def discover_contexts_in_folder(root: Path | str, max_depth: int = DEFAULT_MAX_DEPTH) -> list[DiscoveredContext]:
    """Recursively collect contexts from every kubeconfig under ``root``.

    Files directly in ``root`` are at depth 0; directories deeper than
    ``max_depth`` are not entered. Symlinks are never followed, hidden and
    known non-config directories are skipped, and files that do not parse
    as kubeconfigs are ignored.
    """
    base = Path(root).expanduser()
    if not base.exists():
        raise NotFoundError(f"Directory does not exist: {root}")
    if not base.is_dir():
        raise CredentialReadError(f"Path is not a directory: {root}")

    found: list[DiscoveredContext] = []
    _visit(base, 0, max_depth, found)
    logger.info("discovery.folder_scanned", root=str(base), contexts=len(found))
    return found


def _visit(directory: Path, depth: int, max_depth: int, found: list[DiscoveredContext]) -> None:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        logger.debug("discovery.unreadable_directory", path=str(directory), error=str(exc))
        return

    subdirectories: list[Path] = []
    for entry in entries:
        if entry.is_symlink():
            continue
        if entry.is_dir(follow_symlinks=False):
            if entry.name.startswith(".") or entry.name in SKIPPED_DIRECTORIES:
                continue
            subdirectories.append(Path(entry.path))
        elif entry.is_file(follow_symlinks=False):
            try:
                if entry.stat(follow_symlinks=False).st_size > MAX_BUNDLE_BYTES:
                    continue
                found.extend(discover_contexts_in_file(entry.path))
            except (AppException, OSError):
                continue

    if depth >= max_depth:
        return
    for subdirectory in subdirectories:
        _visit(subdirectory, depth + 1, max_depth, found)
