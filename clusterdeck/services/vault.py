"""
Credential vault: one owner-only directory holding an isolated kubeconfig per cluster.

Every path that is read from or written into the vault goes through
``CredentialVault.validate_path``, which canonicalizes it (symlinks and ``..``
resolved) and rejects anything that does not land strictly inside the vault root.
External bundles are only ever read; the vault keeps its own single-context copy.
"""

from __future__ import annotations

import copy
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

import structlog
import yaml

from clusterdeck.exceptions import (
    ContextClusterNotFoundError,
    ContextNotFoundError,
    ContextUserNotFoundError,
    CredentialFileNotFoundError,
    CredentialReadError,
    PathTraversalError,
    PermissionHardeningError,
)

logger = structlog.get_logger(__name__)

CREDENTIAL_EXTENSION = ".yaml"

# kubeconfig keys that may hold paths relative to the bundle's own directory
_CLUSTER_FILE_KEYS = ("certificate-authority",)
_USER_FILE_KEYS = ("client-certificate", "client-key", "tokenFile")


def set_owner_only_permissions(path: Path, is_dir: bool) -> None:
    """chmod to 0700/0600. Permission-denied is tolerated; any other failure propagates."""
    mode = stat.S_IRWXU if is_dir else stat.S_IRUSR | stat.S_IWUSR
    try:
        os.chmod(path, mode)
    except PermissionError as exc:
        logger.debug("vault.chmod_denied", path=str(path), error=str(exc))
    except OSError as exc:
        raise PermissionHardeningError(
            f"Failed to restrict permissions on {path}: {exc}", details={"path": str(path)}
        ) from exc


def load_bundle(path: Path) -> dict[str, Any]:
    """Read and parse a kubeconfig document.

    Raises CredentialFileNotFoundError when the file is missing and
    CredentialReadError when it cannot be read or is not a kubeconfig.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise CredentialFileNotFoundError(f"Credential file not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise CredentialReadError(f"Failed to read kubeconfig {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CredentialReadError(f"Failed to parse kubeconfig {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise CredentialReadError(f"{path} is not a kubeconfig document")
    kind = data.get("kind")
    if kind is not None and kind != "Config":
        raise CredentialReadError(f"{path} has kind '{kind}', expected 'Config'")
    for section in ("clusters", "contexts", "users"):
        entries = data.get(section)
        if entries is None:
            data[section] = []
        elif not isinstance(entries, list):
            raise CredentialReadError(f"{path}: '{section}' must be a list")
    return data


def find_named(entries: list[Any], name: str | None) -> dict[str, Any] | None:
    if name is None:
        return None
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


def _absolutize(section: Any, keys: tuple[str, ...], base_dir: Path) -> None:
    if not isinstance(section, dict):
        return
    for key in keys:
        value = section.get(key)
        if isinstance(value, str) and value and not os.path.isabs(value):
            section[key] = str((base_dir / value).resolve())


class CredentialVault:
    """Owns the vault root and every isolated credential file inside it."""

    def __init__(self, root: Path | str, extension: str = CREDENTIAL_EXTENSION) -> None:
        self._configured_root = Path(root).expanduser()
        self._extension = extension
        self._root: Path | None = None

    @property
    def root(self) -> Path:
        if self._root is None:
            return self.ensure_root()
        return self._root

    def ensure_root(self) -> Path:
        """Create the vault directory (owner-only) and pin its canonical path."""
        self._configured_root.mkdir(mode=stat.S_IRWXU, parents=True, exist_ok=True)
        set_owner_only_permissions(self._configured_root, is_dir=True)
        self._root = self._configured_root.resolve(strict=True)
        logger.debug("vault.root_ready", root=str(self._root))
        return self._root

    def validate_path(self, candidate: Path | str) -> Path:
        """Canonicalize ``candidate`` and require it to sit strictly inside the vault root.

        A file that does not exist yet is validated through its canonical parent.
        """
        root = self.root
        path = Path(candidate).expanduser()
        if not path.is_absolute():
            path = root / path
        try:
            canonical = path.resolve(strict=True)
        except FileNotFoundError:
            try:
                parent = path.parent.resolve(strict=True)
            except FileNotFoundError as exc:
                raise CredentialFileNotFoundError(
                    f"Parent directory does not exist: {path.parent}"
                ) from exc
            canonical = parent / path.name
        except RuntimeError as exc:
            # symlink loop
            raise PathTraversalError(f"Cannot canonicalize {path}: {exc}") from exc

        if canonical == root or not canonical.is_relative_to(root):
            logger.warning("vault.path_rejected", candidate=str(candidate), resolved=str(canonical))
            raise PathTraversalError(
                f"Path escapes the credential vault: {candidate}",
                details={"path": str(candidate)},
            )
        return canonical

    def destination_for(self, cluster_id: str) -> Path:
        return self.validate_path(self.root / f"{cluster_id}{self._extension}")

    def import_source(self, path: Path | str) -> Path:
        """Admit an external bundle for reading: it must exist, be a regular file and be readable."""
        source = Path(path).expanduser()
        try:
            canonical = source.resolve(strict=True)
        except FileNotFoundError as exc:
            raise CredentialFileNotFoundError(f"Source file does not exist: {path}") from exc
        except (OSError, RuntimeError) as exc:
            raise CredentialReadError(f"Cannot resolve source file {path}: {exc}") from exc

        if not canonical.is_file():
            raise CredentialReadError(f"Source is not a regular file: {path}")
        if not os.access(canonical, os.R_OK):
            raise CredentialReadError(f"Source file is not readable: {path}")
        return canonical

    def extract_context(self, source_bundle: Path | str, context_name: str, new_cluster_id: str) -> Path:
        """Write a single-context kubeconfig for ``context_name`` to ``<root>/<new_cluster_id>.yaml``."""
        source = self.import_source(source_bundle)
        bundle = load_bundle(source)

        context_entry = find_named(bundle["contexts"], context_name)
        if context_entry is None:
            raise ContextNotFoundError(f"Context '{context_name}' not found")
        body = context_entry.get("context")
        if not isinstance(body, dict):
            raise CredentialReadError(f"Context '{context_name}' has no context field")

        cluster_name = body.get("cluster")
        cluster_entry = find_named(bundle["clusters"], cluster_name)
        if cluster_entry is None:
            raise ContextClusterNotFoundError(f"Cluster '{cluster_name}' not found")

        user_name = body.get("user")
        if not user_name:
            raise ContextUserNotFoundError(f"Context '{context_name}' has no user")
        user_entry = find_named(bundle["users"], user_name)
        if user_entry is None:
            raise ContextUserNotFoundError(f"User '{user_name}' not found")

        cluster_entry = copy.deepcopy(cluster_entry)
        user_entry = copy.deepcopy(user_entry)
        _absolutize(cluster_entry.get("cluster"), _CLUSTER_FILE_KEYS, source.parent)
        _absolutize(user_entry.get("user"), _USER_FILE_KEYS, source.parent)

        document = {
            "apiVersion": "v1",
            "kind": "Config",
            "preferences": {},
            "clusters": [cluster_entry],
            "users": [user_entry],
            "contexts": [copy.deepcopy(context_entry)],
            "current-context": context_name,
        }
        destination = self.destination_for(new_cluster_id)
        self._write_atomic(destination, yaml.safe_dump(document, sort_keys=False, default_flow_style=False))
        logger.info(
            "vault.context_extracted",
            context=context_name,
            cluster_id=new_cluster_id,
            source=str(source),
            destination=str(destination),
        )
        return destination

    def read_credential(self, path: Path | str) -> dict[str, Any]:
        return load_bundle(self.validate_path(path))

    def remove_credential(self, path: Path | str) -> bool:
        """Delete a vault file. Returns False when it was already gone."""
        target = self.validate_path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info("vault.credential_removed", path=str(target))
        return True

    def _write_atomic(self, destination: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            set_owner_only_permissions(tmp_path, is_dir=False)
            os.replace(tmp_path, destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
