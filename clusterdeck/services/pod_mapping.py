"""
Pod -> PodSummary conversion shared by list endpoints and pod watch sessions.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from clusterdeck.schemas.kubernetes import PodSummary


def calculate_age(creation_timestamp: Any, now: Optional[datetime] = None) -> str:
    """
    Format the time since ``creation_timestamp`` as the largest whole unit.

    Returns strings like "5d", "3h", "10m", "30s", or "-" when the
    timestamp is missing or unusable.
    """
    if not isinstance(creation_timestamp, datetime):
        return "-"

    created = creation_timestamp
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    delta = current - created

    if delta.days > 0:
        return f"{delta.days}d"
    total_seconds = max(int(delta.total_seconds()), 0)
    if total_seconds // 3600 > 0:
        return f"{total_seconds // 3600}h"
    if total_seconds // 60 > 0:
        return f"{total_seconds // 60}m"
    return f"{total_seconds}s"


def pod_to_summary(pod: Any, now: Optional[datetime] = None) -> PodSummary:
    """Map a ``V1Pod`` onto the summary the GUI renders."""
    metadata = pod.metadata
    spec = getattr(pod, "spec", None)
    status = getattr(pod, "status", None)

    container_statuses = (getattr(status, "container_statuses", None) or []) if status else []
    restarts = sum(cs.restart_count or 0 for cs in container_statuses)

    owner_refs = getattr(metadata, "owner_references", None) or []
    controlled_by = f"{owner_refs[0].kind}/{owner_refs[0].name}" if owner_refs else "-"

    created = getattr(metadata, "creation_timestamp", None)

    return PodSummary(
        name=metadata.name or "",
        namespace=metadata.namespace or "",
        status=(getattr(status, "phase", None) or "") if status else "",
        age=calculate_age(created, now) if created else "",
        creation_timestamp=created.isoformat() if isinstance(created, datetime) else None,
        containers=len(container_statuses),
        restarts=restarts,
        node=(getattr(spec, "node_name", None) or "") if spec else "",
        qos=(getattr(status, "qos_class", None) or "") if status else "",
        controlled_by=controlled_by,
        labels=dict(metadata.labels) if metadata.labels else {},
        pod_ip=(getattr(status, "pod_ip", None) or "-") if status else "-",
        host_ip=(getattr(status, "host_ip", None) or "-") if status else "-",
        service_account=(getattr(spec, "service_account_name", None) or "default") if spec else "default",
    )
