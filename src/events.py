"""
Lifecycle events and the parser that derives them from Cloud Audit Log entries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from models import ImageLocator, InstanceLocator, parse_timestamp

logger = logging.getLogger(__name__)

# Error records do not contribute to the history, only informational ones do.
PROCESSED_SEVERITIES: FrozenSet[str] = frozenset({"NOTICE", "INFO"})

ACTIVITY_LOG = "cloudaudit.googleapis.com%2Factivity"
SYSTEM_EVENT_LOG = "cloudaudit.googleapis.com%2Fsystem_event"

_API_VERSIONS = ("v1", "beta")


def _api_methods(*names: str) -> FrozenSet[str]:
    return frozenset(
        f"{version}.compute.instances.{name}"
        for version in _API_VERSIONS
        for name in names
    )


INSERT_METHODS = _api_methods("insert")
START_METHODS = _api_methods("start", "startWithEncryptionKey", "resume") | {
    "compute.instances.automaticRestart",
}
STOP_METHODS = _api_methods("stop", "suspend", "delete") | {
    "compute.instances.guestTerminate",
    "compute.instances.hostError",
    "compute.instances.preempted",
    "compute.instances.terminateOnHostMaintenance",
}
SET_PLACEMENT_METHOD = "NotifyInstanceLocation"

SUPPORTED_METHODS: FrozenSet[str] = (
    INSERT_METHODS | START_METHODS | STOP_METHODS | {SET_PLACEMENT_METHOD}
)


class LogEntryError(ValueError):
    """A supported log entry lacks data required to build an event."""


@dataclass(frozen=True)
class LifecycleEvent:
    """Base class for events that affect an instance's history."""

    timestamp: datetime
    instance_id: int
    reference: Optional[InstanceLocator]


@dataclass(frozen=True)
class InsertInstanceEvent(LifecycleEvent):
    image: Optional[ImageLocator] = None


@dataclass(frozen=True)
class StartInstanceEvent(LifecycleEvent):
    pass


@dataclass(frozen=True)
class StopInstanceEvent(LifecycleEvent):
    pass


@dataclass(frozen=True)
class SetPlacementEvent(LifecycleEvent):
    server_id: str = ""


def _boot_image(request: Dict) -> Optional[ImageLocator]:
    """Extract the source image of the boot disk from an insert request."""
    for disk in request.get("disks", []) or []:
        if not disk.get("boot"):
            continue
        source_image = (disk.get("initializeParams") or {}).get("sourceImage")
        if not source_image:
            return None
        try:
            return ImageLocator.from_string(source_image)
        except ValueError:
            logger.debug(f"Ignoring unrecognised source image: {source_image}")
            return None
    return None


def parse_log_entry(entry: Dict) -> Optional[LifecycleEvent]:
    """
    Convert a Cloud Logging LogEntry into a lifecycle event.

    Args:
        entry: LogEntry as returned by the entries:list API

    Returns:
        The matching event, or None if the entry is not relevant

    Raises:
        LogEntryError: If a relevant entry is missing required fields
    """
    payload = entry.get("protoPayload") or {}
    method = payload.get("methodName")
    if method not in SUPPORTED_METHODS:
        return None

    if entry.get("severity") not in PROCESSED_SEVERITIES:
        return None

    # Long-running operations log a first and a last record. Only the first
    # one carries the request.
    operation = entry.get("operation")
    if operation and not operation.get("first", False):
        return None

    labels = (entry.get("resource") or {}).get("labels") or {}
    try:
        instance_id = int(labels["instance_id"])
        timestamp = parse_timestamp(entry["timestamp"])
    except (KeyError, TypeError, ValueError) as e:
        raise LogEntryError(
            f"Log entry {entry.get('insertId', '?')} ({method}) is malformed: {e}"
        ) from e

    reference = None
    resource_name = payload.get("resourceName") or ""
    if labels.get("project_id") and labels.get("zone") and "/instances/" in resource_name:
        reference = InstanceLocator(
            project_id=labels["project_id"],
            zone=labels["zone"],
            name=resource_name.split("/")[-1],
        )

    if method == SET_PLACEMENT_METHOD:
        server_id = (payload.get("metadata") or {}).get("serverId")
        if not server_id:
            raise LogEntryError(
                f"Log entry {entry.get('insertId', '?')} has no serverId"
            )
        return SetPlacementEvent(
            timestamp=timestamp,
            instance_id=instance_id,
            reference=reference,
            server_id=server_id,
        )
    elif method in INSERT_METHODS:
        return InsertInstanceEvent(
            timestamp=timestamp,
            instance_id=instance_id,
            reference=reference,
            image=_boot_image(payload.get("request") or {}),
        )
    elif method in START_METHODS:
        return StartInstanceEvent(
            timestamp=timestamp, instance_id=instance_id, reference=reference
        )
    else:
        return StopInstanceEvent(
            timestamp=timestamp, instance_id=instance_id, reference=reference
        )
