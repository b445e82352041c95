"""
Data models for the sole-tenant placement history analyzer.
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

_IMAGE_PATTERN = re.compile(r"^projects/(?P<project>[^/]+)/global/images/(?P<name>.+)$")
_TIMESTAMP_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}:\d{2})$"
)


class Tenancy(enum.IntEnum):
    """Hosting model of an instance."""

    UNKNOWN = 0
    FLEET = 1
    SOLE_TENANT = 2


class IssueKind(str, enum.Enum):
    """Kinds of per-instance problems detected during replay."""

    ORDERING_VIOLATION = "ordering_violation"
    REFERENCE_MISMATCH = "reference_mismatch"
    INCONSISTENT_PLACEMENT = "inconsistent_placement"
    TENANCY_CONFLICT = "tenancy_conflict"


class OperatingSystemType(enum.Flag):
    UNKNOWN = 1
    WINDOWS = 2
    LINUX = 4


class LicenseType(enum.Flag):
    UNKNOWN = 1
    BYOL = 2
    SPLA = 4


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp as emitted by Google APIs.

    Cloud Logging uses nanosecond precision, which datetime cannot hold, so
    the fraction is truncated to microseconds. Two events of the same
    instance that differ by less than a microsecond therefore get equal
    timestamps, and replaying the second one is an ordering violation.

    Args:
        value: Timestamp such as '2020-05-11T01:26:38.791926381Z'

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the value is not an RFC 3339 timestamp
    """
    match = _TIMESTAMP_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid timestamp: {value!r}")

    fraction = (match.group("fraction") or "0")[:6].ljust(6, "0")
    offset = match.group("offset")
    if offset == "Z":
        offset = "+00:00"

    parsed = datetime.fromisoformat(f"{match.group('base')}.{fraction}{offset}")
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an RFC 3339 UTC string ('Z' suffix)."""
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class InstanceLocator:
    """Human-facing reference to a VM instance. Names can be reused."""

    project_id: str
    zone: str
    name: str

    def __str__(self) -> str:
        return f"projects/{self.project_id}/zones/{self.zone}/instances/{self.name}"


@dataclass(frozen=True)
class ImageLocator:
    """Reference to a (possibly deleted) Compute Engine image."""

    project_id: str
    name: str  # image name, or family/<family> for family references

    def __str__(self) -> str:
        return f"projects/{self.project_id}/global/images/{self.name}"

    @classmethod
    def from_string(cls, value: str) -> "ImageLocator":
        """
        Parse an image reference.

        Accepts 'projects/<p>/global/images/<name>' as well as full API URLs
        such as 'https://www.googleapis.com/compute/v1/projects/<p>/...'.

        Raises:
            ValueError: If the value is not an image reference
        """
        path = value or ""
        marker = path.find("projects/")
        if marker > 0:
            path = path[marker:]

        match = _IMAGE_PATTERN.match(path)
        if not match:
            raise ValueError(f"Not a valid image reference: {value!r}")
        return cls(project_id=match.group("project"), name=match.group("name"))


@dataclass(frozen=True)
class SoleTenantPlacement:
    """Interval [start, end) during which an instance ran on one node."""

    server_id: str
    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True)
class InstanceHistory:
    """Finalized history of one instance."""

    instance_id: int
    reference: Optional[InstanceLocator]
    image: Optional[ImageLocator]
    tenancy: Tenancy
    placements: Tuple[SoleTenantPlacement, ...] = ()
    last_stopped_on: Optional[datetime] = None
    is_defunct: bool = False


@dataclass(frozen=True)
class HistoryIssue:
    """A problem detected while replaying events for one instance."""

    instance_id: int
    kind: IssueKind
    message: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InstanceSetHistory:
    """Finalized history of a fleet, partitioned by completeness."""

    complete: Tuple[InstanceHistory, ...] = ()
    incomplete: Tuple[InstanceHistory, ...] = ()
    issues: Tuple[HistoryIssue, ...] = field(default=(), compare=False)

    @property
    def instances(self) -> Tuple[InstanceHistory, ...]:
        return self.complete + self.incomplete


@dataclass(frozen=True)
class LicenseAnnotation:
    """Operating system and license classification of an image."""

    operating_system: OperatingSystemType
    license_type: LicenseType


@dataclass(frozen=True)
class NodePlacement:
    """Placement of one instance, seen from the node it ran on."""

    instance_id: int
    start: datetime
    end: datetime


@dataclass(frozen=True)
class NodeHistory:
    """Usage history of one sole-tenant node (server)."""

    server_id: str
    placements: Tuple[NodePlacement, ...]

    @property
    def first_use(self) -> datetime:
        return min(p.start for p in self.placements)

    @property
    def last_use(self) -> datetime:
        return max(p.end for p in self.placements)

    @property
    def instance_ids(self) -> Tuple[int, ...]:
        return tuple(sorted({p.instance_id for p in self.placements}))

    @property
    def peak_concurrent_placements(self) -> int:
        """Largest number of instances that ran on the node at the same time."""
        # Ends sort before starts at the same instant because end is exclusive.
        boundaries = sorted(
            [(p.start, 1) for p in self.placements]
            + [(p.end, -1) for p in self.placements]
        )
        peak = current = 0
        for _, delta in boundaries:
            current += delta
            peak = max(peak, current)
        return peak


@dataclass(frozen=True)
class NodeSetHistory:
    """Sole-tenant nodes used by a fleet, ordered by server ID."""

    nodes: Tuple[NodeHistory, ...] = ()

    @classmethod
    def from_instances(cls, instances: Iterable[InstanceHistory]) -> "NodeSetHistory":
        """Regroup the placements of the given instances by node."""
        by_server: Dict[str, List[NodePlacement]] = {}
        for instance in instances:
            for placement in instance.placements:
                by_server.setdefault(placement.server_id, []).append(
                    NodePlacement(instance.instance_id, placement.start, placement.end)
                )

        return cls(
            nodes=tuple(
                NodeHistory(server_id, tuple(sorted(placements, key=lambda p: p.start)))
                for server_id, placements in sorted(by_server.items())
            )
        )

    def get_node(self, server_id: str) -> Optional[NodeHistory]:
        for node in self.nodes:
            if node.server_id == server_id:
                return node
        return None
