"""
Reconstruction of instance histories from lifecycle events.

Events are replayed in reverse chronological order, newest first: the
current state of the fleet is known (or assumed) and each older event
explains how the instance got there.

NB. Instance IDs stay unique for the lifetime of an instance while instance
names can be reused. The instance ID is therefore the only key used here,
even though the reference is what users recognise.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from events import (
    InsertInstanceEvent,
    LifecycleEvent,
    SetPlacementEvent,
    StartInstanceEvent,
    StopInstanceEvent,
)
from models import (
    HistoryIssue,
    ImageLocator,
    InstanceHistory,
    InstanceLocator,
    InstanceSetHistory,
    IssueKind,
    SoleTenantPlacement,
    Tenancy,
)

logger = logging.getLogger(__name__)


class HistoryError(Exception):
    """Base class for per-instance replay errors."""

    kind: IssueKind

    def __init__(self, instance_id: int, message: str, timestamp: Optional[datetime] = None):
        super().__init__(message)
        self.instance_id = instance_id
        self.timestamp = timestamp

    def to_issue(self) -> HistoryIssue:
        return HistoryIssue(
            instance_id=self.instance_id,
            kind=self.kind,
            message=str(self),
            timestamp=self.timestamp,
        )


class OrderingViolation(HistoryError):
    """An event was not strictly older than the previously accepted one."""

    kind = IssueKind.ORDERING_VIOLATION


class InconsistentPlacement(HistoryError):
    """A placement event is not older than the boundary it must end at."""

    kind = IssueKind.INCONSISTENT_PLACEMENT


class TenancyConflict(HistoryError):
    """A fleet instance received a sole-tenant placement."""

    kind = IssueKind.TENANCY_CONFLICT


class HistoryInvariantError(RuntimeError):
    """A finalized history violates a post-condition."""


class InstanceHistoryBuilder:
    """Reconstructs the history of one instance, newest event first."""

    def __init__(
        self,
        instance_id: int,
        reference: Optional[InstanceLocator],
        image: Optional[ImageLocator],
        last_stopped_on: Optional[datetime],
        tenancy: Tenancy,
    ):
        if instance_id == 0:
            raise ValueError("Instance ID cannot be 0")

        self.instance_id = instance_id
        self.reference = reference
        self.image = image
        self.tenancy = tenancy
        self.last_stopped_on = last_stopped_on
        self.is_defunct = False

        # Earliest placement first.
        self._placements: List[SoleTenantPlacement] = []

        # None means "infinite future".
        self._watermark: Optional[datetime] = None
        self.events_accepted = 0

    @classmethod
    def for_existing_instance(
        cls,
        instance_id: int,
        reference: InstanceLocator,
        image: Optional[ImageLocator],
        last_seen: datetime,
        tenancy: Tenancy,
    ) -> "InstanceHistoryBuilder":
        """
        Create a builder for an instance that currently exists.

        Whether the instance is running or stopped does not matter; it is
        treated as if it had been stopped when it was last seen.
        """
        return cls(instance_id, reference, image, last_seen, tenancy)

    @classmethod
    def for_deleted_instance(
        cls, instance_id: int, reference: Optional[InstanceLocator] = None
    ) -> "InstanceHistoryBuilder":
        """Create a builder for an instance that is assumed not to exist anymore."""
        return cls(instance_id, reference, None, None, Tenancy.UNKNOWN)

    @property
    def placements(self) -> List[SoleTenantPlacement]:
        return list(self._placements)

    @property
    def watermark(self) -> Optional[datetime]:
        return self._watermark

    @property
    def is_more_information_needed(self) -> bool:
        if self.tenancy == Tenancy.UNKNOWN:
            return True
        elif self.tenancy == Tenancy.SOLE_TENANT:
            # Licensing of sole-tenant VMs depends on the image.
            return self.image is None
        else:
            return False

    def _advance(self, date: datetime) -> None:
        if self._watermark is not None and date >= self._watermark:
            raise OrderingViolation(
                self.instance_id,
                f"Event for instance {self.instance_id} at {date.isoformat()} is not "
                f"older than previous event at {self._watermark.isoformat()}",
                timestamp=date,
            )
        self._watermark = date
        self.events_accepted += 1

    def _add_placement(self, placement: SoleTenantPlacement) -> None:
        if self._placements:
            subsequent = self._placements[0]
            if (
                placement.end == subsequent.start
                and placement.server_id == subsequent.server_id
            ):
                # Right-adjacent on the same node -> merge.
                placement = SoleTenantPlacement(
                    placement.server_id, placement.start, subsequent.end
                )
                self._placements.pop(0)

        self._placements.insert(0, placement)

    #
    # Lifecycle events. Mind that history is processed in reverse, so any
    # state set here is the state before the event happened.
    #

    def on_insert(self, date: datetime, image: Optional[ImageLocator] = None) -> None:
        self._advance(date)

        if self.tenancy == Tenancy.UNKNOWN:
            # No placement was seen before reaching the creation of the
            # instance, so it never ran on a sole-tenant node.
            self.tenancy = Tenancy.FLEET

        if self.image is None:
            self.image = image

    def on_start(self, date: datetime) -> None:
        self._advance(date)

    def on_stop(self, date: datetime) -> None:
        self._advance(date)

        # Older stops overwrite newer ones.
        self.last_stopped_on = date

    def on_set_placement(self, server_id: str, date: datetime) -> None:
        self._advance(date)

        # Fleet VMs never receive this event, and tenancy only ever leaves
        # UNKNOWN.
        if self.tenancy == Tenancy.FLEET:
            raise TenancyConflict(
                self.instance_id,
                f"Instance {self.instance_id} is a fleet instance but was placed "
                f"on {server_id} at {date.isoformat()}",
                timestamp=date,
            )
        self.tenancy = Tenancy.SOLE_TENANT

        if not self._placements:
            if self.last_stopped_on is None:
                logger.debug(
                    f"Instance {self.instance_id} was placed, but never stopped, "
                    "and yet is not running anymore. Flagging as defunct."
                )
                self.is_defunct = True
                return
            placed_until = self.last_stopped_on
        elif self.last_stopped_on is not None:
            placed_until = min(self.last_stopped_on, self._placements[0].start)
        else:
            placed_until = self._placements[0].start

        if date >= placed_until:
            raise InconsistentPlacement(
                self.instance_id,
                f"Instance {self.instance_id} was placed on {server_id} at "
                f"{date.isoformat()}, which is not before {placed_until.isoformat()}",
                timestamp=date,
            )

        self._add_placement(SoleTenantPlacement(server_id, date, placed_until))

    def finalize(self) -> InstanceHistory:
        return InstanceHistory(
            instance_id=self.instance_id,
            reference=self.reference,
            image=self.image,
            tenancy=self.tenancy,
            placements=tuple(self._placements),
            last_stopped_on=self.last_stopped_on,
            is_defunct=self.is_defunct,
        )


class InstanceSetHistoryBuilder:
    """
    Reconstructs the history of a fleet of instances.

    Call order matters: seed all instances that currently exist with
    seed_existing() before dispatching any event. Seeding replaces whatever
    a previous replay reconstructed for the same instance.
    """

    def __init__(self):
        self._builders: Dict[int, InstanceHistoryBuilder] = {}
        self._faulted: Dict[int, HistoryIssue] = {}
        # Still replayed, but reported as incomplete.
        self._mismatched: Set[int] = set()
        self._issues: List[HistoryIssue] = []
        self._finalized = False

    def _ensure_open(self) -> None:
        if self._finalized:
            raise RuntimeError("History has already been finalized")

    @property
    def instance_ids(self) -> List[int]:
        return list(self._builders.keys())

    @property
    def issues(self) -> List[HistoryIssue]:
        return list(self._issues)

    def _record(self, issue: HistoryIssue) -> HistoryIssue:
        self._issues.append(issue)
        return issue

    def _lookup(
        self, instance_id: int, reference: Optional[InstanceLocator]
    ) -> Tuple[InstanceHistoryBuilder, Optional[HistoryIssue]]:
        builder = self._builders.get(instance_id)
        if builder is None:
            builder = InstanceHistoryBuilder.for_deleted_instance(instance_id, reference)
            self._builders[instance_id] = builder
            return builder, None

        if builder.reference is None:
            builder.reference = reference
        elif reference is not None and reference != builder.reference:
            message = (
                f"Instance {instance_id} is known as {builder.reference} "
                f"but an event refers to it as {reference}"
            )
            logger.warning(message)
            self._mismatched.add(instance_id)
            return builder, self._record(
                HistoryIssue(
                    instance_id=instance_id,
                    kind=IssueKind.REFERENCE_MISMATCH,
                    message=message,
                )
            )

        return builder, None

    def get_or_create(
        self, instance_id: int, reference: Optional[InstanceLocator]
    ) -> InstanceHistoryBuilder:
        """
        Look up the builder for an instance, creating one if necessary.

        Instances that have not been seeded are assumed to be deleted. A
        reference that differs from the recorded one is reported as an
        issue; the recorded reference is kept, events are still applied and
        the instance ends up in the incomplete partition.
        """
        self._ensure_open()
        builder, _ = self._lookup(instance_id, reference)
        return builder

    def seed_existing(
        self,
        instance_id: int,
        reference: InstanceLocator,
        image: Optional[ImageLocator],
        last_seen: datetime,
        tenancy: Tenancy,
    ) -> InstanceHistoryBuilder:
        """
        Register an instance that currently exists.

        Must be called before any event is dispatched for the instance:
        an existing builder is replaced, discarding its replayed state.
        """
        self._ensure_open()

        previous = self._builders.get(instance_id)
        if previous is not None and previous.events_accepted:
            logger.warning(
                f"Instance {instance_id} seeded after {previous.events_accepted} "
                "event(s) were replayed; discarding reconstructed state"
            )
        self._faulted.pop(instance_id, None)
        self._mismatched.discard(instance_id)

        builder = InstanceHistoryBuilder.for_existing_instance(
            instance_id, reference, image, last_seen, tenancy
        )
        self._builders[instance_id] = builder
        return builder

    def dispatch(self, event: LifecycleEvent) -> Optional[HistoryIssue]:
        """
        Apply an event to the history of the instance it refers to.

        Returns:
            The issue the event caused, or None
        """
        self._ensure_open()

        builder, mismatch = self._lookup(event.instance_id, event.reference)

        if event.instance_id in self._faulted:
            logger.debug(
                f"Ignoring event for instance {event.instance_id}, history is faulted"
            )
            return mismatch

        try:
            if isinstance(event, SetPlacementEvent):
                builder.on_set_placement(event.server_id, event.timestamp)
            elif isinstance(event, InsertInstanceEvent):
                builder.on_insert(event.timestamp, event.image)
            elif isinstance(event, StartInstanceEvent):
                builder.on_start(event.timestamp)
            elif isinstance(event, StopInstanceEvent):
                builder.on_stop(event.timestamp)
            else:
                raise TypeError(f"Unsupported event type: {type(event).__name__}")
        except HistoryError as e:
            logger.warning(str(e))
            issue = self._record(e.to_issue())
            self._faulted[event.instance_id] = issue
            return issue

        return mismatch

    def dispatch_all(self, events: Iterable[LifecycleEvent]) -> List[HistoryIssue]:
        issues = []
        for event in events:
            issue = self.dispatch(event)
            if issue is not None:
                issues.append(issue)
        return issues

    def finalize(self) -> InstanceSetHistory:
        """
        Build the histories of all instances.

        Raises:
            HistoryInvariantError: If a complete history has unknown tenancy
        """
        self._ensure_open()

        complete: List[InstanceHistory] = []
        incomplete: List[InstanceHistory] = []
        for instance_id, builder in self._builders.items():
            history = builder.finalize()
            if (
                instance_id in self._faulted
                or instance_id in self._mismatched
                or builder.is_more_information_needed
            ):
                incomplete.append(history)
            else:
                complete.append(history)

        for history in complete:
            if history.tenancy == Tenancy.UNKNOWN:
                raise HistoryInvariantError(
                    f"Instance {history.instance_id} is complete but its tenancy is unknown"
                )

        result = InstanceSetHistory(
            complete=tuple(complete),
            incomplete=tuple(incomplete),
            issues=tuple(self._issues),
        )

        self._builders = {}
        self._faulted = {}
        self._mismatched = set()
        self._finalized = True
        return result
