"""
Fleet history analysis for Compute Engine sole-tenant license reporting.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from archive import AnnotatedInstanceSetHistory
from clients import ComputeRestClient, LoggingRestClient, build_audit_log_filter
from events import LifecycleEvent, LogEntryError, parse_log_entry
from history import InstanceSetHistoryBuilder
from models import (
    ImageLocator,
    InstanceLocator,
    LicenseType,
    NodeSetHistory,
    OperatingSystemType,
    Tenancy,
    format_timestamp,
)

logger = logging.getLogger(__name__)

WINDOWS_IMAGE_PROJECT = "windows-cloud"
PREMIUM_LINUX_PROJECTS = {"rhel-cloud", "rhel-sap-cloud", "suse-cloud", "suse-sap-cloud"}


def _license_project(license_url: str) -> str:
    parts = license_url.split("/")
    if "projects" in parts:
        index = parts.index("projects")
        if index + 1 < len(parts):
            return parts[index + 1]
    return ""


def annotate_image(
    image: ImageLocator, image_data: Optional[Dict]
) -> Tuple[OperatingSystemType, LicenseType]:
    """
    Derive operating system and license type of an image.

    Args:
        image: Image reference
        image_data: Image resource, or None if the image has been deleted

    Returns:
        Tuple of (operating_system, license_type)
    """
    if image_data is None:
        # Deleted images can still be recognised by their project.
        if image.project_id == WINDOWS_IMAGE_PROJECT:
            return OperatingSystemType.WINDOWS, LicenseType.SPLA
        return OperatingSystemType.UNKNOWN, LicenseType.UNKNOWN

    license_projects = {_license_project(url) for url in image_data.get("licenses", [])}
    features = {f.get("type") for f in image_data.get("guestOsFeatures", [])}

    if WINDOWS_IMAGE_PROJECT in license_projects:
        return OperatingSystemType.WINDOWS, LicenseType.SPLA
    elif "WINDOWS" in features:
        return OperatingSystemType.WINDOWS, LicenseType.BYOL
    elif license_projects & PREMIUM_LINUX_PROJECTS:
        return OperatingSystemType.LINUX, LicenseType.SPLA
    else:
        return OperatingSystemType.LINUX, LicenseType.BYOL


class FleetHistoryAnalyzer:
    """Reconstructs and reports the placement history of a fleet."""

    def __init__(
        self,
        project_ids: List[str],
        days: int = 30,
        output: Optional[str] = None,
        page_size: int = 1000,
        annotate: bool = True,
        now: Optional[datetime] = None,
    ):
        """
        Initialize the analyzer.

        Args:
            project_ids: GCP projects to analyze
            days: Size of the analysis window, ending now
            output: Path of the archive to write (default: timestamped file)
            page_size: Log entries per page
            annotate: Whether to look up license information of images
            now: End of the analysis window (default: current time)
        """
        self.project_ids = project_ids
        self.output = output
        self.page_size = page_size
        self.annotate = annotate

        self.end_time = now or datetime.now(timezone.utc)
        self.start_time = self.end_time - timedelta(days=days)

        self._compute_clients: Dict[str, ComputeRestClient] = {}
        self._logging_clients: Dict[str, LoggingRestClient] = {}

        self.stats = {
            "total": 0,
            "complete": 0,
            "incomplete": 0,
            "sole_tenant": 0,
            "fleet": 0,
            "defunct": 0,
            "nodes": 0,
            "events": 0,
            "skipped_entries": 0,
            "issues": 0,
            "failed": 0,
        }

        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.nodes = NodeSetHistory()

    def _compute(self, project_id: str) -> ComputeRestClient:
        if project_id not in self._compute_clients:
            self._compute_clients[project_id] = ComputeRestClient(project_id=project_id)
        return self._compute_clients[project_id]

    def _logging(self, project_id: str) -> LoggingRestClient:
        if project_id not in self._logging_clients:
            self._logging_clients[project_id] = LoggingRestClient(project_id=project_id)
        return self._logging_clients[project_id]

    def _boot_image(self, project_id: str, instance: Dict) -> Optional[ImageLocator]:
        for disk in instance.get("disks", []):
            if not disk.get("boot") or not disk.get("source"):
                continue
            try:
                source_image = self._compute(project_id).get_disk(disk["source"]).get(
                    "sourceImage"
                )
                return ImageLocator.from_string(source_image) if source_image else None
            except (RuntimeError, ValueError) as e:
                logger.warning(
                    f"Cannot determine image of {instance.get('name')}: {e}"
                )
                return None
        return None

    def seed(self, builder: InstanceSetHistoryBuilder) -> int:
        """
        Register all currently existing instances.

        Returns:
            Number of instances seeded
        """
        seeded = 0
        for project_id in self.project_ids:
            logger.info(f"Scanning instances in project: {project_id}")
            try:
                instances = self._compute(project_id).list_instances()
            except RuntimeError as e:
                logger.error(f"Failed to list instances of {project_id}: {e}")
                self.stats["failed"] += 1
                continue

            for instance in instances:
                tenancy = (
                    Tenancy.SOLE_TENANT
                    if (instance.get("scheduling") or {}).get("nodeAffinities")
                    else Tenancy.FLEET
                )
                builder.seed_existing(
                    instance_id=int(instance["id"]),
                    reference=InstanceLocator(
                        project_id=project_id,
                        zone=instance["zone"].split("/")[-1],
                        name=instance["name"],
                    ),
                    image=self._boot_image(project_id, instance),
                    last_seen=self.end_time,
                    tenancy=tenancy,
                )
                seeded += 1

            logger.info(f"Found {len(instances)} instance(s) in {project_id}")

        return seeded

    def fetch_events(self) -> List[LifecycleEvent]:
        """
        Read lifecycle events of all projects for the analysis window.

        Returns:
            Events ordered by timestamp, newest first
        """
        log_filter = build_audit_log_filter(self.start_time, self.end_time)
        events: List[LifecycleEvent] = []

        for project_id in self.project_ids:
            logger.info(f"Reading audit logs of project: {project_id}")
            count = 0
            try:
                for entry in self._logging(project_id).list_log_entries(
                    log_filter, page_size=self.page_size
                ):
                    try:
                        event = parse_log_entry(entry)
                    except LogEntryError as e:
                        logger.warning(f"Skipping log entry: {e}")
                        self.stats["skipped_entries"] += 1
                        continue
                    if event is not None:
                        events.append(event)
                        count += 1
            except RuntimeError as e:
                logger.error(f"Failed to read audit logs of {project_id}: {e}")
                self.stats["failed"] += 1
                continue

            logger.info(f"Found {count} lifecycle event(s) in {project_id}")

        # Pages of different projects interleave; replay needs a total order.
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events

    def annotate_licenses(self, archive: AnnotatedInstanceSetHistory) -> None:
        """Add license annotations for every image referenced by the history."""
        client = self._compute(self.project_ids[0])
        for image in archive.images:
            try:
                image_data = client.get_image(image)
            except RuntimeError as e:
                logger.warning(f"Cannot look up image {image}: {e}")
                continue
            operating_system, license_type = annotate_image(image, image_data)
            logger.debug(f"Image {image}: {operating_system.name}, {license_type.name}")
            archive.add_license_annotation(image, operating_system, license_type)

    def run(self) -> Dict:
        """
        Execute the analysis.

        Returns:
            Statistics dictionary
        """
        self.run_start_time = time.time()

        logger.info("=" * 70)
        logger.info("Sole-Tenant Placement History Analysis")
        logger.info("=" * 70)
        logger.info(f"Projects: {', '.join(self.project_ids)}")
        logger.info(f"Window start: {format_timestamp(self.start_time)}")
        logger.info(f"Window end: {format_timestamp(self.end_time)}")
        logger.info(f"License annotation: {self.annotate}")
        logger.info("=" * 70)

        builder = InstanceSetHistoryBuilder()

        # Seeding must precede replay, otherwise it discards replayed state.
        self.seed(builder)

        events = self.fetch_events()
        self.stats["events"] = len(events)
        builder.dispatch_all(events)

        history = builder.finalize()

        self.stats["total"] = len(history.instances)
        self.stats["complete"] = len(history.complete)
        self.stats["incomplete"] = len(history.incomplete)
        self.stats["sole_tenant"] = sum(
            1 for i in history.instances if i.tenancy == Tenancy.SOLE_TENANT
        )
        self.stats["fleet"] = sum(1 for i in history.instances if i.tenancy == Tenancy.FLEET)
        self.stats["defunct"] = sum(1 for i in history.instances if i.is_defunct)
        self.nodes = NodeSetHistory.from_instances(history.instances)
        self.stats["nodes"] = len(self.nodes.nodes)
        self.stats["issues"] = len(history.issues)

        archive = AnnotatedInstanceSetHistory.from_instance_set_history(history)
        if self.annotate and self.project_ids:
            self.annotate_licenses(archive)

        self.run_end_time = time.time()
        self._print_report(archive)
        self._export_archive(archive)

        return self.stats

    def _print_report(self, archive: AnnotatedInstanceSetHistory) -> None:
        """Print placement and license report."""
        history = archive.history

        logger.info("")
        logger.info("=" * 70)
        logger.info("PLACEMENT HISTORY REPORT")
        logger.info("=" * 70)

        logger.info("")
        logger.info("STATISTICS")
        logger.info("-" * 40)
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")
        logger.info(
            f"{'duration':20s}: {self.run_end_time - self.run_start_time:.1f}s"
        )

        sole_tenant = [i for i in history.complete if i.tenancy == Tenancy.SOLE_TENANT]
        if sole_tenant:
            logger.info("")
            logger.info("SOLE-TENANT PLACEMENTS")
            logger.info("-" * 40)
            logger.info(f"{'Instance':<25} {'Node':<34} {'From':<22} {'To'}")
            logger.info("-" * 70)
            for instance in sole_tenant:
                name = instance.reference.name if instance.reference else str(instance.instance_id)
                for p in instance.placements:
                    logger.info(
                        f"{name:<25} {p.server_id:<34} {format_timestamp(p.start):<22} {format_timestamp(p.end)}"
                    )

        if self.nodes.nodes:
            logger.info("")
            logger.info("SOLE-TENANT NODES")
            logger.info("-" * 40)
            logger.info(f"{'Node':<34} {'First use':<22} {'Last use':<22} {'Peak':<6} {'Instances'}")
            logger.info("-" * 70)
            for node in self.nodes.nodes:
                logger.info(
                    f"{node.server_id:<34} {format_timestamp(node.first_use):<22} "
                    f"{format_timestamp(node.last_use):<22} "
                    f"{node.peak_concurrent_placements:<6} {len(node.instance_ids)}"
                )

        if history.incomplete:
            logger.info("")
            logger.info("INCOMPLETE HISTORIES")
            logger.info("-" * 40)
            logger.info(f"{'Instance ID':<22} {'Tenancy':<12} {'Image'}")
            logger.info("-" * 70)
            for instance in history.incomplete:
                logger.info(
                    f"{instance.instance_id:<22} {instance.tenancy.name:<12} {instance.image or 'N/A'}"
                )

        if history.issues:
            logger.info("")
            logger.info("ISSUES")
            logger.info("-" * 40)
            for issue in history.issues:
                logger.info(f"{issue.instance_id:<22} {issue.kind.value:<24} {issue.message}")

        if archive.license_annotations:
            logger.info("")
            logger.info("LICENSES")
            logger.info("-" * 40)
            for operating_system in OperatingSystemType:
                for license_type in LicenseType:
                    count = sum(1 for _ in archive.get_instances(operating_system, license_type))
                    if count:
                        logger.info(
                            f"{operating_system.name:<10} {license_type.name:<10} {count}"
                        )

        logger.info("")
        logger.info("=" * 70)

    def _export_archive(self, archive: AnnotatedInstanceSetHistory) -> str:
        """Write the annotated history to a JSON file."""
        filename = self.output or (
            f"placement-history-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json"
        )
        with open(filename, "w") as f:
            archive.serialize(f)
        logger.info(f"History archive exported to: {filename}")
        return filename
