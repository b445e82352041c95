"""
Unit tests for FleetHistoryAnalyzer and license classification.
"""

import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from analyzer import FleetHistoryAnalyzer, annotate_image
from archive import AnnotatedInstanceSetHistory
from history import InstanceSetHistoryBuilder
from models import ImageLocator, LicenseType, OperatingSystemType, Tenancy

NOW = datetime(2020, 1, 31, tzinfo=timezone.utc)
WINDOWS_IMAGE = ImageLocator("windows-cloud", "windows-server-2019-dc-v20200114")
DEBIAN_IMAGE = ImageLocator("debian-cloud", "debian-10-buster-v20200210")


def log_entry(method, instance_id, timestamp, project="project-1", **payload):
    return {
        "insertId": f"{instance_id}-{timestamp}",
        "timestamp": timestamp,
        "severity": "NOTICE",
        "resource": {
            "type": "gce_instance",
            "labels": {
                "instance_id": str(instance_id),
                "project_id": project,
                "zone": "us-central1-a",
            },
        },
        "protoPayload": {
            "methodName": method,
            "resourceName": f"projects/{project}/zones/us-central1-a/instances/vm-{instance_id}",
            **payload,
        },
    }


def image_resource(image: ImageLocator):
    if image.project_id == "windows-cloud":
        return {
            "name": image.name,
            "licenses": [
                "https://www.googleapis.com/compute/v1/projects/windows-cloud/"
                "global/licenses/windows-server-2019-dc"
            ],
            "guestOsFeatures": [{"type": "WINDOWS"}],
        }
    return {
        "name": image.name,
        "licenses": [
            "https://www.googleapis.com/compute/v1/projects/debian-cloud/"
            "global/licenses/debian-10-buster"
        ],
    }


class TestAnnotateImage(unittest.TestCase):
    """Test operating system and license classification of images."""

    def test_windows_pay_as_you_go(self):
        """Test Windows images with a windows-cloud license are SPLA."""
        self.assertEqual(
            annotate_image(WINDOWS_IMAGE, image_resource(WINDOWS_IMAGE)),
            (OperatingSystemType.WINDOWS, LicenseType.SPLA),
        )

    def test_windows_byol(self):
        """Test imported Windows images are BYOL."""
        image = ImageLocator("my-project", "windows-byol")
        data = {"licenses": [], "guestOsFeatures": [{"type": "WINDOWS"}]}

        self.assertEqual(
            annotate_image(image, data),
            (OperatingSystemType.WINDOWS, LicenseType.BYOL),
        )

    def test_premium_linux(self):
        """Test premium Linux distributions are SPLA."""
        image = ImageLocator("rhel-cloud", "rhel-8")
        data = {
            "licenses": [
                "https://www.googleapis.com/compute/v1/projects/rhel-cloud/global/licenses/rhel-8-server"
            ]
        }

        self.assertEqual(
            annotate_image(image, data),
            (OperatingSystemType.LINUX, LicenseType.SPLA),
        )

    def test_free_linux(self):
        """Test other Linux images are BYOL."""
        self.assertEqual(
            annotate_image(DEBIAN_IMAGE, image_resource(DEBIAN_IMAGE)),
            (OperatingSystemType.LINUX, LicenseType.BYOL),
        )

    def test_deleted_windows_image(self):
        """Test deleted images from windows-cloud are still Windows SPLA."""
        self.assertEqual(
            annotate_image(WINDOWS_IMAGE, None),
            (OperatingSystemType.WINDOWS, LicenseType.SPLA),
        )

    def test_deleted_custom_image(self):
        """Test other deleted images are unknown."""
        self.assertEqual(
            annotate_image(ImageLocator("my-project", "gone"), None),
            (OperatingSystemType.UNKNOWN, LicenseType.UNKNOWN),
        )


@patch("analyzer.LoggingRestClient")
@patch("analyzer.ComputeRestClient")
class TestFleetHistoryAnalyzer(unittest.TestCase):
    """Test end-to-end analysis with mocked API clients."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.output = os.path.join(self.tmpdir.name, "history.json")

    def tearDown(self):
        self.tmpdir.cleanup()

    def _configure(self, mock_compute_class, mock_logging_class, entries):
        compute = MagicMock()
        compute.list_instances.return_value = [
            {
                "id": "1",
                "name": "vm-1",
                "zone": "https://www.googleapis.com/compute/v1/projects/project-1/zones/us-central1-a",
                "scheduling": {
                    "nodeAffinities": [
                        {
                            "key": "compute.googleapis.com/node-group-name",
                            "operator": "IN",
                            "values": ["group-1"],
                        }
                    ]
                },
                "disks": [{"boot": True, "source": "https://disk-1"}],
            }
        ]
        compute.get_disk.return_value = {"sourceImage": str(WINDOWS_IMAGE)}
        compute.get_image.side_effect = image_resource
        mock_compute_class.return_value = compute

        logging_client = MagicMock()
        logging_client.list_log_entries.return_value = entries
        mock_logging_class.return_value = logging_client
        return compute, logging_client

    def test_run_reconstructs_and_exports_history(
        self, mock_compute_class, mock_logging_class
    ):
        """Test a full run over existing and deleted instances."""
        entries = [
            log_entry("v1.compute.instances.delete", 2, "2020-01-20T00:00:00Z"),
            log_entry(
                "NotifyInstanceLocation",
                2,
                "2020-01-19T00:00:00Z",
                metadata={"serverId": "server-2"},
            ),
            log_entry(
                "NotifyInstanceLocation",
                1,
                "2020-01-10T00:00:00Z",
                metadata={"serverId": "server-1"},
            ),
            log_entry(
                "v1.compute.instances.insert",
                2,
                "2020-01-05T00:00:00Z",
                request={
                    "disks": [
                        {
                            "boot": True,
                            "initializeParams": {"sourceImage": str(DEBIAN_IMAGE)},
                        }
                    ]
                },
            ),
            {"timestamp": "2020-01-04T00:00:00Z", "protoPayload": {"methodName": "v1.compute.instances.stop"}, "severity": "NOTICE"},
        ]
        self._configure(mock_compute_class, mock_logging_class, entries)

        analyzer = FleetHistoryAnalyzer(
            project_ids=["project-1"], days=30, output=self.output, now=NOW
        )
        stats = analyzer.run()

        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["complete"], 2)
        self.assertEqual(stats["incomplete"], 0)
        self.assertEqual(stats["sole_tenant"], 2)
        self.assertEqual(stats["nodes"], 2)
        self.assertEqual(stats["events"], 4)
        self.assertEqual(stats["skipped_entries"], 1)
        self.assertEqual(stats["failed"], 0)

        with open(self.output) as f:
            archive = AnnotatedInstanceSetHistory.deserialize(f)

        by_id = {i.instance_id: i for i in archive.history.complete}
        self.assertEqual(by_id[1].placements[0].server_id, "server-1")
        self.assertEqual(by_id[1].placements[0].end, NOW)
        self.assertEqual(by_id[2].image, DEBIAN_IMAGE)
        self.assertEqual(
            by_id[2].placements[0].end, datetime(2020, 1, 20, tzinfo=timezone.utc)
        )

        windows = list(
            archive.get_instances(OperatingSystemType.WINDOWS, LicenseType.SPLA)
        )
        self.assertEqual([i.instance_id for i in windows], [1])
        linux = list(archive.get_instances(OperatingSystemType.LINUX, LicenseType.BYOL))
        self.assertEqual([i.instance_id for i in linux], [2])

    def test_run_without_annotation(self, mock_compute_class, mock_logging_class):
        """Test license lookups are skipped when disabled."""
        compute, _ = self._configure(mock_compute_class, mock_logging_class, [])

        analyzer = FleetHistoryAnalyzer(
            project_ids=["project-1"], output=self.output, annotate=False, now=NOW
        )
        analyzer.run()

        compute.get_image.assert_not_called()
        with open(self.output) as f:
            archive = AnnotatedInstanceSetHistory.deserialize(f)
        self.assertEqual(archive.license_annotations, {})

    def test_seed_failure_is_counted(self, mock_compute_class, mock_logging_class):
        """Test a failing project does not abort seeding."""
        compute, _ = self._configure(mock_compute_class, mock_logging_class, [])
        compute.list_instances.side_effect = RuntimeError("Forbidden")

        analyzer = FleetHistoryAnalyzer(project_ids=["project-1"], now=NOW)
        builder = InstanceSetHistoryBuilder()
        seeded = analyzer.seed(builder)

        self.assertEqual(seeded, 0)
        self.assertEqual(analyzer.stats["failed"], 1)

    def test_seed_fleet_instance(self, mock_compute_class, mock_logging_class):
        """Test instances without node affinities are seeded as FLEET."""
        compute, _ = self._configure(mock_compute_class, mock_logging_class, [])
        compute.list_instances.return_value = [
            {"id": "5", "name": "vm-5", "zone": "zones/us-central1-b", "disks": []}
        ]

        analyzer = FleetHistoryAnalyzer(project_ids=["project-1"], now=NOW)
        builder = InstanceSetHistoryBuilder()
        analyzer.seed(builder)
        history = builder.finalize()

        self.assertEqual(history.complete[0].tenancy, Tenancy.FLEET)
        self.assertEqual(history.complete[0].reference.zone, "us-central1-b")
        self.assertIsNone(history.complete[0].image)

    def test_fetch_events_orders_across_projects(
        self, mock_compute_class, mock_logging_class
    ):
        """Test events of several projects are merged newest first."""
        clients = {
            "project-1": [
                log_entry("v1.compute.instances.stop", 1, "2020-01-20T00:00:00Z"),
                log_entry("v1.compute.instances.start", 1, "2020-01-02T00:00:00Z"),
            ],
            "project-2": [
                log_entry(
                    "v1.compute.instances.stop", 2, "2020-01-15T00:00:00Z", project="project-2"
                ),
            ],
        }

        def make_client(project_id):
            client = MagicMock()
            client.list_log_entries.return_value = clients[project_id]
            return client

        mock_logging_class.side_effect = make_client

        analyzer = FleetHistoryAnalyzer(project_ids=["project-1", "project-2"], now=NOW)
        events = analyzer.fetch_events()

        self.assertEqual(
            [e.timestamp.day for e in events],
            [20, 15, 2],
        )

    def test_fetch_events_failure_is_counted(
        self, mock_compute_class, mock_logging_class
    ):
        """Test a failing log read is counted and skipped."""
        logging_client = MagicMock()
        logging_client.list_log_entries.side_effect = RuntimeError("Bad filter")
        mock_logging_class.return_value = logging_client

        analyzer = FleetHistoryAnalyzer(project_ids=["project-1"], now=NOW)
        events = analyzer.fetch_events()

        self.assertEqual(events, [])
        self.assertEqual(analyzer.stats["failed"], 1)

    def test_window(self, mock_compute_class, mock_logging_class):
        """Test the analysis window ends now and spans the given days."""
        analyzer = FleetHistoryAnalyzer(project_ids=["project-1"], days=7, now=NOW)

        self.assertEqual(analyzer.end_time, NOW)
        self.assertEqual(analyzer.start_time, datetime(2020, 1, 24, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
