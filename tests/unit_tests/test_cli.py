"""
Unit tests for CLI module.
"""

import unittest
from unittest.mock import MagicMock, patch
from cli import build_parser, main


class TestCLI(unittest.TestCase):
    """Test CLI argument parsing and entry point."""

    def test_build_parser_creates_parser(self):
        """Test parser is created with expected arguments."""
        parser = build_parser()

        self.assertIsNotNone(parser)

        args = parser.parse_args(["--project", "test-project"])

        self.assertEqual(args.project, ["test-project"])
        self.assertEqual(args.days, 30)
        self.assertIsNone(args.output)
        self.assertEqual(args.page_size, 1000)
        self.assertFalse(args.no_annotate)
        self.assertFalse(args.verbose)

    def test_parser_with_all_options(self):
        """Test parser handles all command-line options."""
        parser = build_parser()

        args = parser.parse_args(
            [
                "--project",
                "project-1",
                "project-2",
                "--days",
                "14",
                "--output",
                "history.json",
                "--page-size",
                "200",
                "--no-annotate",
                "--verbose",
            ]
        )

        self.assertEqual(args.project, ["project-1", "project-2"])
        self.assertEqual(args.days, 14)
        self.assertEqual(args.output, "history.json")
        self.assertEqual(args.page_size, 200)
        self.assertTrue(args.no_annotate)
        self.assertTrue(args.verbose)

    def test_parser_requires_project(self):
        """Test parser requires project argument."""
        parser = build_parser()

        with self.assertRaises(SystemExit):
            parser.parse_args(["--days", "7"])

    @patch("cli.FleetHistoryAnalyzer")
    @patch("cli.setup_logging")
    @patch("cli.AnalyzerConfig")
    def test_main_runs_analyzer(
        self, mock_config_class, mock_setup_logging, mock_analyzer_class
    ):
        """Test main wires the config into the analyzer."""
        mock_config = MagicMock()
        mock_config.project_ids = ["test-project"]
        mock_config.days = 30
        mock_config.output = None
        mock_config.page_size = 1000
        mock_config.annotate = True

        mock_config_class.from_args.return_value = mock_config

        mock_analyzer = MagicMock()
        mock_analyzer.run.return_value = {"failed": 0}
        mock_analyzer_class.return_value = mock_analyzer

        result = main(["--project", "test-project"])

        self.assertEqual(result, 0)
        mock_analyzer_class.assert_called_once_with(
            project_ids=["test-project"],
            days=30,
            output=None,
            page_size=1000,
            annotate=True,
        )
        mock_analyzer.run.assert_called_once_with()

    @patch("cli.FleetHistoryAnalyzer")
    @patch("cli.setup_logging")
    @patch("cli.AnalyzerConfig")
    def test_main_returns_failure_exit_code(
        self, mock_config_class, mock_setup_logging, mock_analyzer_class
    ):
        """Test main returns exit code 1 when lookups fail."""
        mock_config_class.from_args.return_value = MagicMock()

        mock_analyzer = MagicMock()
        mock_analyzer.run.return_value = {"failed": 2}
        mock_analyzer_class.return_value = mock_analyzer

        result = main(["--project", "test-project"])

        self.assertEqual(result, 1)

    @patch("cli.setup_logging")
    @patch("cli.AnalyzerConfig")
    def test_main_uses_placement_history_log_file(
        self, mock_config_class, mock_setup_logging
    ):
        """Test main logs to the placement history log file."""
        mock_config_class.from_args.return_value = MagicMock()

        with patch("cli.FleetHistoryAnalyzer") as mock_analyzer_class:
            mock_analyzer = MagicMock()
            mock_analyzer.run.return_value = {"failed": 0}
            mock_analyzer_class.return_value = mock_analyzer

            main(["--project", "test-project", "--verbose"])

            mock_setup_logging.assert_called_once()
            call_args = mock_setup_logging.call_args
            self.assertEqual(call_args[1]["log_file"], "placement-history.log")
            self.assertTrue(call_args[1]["verbose"])

    @patch("cli.FleetHistoryAnalyzer")
    @patch("cli.setup_logging")
    def test_main_rejects_invalid_window(
        self, mock_setup_logging, mock_analyzer_class
    ):
        """Test an invalid configuration exits with a usage error."""
        with self.assertRaises(SystemExit):
            main(["--project", "test-project", "--days", "0"])

        mock_analyzer_class.assert_not_called()


if __name__ == "__main__":
    unittest.main()
