"""
Configuration management for the sole-tenant placement history analyzer.
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class AnalyzerConfig:
    """Configuration for fleet history analysis."""

    project_ids: List[str]
    days: int = 30
    output: Optional[str] = None
    page_size: int = 1000
    annotate: bool = True
    verbose: bool = False

    def __post_init__(self):
        if not self.project_ids:
            raise ValueError("At least one project ID is required")
        if self.days < 1:
            raise ValueError(f"Analysis window must be at least 1 day, got {self.days}")
        if not 1 <= self.page_size <= 1000:
            raise ValueError(f"Page size must be between 1 and 1000, got {self.page_size}")

    @classmethod
    def from_args(cls, args) -> "AnalyzerConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            AnalyzerConfig instance
        """
        return cls(
            project_ids=args.project,
            days=args.days,
            output=args.output,
            page_size=args.page_size,
            annotate=not args.no_annotate,
            verbose=args.verbose,
        )
