"""
Compute Engine Sole-Tenant Placement History Tool.
"""

from analyzer import FleetHistoryAnalyzer
from archive import AnnotatedInstanceSetHistory
from clients import ComputeRestClient, LoggingRestClient
from config import AnalyzerConfig
from history import InstanceHistoryBuilder, InstanceSetHistoryBuilder
from log_utils import setup_logging
from models import (
    InstanceHistory,
    InstanceSetHistory,
    NodeSetHistory,
    SoleTenantPlacement,
    Tenancy,
)

__all__ = [
    "FleetHistoryAnalyzer",
    "AnnotatedInstanceSetHistory",
    "ComputeRestClient",
    "LoggingRestClient",
    "AnalyzerConfig",
    "InstanceHistoryBuilder",
    "InstanceSetHistoryBuilder",
    "setup_logging",
    "InstanceHistory",
    "InstanceSetHistory",
    "NodeSetHistory",
    "SoleTenantPlacement",
    "Tenancy",
]
