#!/usr/bin/env python3
"""
Compute Engine Sole-Tenant Placement History Tool

Replays Cloud Audit Log lifecycle events, newest first, to reconstruct the
tenancy and sole-tenant node placements of every instance in one or more
projects, and exports a license-annotated JSON archive.

Runs from a source checkout by putting src/ on sys.path. Installed copies
should use the `placement-history` console script instead.
"""

import os
import sys

SRC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from cli import main

if __name__ == "__main__":
    sys.exit(main())
