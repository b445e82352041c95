"""
Pytest configuration for the placement history tests.

The modules under src/ are installed as top-level modules, so a source
checkout needs src/ on sys.path for `import history` and friends to work.
"""

import os
import sys

SRC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
