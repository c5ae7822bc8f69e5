"""Pytest configuration.

Tests import the package from src/ and the Azure doubles from tests/azure_mock
without an installed distribution.
"""

import sys
from pathlib import Path

# driftwatch
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# azure_mock
sys.path.insert(0, str(Path(__file__).parent))
