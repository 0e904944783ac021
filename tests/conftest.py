"""Pytest configuration for threadbox tests.

Ensures the project root is in sys.path so imports work correctly.
"""

import sys
from pathlib import Path

import pytest

# Add project root to sys.path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "threadbox.db"
