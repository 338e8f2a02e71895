from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT / "src", Path(__file__).resolve().parent):
    if str(path) not in sys.path:  # pragma: no cover - import side-effect
        sys.path.insert(0, str(path))

os.environ.setdefault("DDB_TABLE_EXECUTION_STATE", "flag_execution_state")
os.environ.setdefault("DDB_TABLE_LEVELS", "flag_levels")
os.environ.setdefault("DDB_TABLE_PATTERNS", "flag_patterns")
os.environ.setdefault("DDB_REGION", "us-east-1")

from bar_factory import bullish_flag_bars  # noqa: E402


@pytest.fixture
def flag_bars():
    return bullish_flag_bars()
