"""
Root-level shared fixtures for all optimization service tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Keep test runs from writing into the project's logs/ directory
os.environ.setdefault(
    "OPTIMIZATION_LOG_DIR", tempfile.mkdtemp(prefix="optimization_test_logs_")
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="optimization_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_config() -> dict[str, Any]:
    """
    Standard test configuration.

    Polling is fast so waited runs finish in milliseconds.
    """
    return {
        "optimizer": {
            "enabled": True,
            "base_url": "http://optimizer.test",
            "request_timeout_seconds": 5,
            "health_timeout_seconds": 1,
        },
        "orchestration": {
            "poll_interval_seconds": 0.001,
            "max_poll_attempts": 60,
            "default_optimization_time_seconds": 120,
            "default_optimization_mode": "BALANCED",
        },
        "api": {"host": "127.0.0.1", "port": 9010},
        "store": {"data_dir": None},
    }


# Utility functions for tests

def create_test_file(path: Path, content: str | dict) -> Path:
    """
    Helper to create a test file with content.

    Args:
        path: Path to create the file at
        content: String content or dict to serialize as JSON

    Returns:
        The path to the created file
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, dict):
        path.write_text(json.dumps(content, indent=2))
    else:
        path.write_text(content)
    return path
