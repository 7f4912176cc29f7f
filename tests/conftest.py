"""Shared fixtures for macpackage tests."""

import logging
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def sample_executable(temp_dir):
    """Create a sample executable file."""
    exe_path = temp_dir / "installer"
    exe_path.write_bytes(b"#!/bin/sh\necho 'hello'\n")
    exe_path.chmod(0o755)
    return exe_path


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging() between tests."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
