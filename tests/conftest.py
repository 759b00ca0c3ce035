"""
Pytest configuration for gana tests.
"""

import shutil

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "requires_git: mark test as requiring the git binary"
    )
    config.addinivalue_line(
        "markers", "requires_tmux: mark test as requiring tmux"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests whose external tools are missing."""
    missing = {
        "requires_git": shutil.which("git") is None,
        "requires_tmux": shutil.which("tmux") is None,
    }
    for item in items:
        for marker, is_missing in missing.items():
            if is_missing and marker in item.keywords:
                item.add_marker(pytest.mark.skip(reason=f"{marker.split('_', 1)[1]} not installed"))
