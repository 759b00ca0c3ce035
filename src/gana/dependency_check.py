"""
Checks for the external tools gana drives: tmux, git, and the assistant
programs themselves.
"""

import shutil
import subprocess
from typing import Optional, Tuple

from .exceptions import SpawnError, TmuxNotFoundError


def find_executable(name: str) -> Optional[str]:
    """Find the full path to an executable, or None."""
    return shutil.which(name)


def _check_versioned(name: str, version_args: list) -> Tuple[bool, Optional[str], Optional[str]]:
    path = find_executable(name)
    if not path:
        return False, None, None

    try:
        result = subprocess.run(
            [path, *version_args],
            capture_output=True,
            text=True,
            timeout=5,
        )
        version = result.stdout.strip() if result.returncode == 0 else None
        return True, path, version
    except (subprocess.SubprocessError, OSError):
        return True, path, None


def check_tmux() -> Tuple[bool, Optional[str], Optional[str]]:
    """Check if tmux is available.

    Returns:
        Tuple of (is_available, path, version)
    """
    return _check_versioned("tmux", ["-V"])


def check_git() -> Tuple[bool, Optional[str], Optional[str]]:
    """Check if git is available.

    Returns:
        Tuple of (is_available, path, version)
    """
    return _check_versioned("git", ["--version"])


def require_tmux() -> str:
    """Return the tmux path or raise TmuxNotFoundError."""
    available, path, _ = check_tmux()
    if not available:
        raise TmuxNotFoundError(
            "tmux is required but not found. "
            "Install it with: brew install tmux (macOS) or apt install tmux (Linux)"
        )
    return path


def require_program(program: str) -> str:
    """Return the path of an assistant binary or raise SpawnError."""
    path = find_executable(program)
    if not path:
        raise SpawnError(f"'{program}' not found on PATH")
    return path
