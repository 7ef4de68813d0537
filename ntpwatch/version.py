"""
ntpwatch - Version and build info.

VERSION comes from installed package metadata; GIT_SHA from the GIT_SHA env
var (set at image build) or ``git rev-parse`` in a source checkout.
"""

from __future__ import annotations

import os
import subprocess
from importlib.metadata import PackageNotFoundError, version

_FALLBACK_VERSION = "0.1.0"
_SHA_LENGTH = 12


def _get_version() -> str:
    try:
        return version("ntpwatch")
    except PackageNotFoundError:
        return _FALLBACK_VERSION


def _get_git_sha() -> str:
    """Return short git SHA, or empty string when unknown."""
    sha = os.environ.get("GIT_SHA", "").strip()
    if sha:
        return sha[:_SHA_LENGTH]
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    try:
        result = subprocess.run(
            ["git", "rev-parse", f"--short={_SHA_LENGTH}", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=2,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    if result.returncode == 0:
        return result.stdout.strip()
    return ""


VERSION = _get_version()
GIT_SHA = _get_git_sha()
