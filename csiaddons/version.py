"""Build and runtime version details."""

from __future__ import annotations

import platform
import sys
from typing import TextIO

VERSION = ""
GIT_COMMIT = ""


def print_version(out: TextIO | None = None) -> None:
    """Write the version details, one per line, to ``out`` (stdout by default)."""
    stream = sys.stdout if out is None else out
    lines = [
        f"Version: {VERSION}",
        f"Git Commit: {GIT_COMMIT}",
        f"Python Version: {platform.python_version()}",
        f"Compiler: {platform.python_implementation()}",
        f"Platform: {platform.system().lower()}/{platform.machine().lower()}",
    ]
    stream.write("\n".join(lines) + "\n")