"""Executable lookup for the external binaries the pipeline drives."""

from __future__ import annotations

import os
import shutil
from pathlib import Path


def locate_executable(name: str, search_paths: tuple[Path, ...] = ()) -> Path | None:
    """Resolve a binary via PATH first, then the configured fallback directories.

    A name containing a path separator is taken as an explicit location and
    only checked for being an executable file.
    """

    candidate = Path(name).expanduser()
    if len(candidate.parts) > 1:
        return candidate if _is_executable(candidate) else None

    resolved = shutil.which(name)
    if resolved is not None:
        return Path(resolved)

    for directory in search_paths:
        path = directory / name
        if _is_executable(path):
            return path
    return None


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)
