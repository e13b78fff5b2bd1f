"""Debounced file watching that feeds changed files into sync analyses."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path

from watchfiles import Change, watch

logger = logging.getLogger(__name__)

ANALYSIS_INSTRUCTION = "Analyze the recent changes and their impact"


@dataclass(slots=True)
class ChangeBatch:
    """Files changed within one debounce window, relative to the watch root."""

    changed: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)


@dataclass(slots=True)
class WatchPatternFilter:
    """`watch_filter` accepting files that match a pattern and sit outside ignored dirs."""

    root: Path
    patterns: tuple[str, ...]
    ignored: tuple[str, ...] = ()

    def __call__(self, change: Change, path: str) -> bool:
        relative = _relative(Path(path), self.root)
        for part in relative.parts[:-1]:
            if any(fnmatchcase(part, pattern) for pattern in self.ignored):
                return False
        if any(fnmatchcase(relative.name, pattern) for pattern in self.ignored):
            return False
        posix = relative.as_posix()
        return any(
            fnmatchcase(relative.name, pattern) or fnmatchcase(posix, pattern)
            for pattern in self.patterns
        )


def iter_change_batches(
    root: Path,
    *,
    patterns: tuple[str, ...],
    ignored: tuple[str, ...],
    debounce_ms: int,
    stop_event: threading.Event,
) -> Iterator[ChangeBatch]:
    """Yield one batch per debounced set of filesystem changes until `stop_event` is set."""

    watch_filter = WatchPatternFilter(root=root, patterns=patterns, ignored=ignored)
    logger.debug("Watching %s patterns=%s debounce=%sms", root, patterns, debounce_ms)
    for changes in watch(
        root,
        watch_filter=watch_filter,
        debounce=debounce_ms,
        stop_event=stop_event,
        raise_interrupt=False,
    ):
        batch = group_changes(changes, root=root)
        if batch.changed or batch.deleted:
            yield batch


def group_changes(changes: set[tuple[Change, str]], *, root: Path) -> ChangeBatch:
    changed: set[Path] = set()
    deleted: set[Path] = set()
    for change, raw_path in changes:
        relative = _relative(Path(raw_path), root)
        if change == Change.deleted:
            deleted.add(relative)
        else:
            changed.add(relative)
    # A file recreated in the same window counts as changed.
    deleted -= changed
    return ChangeBatch(changed=sorted(changed), deleted=sorted(deleted))


def analysis_query(path: Path) -> str:
    return f"@{path.as_posix()} {ANALYSIS_INSTRUCTION}"


def _relative(path: Path, root: Path) -> Path:
    try:
        return path.resolve().relative_to(root.resolve())
    except ValueError:
        return path
