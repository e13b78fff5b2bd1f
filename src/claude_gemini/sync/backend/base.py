"""Backend interface for Gemini attempt execution."""

from __future__ import annotations

from collections.abc import Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from claude_gemini.sync.models import BackendEvent


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to execute one attempt against one model candidate."""

    executable: Path
    prompt: str
    model: str
    timeout_seconds: float
    auto_accept: bool = True
    strip_ansi: bool = True
    progress_interval_seconds: float = 2.0
    graceful_shutdown_seconds: float = 5.0
    shutdown_requested: Callable[[], bool] | None = None
    cwd: Path | None = None


class LlmBackend(Protocol):
    """Protocol implemented by backend runners."""

    def stream(self, request: BackendRunRequest) -> Generator[BackendEvent, None, None]:
        """Run one attempt, yielding events and ending with `AttemptDone`."""
