"""Error taxonomy shared by the sync pipeline and CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from claude_gemini.sync.models import AttemptResult, FailureClass


class ClaudeGeminiError(RuntimeError):
    """Base class for all pipeline errors."""


class InvalidInputError(ClaudeGeminiError):
    """Query is missing or could not be turned into a prompt."""


class BackendNotFoundError(ClaudeGeminiError):
    """Backend executable could not be located or started."""


class BundlerError(ClaudeGeminiError):
    """Context bundling failed; callers degrade to path substitution."""


class BundlerUnavailableError(BundlerError):
    """Context tool is not installed or not executable."""


class BackendRunError(ClaudeGeminiError):
    """Backend attempt failed with a classified reason."""

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass,
        result: AttemptResult | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_class = failure_class
        self.result = result


class SyncCanceledError(ClaudeGeminiError):
    """Operator interrupted the running attempt."""
