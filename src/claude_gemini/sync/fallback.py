"""Model candidate resolution and quota-driven fallback across candidates."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import closing
from dataclasses import replace

from claude_gemini.errors import BackendRunError, SyncCanceledError
from claude_gemini.sync.backend.base import BackendRunRequest, LlmBackend
from claude_gemini.sync.models import (
    AttemptDone,
    AttemptResult,
    AttemptState,
    FailureClass,
    ModelRetry,
    SyncEvent,
)

logger = logging.getLogger(__name__)


def build_model_candidates(
    preferred: str | None,
    *,
    configured: str,
    fallback_models: Iterable[str],
) -> tuple[str, ...]:
    """Caller (or configured) model first, then the fallback chain, without duplicates.

    An empty first candidate means "let the backend choose" and is kept.
    """

    first = (preferred if preferred is not None else configured).strip()
    candidates: list[str] = [first]
    for model in fallback_models:
        normalized = model.strip()
        if not normalized or normalized in candidates:
            continue
        candidates.append(normalized)
    return tuple(candidates)


class ModelFallbackController:
    """Runs one attempt per candidate until success or a non-quota failure."""

    def __init__(self, *, backend: LlmBackend, candidates: tuple[str, ...]) -> None:
        if not candidates:
            raise ValueError("At least one model candidate is required.")
        self.backend = backend
        self.candidates = candidates

    def stream(self, request: BackendRunRequest) -> Iterator[SyncEvent]:
        """Yield backend events for each attempt; raise when the last attempt failed."""

        previous: AttemptResult | None = None
        for index, model in enumerate(self.candidates):
            if previous is not None:
                logger.info(
                    "Retrying with model=%s after %s",
                    model or "auto",
                    previous.failure_class.value if previous.failure_class else "failure",
                )
                yield ModelRetry(model=model, previous=previous)

            result: AttemptResult | None = None
            with closing(self.backend.stream(replace(request, model=model))) as attempt:
                for event in attempt:
                    if isinstance(event, AttemptDone):
                        result = event.result
                    yield event
            if result is None:
                raise RuntimeError(f"Backend attempt for model={model!r} ended without a result.")

            if result.succeeded:
                return
            if result.state == AttemptState.CANCELED:
                raise SyncCanceledError("Analysis canceled.")
            has_more = index < len(self.candidates) - 1
            if result.failure_class == FailureClass.QUOTA_EXCEEDED and has_more:
                previous = result
                continue
            raise _run_error(result)

    def run(self, request: BackendRunRequest) -> AttemptResult:
        """Drain `stream` and return the successful attempt."""

        final: AttemptResult | None = None
        for event in self.stream(request):
            if isinstance(event, AttemptDone):
                final = event.result
        if final is None:  # pragma: no cover - stream always ends with a result or raises
            raise RuntimeError("Fallback controller produced no result.")
        return final


def _run_error(result: AttemptResult) -> BackendRunError:
    failure = result.failure
    if failure is None:
        return BackendRunError(
            f"Gemini attempt ended in state {result.state.value}.",
            failure_class=FailureClass.UNKNOWN,
            result=result,
        )
    return BackendRunError(failure.message, failure_class=failure.failure_class, result=result)
