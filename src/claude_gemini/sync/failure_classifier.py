"""Deterministic backend failure classification for model fallback policy."""

from __future__ import annotations

import re

from claude_gemini.sync.models import BackendFailureClassification, FailureClass

TIMEOUT_EXIT_CODE = 124

_BENIGN_STDERR_MARKERS: tuple[str, ...] = ("[dotenv@",)
_NOTICE_PATTERNS: tuple[str, ...] = (
    "slow response times detected",
    "switching from",
    "automatically switching",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota exceeded",
    "resource_exhausted",
    "resource exhausted",
    "rate limit",
    "ratelimit",
    "too many requests",
    "429",
)
_BAD_REQUEST_PATTERNS: tuple[str, ...] = (
    "bad request",
    "invalid argument",
    "400",
)
_QUOTA_SENTENCE = re.compile(r"Quota exceeded.*?\.", re.IGNORECASE)


def classify_backend_failure(*, exit_code: int | None, stderr: str) -> BackendFailureClassification:
    """Classify a non-zero, non-timeout backend exit from its filtered stderr."""

    diagnostics = filter_benign_stderr(stderr).strip()
    haystack = diagnostics.lower()

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        sentence = _QUOTA_SENTENCE.search(diagnostics)
        detail = sentence.group(0) if sentence is not None else _first_line(diagnostics)
        return BackendFailureClassification(
            failure_class=FailureClass.QUOTA_EXCEEDED,
            reason_code="gemini_quota_exceeded",
            matched_rule="quota_exceeded",
            matched_pattern=pattern,
            message=f"429: {detail}",
        )

    pattern = _first_match(haystack, _BAD_REQUEST_PATTERNS)
    if pattern is not None:
        return BackendFailureClassification(
            failure_class=FailureClass.BAD_REQUEST,
            reason_code="gemini_bad_request",
            matched_rule="bad_request",
            matched_pattern=pattern,
            message=f"Invalid request: {diagnostics}",
        )

    if (exit_code is None or exit_code < 0) and not diagnostics:
        signal_hint = f"signal {-exit_code}" if exit_code is not None else "an unknown cause"
        return BackendFailureClassification(
            failure_class=FailureClass.UNKNOWN,
            reason_code="gemini_unknown",
            matched_rule="terminated_without_diagnostics",
            matched_pattern=None,
            message=f"Gemini was terminated by {signal_hint}.",
        )

    return BackendFailureClassification(
        failure_class=FailureClass.PROCESS_ERROR,
        reason_code="gemini_process_error",
        matched_rule="fallback_process_error",
        matched_pattern=None,
        message=f"Gemini exited with code {exit_code}: {diagnostics}",
    )


def timeout_failure(timeout_seconds: float) -> BackendFailureClassification:
    return BackendFailureClassification(
        failure_class=FailureClass.TIMEOUT,
        reason_code="gemini_timeout",
        matched_rule="timeout",
        matched_pattern=None,
        message=(
            f"Timeout after {timeout_seconds:g} seconds. The Gemini CLI appears to be hanging."
        ),
    )


def is_benign_stderr(line: str) -> bool:
    return any(marker in line for marker in _BENIGN_STDERR_MARKERS)


def is_model_switch_notice(line: str) -> bool:
    lowered = line.lower()
    return any(pattern in lowered for pattern in _NOTICE_PATTERNS)


def filter_benign_stderr(stderr: str) -> str:
    """Drop environment-loader banners so they never mask a genuine error."""

    return "".join(
        line for line in stderr.splitlines(keepends=True) if not is_benign_stderr(line)
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern.isdigit():
            if re.search(rf"\b{pattern}\b", haystack):
                return pattern
        elif pattern in haystack:
            return pattern
    return None


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return "Quota exceeded."
