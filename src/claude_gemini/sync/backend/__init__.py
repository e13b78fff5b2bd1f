"""Gemini backend implementations."""

from claude_gemini.sync.backend.base import BackendRunRequest, LlmBackend
from claude_gemini.sync.backend.cli_backend import GeminiCliBackend, build_run_args

__all__ = [
    "BackendRunRequest",
    "GeminiCliBackend",
    "LlmBackend",
    "build_run_args",
]
