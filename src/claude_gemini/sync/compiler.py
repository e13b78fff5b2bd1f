"""Compile a raw `@path` query into the prompt handed to the backend."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from claude_gemini.config import CONFIG_DIR_NAME
from claude_gemini.errors import BundlerError, BundlerUnavailableError, InvalidInputError
from claude_gemini.sync.bundler import BundleOptions
from claude_gemini.sync.models import (
    CompiledPrompt,
    ContextBundle,
    ExtractedQuery,
    PathReference,
    PromptMode,
)
from claude_gemini.sync.paths import convert_paths, extract_paths_from_query, validate_paths

logger = logging.getLogger(__name__)

CONTEXT_HEADING = "# Codebase Context"
TRUNCATED_CONTEXT_HEADING = "# Codebase Context (Truncated)"
TRUNCATION_NOTE = (
    "[Note: Output truncated due to size limits. Use specific file paths for detailed analysis.]"
)
ANALYSIS_KEYWORDS: tuple[str, ...] = (
    "analyze",
    "architecture",
    "structure",
    "codebase",
    "project",
    "code",
    "patterns",
    "security",
    "audit",
    "review",
    "overview",
    "summary",
    "files",
)
_KEYWORD_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(keyword) for keyword in ANALYSIS_KEYWORDS) + r")",
    re.IGNORECASE,
)


class ContextBundler(Protocol):
    def bundle(
        self,
        references: list[PathReference],
        *,
        base_dir: Path,
        clean_query: str = "",
        options: BundleOptions | None = None,
    ) -> ContextBundle: ...


class QueryCompiler:
    """Turns a query into a Compiled Prompt, bundling context when it can."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_dir: Path,
        bundler_factory: Callable[[], ContextBundler] | None = None,
        bundle_options: BundleOptions | None = None,
        excluded_patterns: tuple[str, ...] = (),
        max_inline_prompt_chars: int = 100_000,
    ) -> None:
        self.base_dir = base_dir
        self.bundler_factory = bundler_factory
        self.bundle_options = bundle_options or BundleOptions()
        self.excluded_patterns = excluded_patterns
        self.max_inline_prompt_chars = max_inline_prompt_chars

    @contextmanager
    def compile(self, query: str) -> Iterator[CompiledPrompt]:
        """Compile the query; any scratch file lives exactly as long as the `with` block."""

        compiled = self.build(query)
        try:
            yield compiled
        finally:
            if compiled.scratch_path is not None:
                compiled.scratch_path.unlink(missing_ok=True)
                logger.debug("Removed scratch context file %s", compiled.scratch_path)

    def build(self, query: str) -> CompiledPrompt:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("Invalid query provided. Please provide a valid query string.")

        extracted = extract_paths_from_query(
            query,
            self.base_dir,
            excluded_patterns=self.excluded_patterns,
        )
        notes: list[str] = []
        if self.bundler_factory is not None and should_bundle(query, extracted):
            try:
                bundler = self.bundler_factory()
                bundle = bundler.bundle(
                    extracted.paths,
                    base_dir=self.base_dir,
                    clean_query=extracted.clean_query,
                    options=self.bundle_options,
                )
            except BundlerUnavailableError as error:
                # Keyword-only queries just skip bundling when the tool is not installed.
                logger.debug("Bundling skipped: %s", error)
                if extracted.paths:
                    notes.append(f"code2prompt unavailable: {error}")
            except BundlerError as error:
                logger.debug("Bundling failed, falling back to path substitution: %s", error)
                notes.append(f"code2prompt unavailable: {error}")
            else:
                return self._bundled(query, extracted, bundle)
        return self._with_paths(query, extracted, notes)

    def _bundled(
        self,
        query: str,
        extracted: ExtractedQuery,
        bundle: ContextBundle,
    ) -> CompiledPrompt:
        text = render_bundled_prompt(extracted.clean_query, bundle)
        scratch_path: Path | None = None
        if len(text) > self.max_inline_prompt_chars:
            scratch_path = self._write_scratch(bundle.text)
            text = render_scratch_prompt(extracted.clean_query, scratch_path, bundle)

        return CompiledPrompt(
            text=text,
            mode=PromptMode.BUNDLED,
            clean_query=extracted.clean_query,
            bundle=bundle,
            warnings=self._warnings(query, extracted),
            notes=list(bundle.notes),
            scratch_path=scratch_path,
        )

    def _with_paths(
        self,
        query: str,
        extracted: ExtractedQuery,
        notes: list[str],
    ) -> CompiledPrompt:
        normalized = convert_paths(
            query,
            self.base_dir,
            excluded_patterns=self.excluded_patterns,
        )
        if not normalized.text.strip():
            raise InvalidInputError("Failed to process the query. Please check your input.")
        return CompiledPrompt(
            text=normalized.text,
            mode=PromptMode.PATHS,
            clean_query=extracted.clean_query,
            warnings=self._warnings(query, extracted),
            notes=notes,
        )

    def _warnings(self, query: str, extracted: ExtractedQuery) -> list[str]:
        validation = validate_paths(
            query,
            self.base_dir,
            excluded_patterns=self.excluded_patterns,
        )
        return [*extracted.warnings, *validation.warnings]

    def _write_scratch(self, content: str) -> Path:
        scratch_dir = self.base_dir / CONFIG_DIR_NAME
        scratch_dir.mkdir(parents=True, exist_ok=True)
        path = scratch_dir / f"context-{uuid4().hex}.md"
        path.write_text(content, "utf-8")
        logger.debug("Wrote scratch context file %s (%d chars)", path, len(content))
        return path


def should_bundle(query: str, extracted: ExtractedQuery) -> bool:
    """Bundle when the query names paths or asks for codebase-level analysis."""

    if extracted.paths:
        return True
    return _KEYWORD_PATTERN.search(query) is not None


def render_bundled_prompt(instruction: str, bundle: ContextBundle) -> str:
    if bundle.truncated:
        return (
            f"{instruction}\n\n{TRUNCATED_CONTEXT_HEADING}\n\n{bundle.text}\n\n{TRUNCATION_NOTE}"
        )
    return f"{instruction}\n\n{CONTEXT_HEADING}\n\n{bundle.text}"


def render_scratch_prompt(instruction: str, scratch_path: Path, bundle: ContextBundle) -> str:
    heading = TRUNCATED_CONTEXT_HEADING if bundle.truncated else CONTEXT_HEADING
    return (
        f"{instruction}\n\n{heading}\n\n"
        f"The codebase context is in @{scratch_path}. Read that file before answering."
    )


def extract_codebase_context(prompt: str) -> str | None:
    """Return the context section of a compiled prompt, or None when it has none."""

    sections = []
    for heading in (CONTEXT_HEADING, TRUNCATED_CONTEXT_HEADING):
        marker = f"\n\n{heading}\n\n"
        index = prompt.find(marker)
        if index >= 0:
            sections.append((index, marker, heading))
    if not sections:
        return None

    index, marker, heading = min(sections)
    body = prompt[index + len(marker) :]
    suffix = f"\n\n{TRUNCATION_NOTE}"
    if heading == TRUNCATED_CONTEXT_HEADING and body.endswith(suffix):
        body = body[: -len(suffix)]
    return body
