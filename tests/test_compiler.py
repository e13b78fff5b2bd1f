from __future__ import annotations

from pathlib import Path

import allure
import pytest

from claude_gemini.config import CONFIG_DIR_NAME, DEFAULT_EXCLUDED_PATH_PATTERNS
from claude_gemini.errors import BundlerError, BundlerUnavailableError, InvalidInputError
from claude_gemini.sync.bundler import BundleOptions
from claude_gemini.sync.compiler import (
    TRUNCATION_NOTE,
    QueryCompiler,
    extract_codebase_context,
    should_bundle,
)
from claude_gemini.sync.models import ContextBundle, PathReference, PromptMode
from claude_gemini.sync.paths import extract_paths_from_query

pytestmark = [
    allure.epic("Query Compilation"),
    allure.feature("Query Compiler"),
]


class StaticBundler:
    """Returns a fixed bundle and remembers what it was asked for."""

    def __init__(self, text: str, *, truncated: bool = False) -> None:
        self.text = text
        self.truncated = truncated
        self.references: list[PathReference] | None = None
        self.clean_query: str | None = None

    def bundle(
        self,
        references: list[PathReference],
        *,
        base_dir: Path,
        clean_query: str = "",
        options: BundleOptions | None = None,
    ) -> ContextBundle:
        self.references = references
        self.clean_query = clean_query
        return ContextBundle(
            text=self.text,
            token_count=len(self.text) // 4,
            primary_path=base_dir,
            include=(),
            exclude=(),
            truncated=self.truncated,
            notes=["bundled"],
        )


def _unavailable() -> StaticBundler:
    raise BundlerUnavailableError("code2prompt not found: code2prompt")


def _compiler(base_dir: Path, bundler: object | None, **overrides: object) -> QueryCompiler:
    return QueryCompiler(
        base_dir=base_dir,
        bundler_factory=(lambda: bundler) if bundler is not None else None,
        excluded_patterns=DEFAULT_EXCLUDED_PATH_PATTERNS,
        **overrides,  # type: ignore[arg-type]
    )


@pytest.mark.parametrize("query", ["", "   ", "\n\t"])
def test_blank_query_is_invalid(project_dir: Path, query: str) -> None:
    with pytest.raises(InvalidInputError, match="Invalid query provided"):
        _compiler(project_dir, None).build(query)


def test_bundled_prompt_keeps_instruction_and_context(project_dir: Path) -> None:
    bundler = StaticBundler("src/app.ts\n```ts\nexport const answer = 42;\n```\n")

    compiled = _compiler(project_dir, bundler).build("@src/ explain the exports")

    assert compiled.mode == PromptMode.BUNDLED
    assert compiled.clean_query == "explain the exports"
    assert bundler.clean_query == "explain the exports"
    assert bundler.references is not None
    assert [reference.raw for reference in bundler.references] == ["src/"]
    assert compiled.text == (
        "explain the exports\n\n# Codebase Context\n\n"
        "src/app.ts\n```ts\nexport const answer = 42;\n```\n"
    )
    assert compiled.notes == ["bundled"]


def test_extracting_context_reproduces_untruncated_bundle(project_dir: Path) -> None:
    text = "tree\n\n# Codebase Context\n\nliteral heading inside a file\n  trailing  \n"
    compiled = _compiler(project_dir, StaticBundler(text)).build("@./ summarize")

    assert extract_codebase_context(compiled.text) == text


def test_truncated_bundle_uses_truncated_heading_and_note(project_dir: Path) -> None:
    compiled = _compiler(project_dir, StaticBundler("partial", truncated=True)).build(
        "@src/ review",
    )

    assert compiled.text == (
        f"review\n\n# Codebase Context (Truncated)\n\npartial\n\n{TRUNCATION_NOTE}"
    )
    assert extract_codebase_context(compiled.text) == "partial"


def test_analysis_keywords_trigger_bundling_without_paths(project_dir: Path) -> None:
    bundler = StaticBundler("whole project")

    compiled = _compiler(project_dir, bundler).build("Give me an architecture overview")

    assert compiled.mode == PromptMode.BUNDLED
    assert bundler.references == []


def test_plain_questions_skip_bundling(project_dir: Path) -> None:
    bundler = StaticBundler("unused")

    compiled = _compiler(project_dir, bundler).build("what is a monad?")

    assert compiled.mode == PromptMode.PATHS
    assert compiled.text == "what is a monad?"
    assert bundler.references is None


def test_should_bundle_matches_keyword_prefixes_only() -> None:
    base = Path("/repo")

    assert should_bundle("please Review this", extract_paths_from_query("x", base))
    assert should_bundle("analyze it", extract_paths_from_query("x", base))
    assert not should_bundle("decode the token", extract_paths_from_query("x", base))


def test_unavailable_bundler_falls_back_to_path_substitution(project_dir: Path) -> None:
    compiler = QueryCompiler(
        base_dir=project_dir,
        bundler_factory=_unavailable,
        excluded_patterns=DEFAULT_EXCLUDED_PATH_PATTERNS,
    )

    compiled = compiler.build("@./src/app.ts explain")

    assert compiled.mode == PromptMode.PATHS
    assert compiled.text == f"@{project_dir}/src/app.ts explain"
    assert compiled.notes == ["code2prompt unavailable: code2prompt not found: code2prompt"]
    assert compiled.warnings == []


def test_missing_bundler_is_silent_for_keyword_only_queries(project_dir: Path) -> None:
    compiler = QueryCompiler(
        base_dir=project_dir,
        bundler_factory=_unavailable,
        excluded_patterns=DEFAULT_EXCLUDED_PATH_PATTERNS,
    )

    compiled = compiler.build("review the error handling")

    assert compiled.mode == PromptMode.PATHS
    assert compiled.text == "review the error handling"
    assert compiled.notes == []


def test_bundler_failure_falls_back_too(project_dir: Path) -> None:
    class BrokenBundler(StaticBundler):
        def bundle(self, references, **kwargs):  # type: ignore[no-untyped-def]
            raise BundlerError("code2prompt exited with code 2: boom")

    compiled = _compiler(project_dir, BrokenBundler("")).build("@src/ explain")

    assert compiled.mode == PromptMode.PATHS
    assert compiled.text == f"@{project_dir}/src/ explain"


def test_path_mode_reports_missing_and_excluded_paths(project_dir: Path) -> None:
    compiled = _compiler(project_dir, None).build("@node_modules/ @missing.ts check")

    assert compiled.text == f"@{project_dir}/missing.ts check"
    assert compiled.warnings == [
        "Skipping excluded path @node_modules/ (matches 'node_modules')",
        "Path not found: missing.ts",
    ]


def test_query_that_normalizes_to_nothing_is_invalid(project_dir: Path) -> None:
    with pytest.raises(InvalidInputError, match="Failed to process the query"):
        _compiler(project_dir, None).build("@node_modules/")


def test_bundled_mode_warns_about_missing_paths(project_dir: Path) -> None:
    compiled = _compiler(project_dir, StaticBundler("ctx")).build("@lib/ @src/ compare")

    assert compiled.warnings == ["Path not found: lib/"]


def test_oversized_prompt_moves_context_to_scratch_file(project_dir: Path) -> None:
    text = "y" * 500
    compiler = _compiler(project_dir, StaticBundler(text), max_inline_prompt_chars=100)

    with compiler.compile("@src/ explain") as compiled:
        scratch = compiled.scratch_path
        assert scratch is not None
        assert scratch.parent == project_dir / CONFIG_DIR_NAME
        assert scratch.read_text("utf-8") == text
        assert f"@{scratch}" in compiled.text
        assert compiled.text.startswith("explain\n\n# Codebase Context\n\n")

    assert not scratch.exists()


def test_scratch_file_is_removed_when_the_scope_fails(project_dir: Path) -> None:
    compiler = _compiler(project_dir, StaticBundler("z" * 500), max_inline_prompt_chars=100)

    with pytest.raises(RuntimeError, match="backend exploded"):
        with compiler.compile("@src/ explain") as compiled:
            scratch = compiled.scratch_path
            raise RuntimeError("backend exploded")

    assert scratch is not None
    assert not scratch.exists()


def test_scratch_cleanup_tolerates_an_already_deleted_file(project_dir: Path) -> None:
    compiler = _compiler(project_dir, StaticBundler("z" * 500), max_inline_prompt_chars=100)

    with compiler.compile("@src/ explain") as compiled:
        assert compiled.scratch_path is not None
        compiled.scratch_path.unlink()


def test_extract_codebase_context_without_section_returns_none() -> None:
    assert extract_codebase_context("just a question") is None
