"""Controllers for sync, watch and config CLI commands."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from rich.console import Console

from claude_gemini.config import CONFIG_DIR_NAME, Settings, parse_config_value, save_config
from claude_gemini.errors import (
    BackendNotFoundError,
    BackendRunError,
    ClaudeGeminiError,
    InvalidInputError,
    SyncCanceledError,
)
from claude_gemini.sync.backend import BackendRunRequest, GeminiCliBackend, LlmBackend
from claude_gemini.sync.bundler import BundleOptions, Code2PromptBundler
from claude_gemini.sync.compiler import QueryCompiler
from claude_gemini.sync.executables import locate_executable
from claude_gemini.sync.fallback import ModelFallbackController, build_model_candidates
from claude_gemini.sync.models import (
    AttemptChunk,
    AttemptDone,
    AttemptFirstByte,
    AttemptNotice,
    AttemptProgress,
    AttemptResult,
    AttemptStarted,
    CompiledPrompt,
    FailureClass,
    ModelRetry,
    PromptMode,
)
from claude_gemini.sync.watch import analysis_query, iter_change_batches

logger = logging.getLogger(__name__)

GEMINI_INSTALL_HINT = "Install with: npm install -g @google/gemini-cli"
PATH_TIP = "Tip: Use @./ for current directory or check that paths exist with ls"
RULE_CHARACTERS = "═"

CONFIG_KEY_HELP: dict[str, str] = {
    "timeout": "Analysis timeout in seconds (default: 300)",
    "model": "Gemini model to use (default: gemini-2.5-pro)",
    "fallbackModels": "Models tried in order after a quota error",
    "ripgrep": "Use ripgrep pre-filtering (default: false)",
    "format": "Format output for Claude (default: true)",
    "code2prompt": "Bundle codebase context with code2prompt (default: true)",
    "watchPatterns": "Glob patterns for watch mode",
    "geminiPath": "Gemini CLI executable (default: gemini)",
    "code2promptPath": "code2prompt executable (default: code2prompt)",
    "searchPaths": "Extra directories searched for executables",
    "tokenCeiling": "Token budget for bundled context (default: 15000)",
    "includePatterns": "Extra code2prompt include patterns",
    "excludePatterns": "Extra code2prompt exclude patterns",
    "lineNumbers": "Add line numbers to bundled code (default: false)",
}


@dataclass(slots=True)
class SyncCommand:
    """CLI input for one analysis."""

    query: str
    timeout_seconds: int | None = None
    model: str | None = None
    ripgrep: bool | None = None
    format: bool | None = None
    code2prompt: bool | None = None
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    line_numbers: bool | None = None
    template: Path | None = None
    cwd: Path | None = None


@dataclass(slots=True)
class WatchCommand:
    """CLI input for watch mode."""

    patterns: tuple[str, ...] = ()
    debounce_ms: int | None = None
    cwd: Path | None = None


@dataclass(slots=True)
class ConfigCommand:
    """CLI input for configuration management."""

    list_values: bool = False
    assignments: tuple[str, ...] = ()
    global_: bool = False
    cwd: Path | None = None


class SyncCliController:
    """Compile a query, run it through model fallback and render the stream."""

    def __init__(
        self,
        *,
        backend: LlmBackend | None = None,
        console: Console | None = None,
        error_console: Console | None = None,
    ) -> None:
        self.backend = backend or GeminiCliBackend()
        self._console = console
        self._error_console = error_console

    @property
    def console(self) -> Console:
        return self._console or Console(highlight=False)

    @property
    def error_console(self) -> Console:
        return self._error_console or Console(stderr=True, highlight=False)

    def run(
        self,
        command: SyncCommand,
        *,
        stop_event: threading.Event | None = None,
    ) -> AttemptResult:
        """Run one analysis; installs signal handlers unless the caller owns them."""

        if stop_event is not None:
            return self._run(command, stop_event=stop_event)
        stop_event = threading.Event()
        with signal_handlers(stop_event):
            return self._run(command, stop_event=stop_event)

    def _run(self, command: SyncCommand, *, stop_event: threading.Event) -> AttemptResult:
        if not isinstance(command.query, str) or not command.query.strip():
            raise InvalidInputError("Invalid query provided. Please provide a valid query string.")

        cwd = command.cwd or Path.cwd()
        settings = Settings.from_env(cwd=cwd)
        _apply_overrides(settings, command)
        settings.validate()

        executable = locate_executable(settings.backend.executable, settings.backend.search_paths)
        if executable is None:
            raise BackendNotFoundError(
                "Gemini CLI not found. Please ensure it is installed. " + GEMINI_INSTALL_HINT,
            )
        logger.debug("Using Gemini CLI at %s", executable)

        compiler = QueryCompiler(
            base_dir=cwd,
            bundler_factory=(
                partial(Code2PromptBundler.from_settings, settings, use_ripgrep=settings.ripgrep)
                if settings.bundler.enabled
                else None
            ),
            bundle_options=BundleOptions(
                include=settings.bundler.include_patterns,
                exclude=settings.bundler.exclude_patterns,
                line_numbers=settings.bundler.line_numbers,
                template=settings.bundler.template,
            ),
            excluded_patterns=settings.paths.excluded_patterns,
            max_inline_prompt_chars=settings.bundler.max_inline_prompt_chars,
        )
        candidates = build_model_candidates(
            command.model,
            configured=settings.backend.model,
            fallback_models=settings.backend.fallback_models,
        )
        fallback = ModelFallbackController(backend=self.backend, candidates=candidates)

        with compiler.compile(command.query) as compiled:
            self._report_compiled(compiled, formatted=settings.format)
            request = BackendRunRequest(
                executable=executable,
                prompt=compiled.text,
                model=candidates[0],
                timeout_seconds=settings.backend.timeout_seconds,
                auto_accept=settings.backend.auto_accept,
                strip_ansi=settings.format,
                progress_interval_seconds=settings.backend.progress_interval_seconds,
                graceful_shutdown_seconds=settings.backend.graceful_shutdown_seconds,
                shutdown_requested=stop_event.is_set,
                cwd=cwd,
            )
            try:
                if settings.format:
                    return self._stream_formatted(fallback, request)
                return self._run_raw(fallback, request)
            except BackendRunError as error:
                self._report_failure(error)
                raise

    def _report_compiled(self, compiled: CompiledPrompt, *, formatted: bool) -> None:
        err = self.error_console
        if compiled.warnings:
            err.print("\n⚠️  Path warnings:", style="yellow")
            for warning in compiled.warnings:
                err.print(f"   - {warning}", style="dim", markup=False)
            err.print(f"\n{PATH_TIP}\n", style="cyan")

        if compiled.mode == PromptMode.PATHS:
            if not formatted:
                return
            for note in compiled.notes:
                err.print(f"⚠️  {note}", style="yellow", markup=False)
            if compiled.notes:
                err.print("Falling back to standard path processing...", style="dim")
            return

        if not formatted or compiled.bundle is None:
            return
        out = self.console
        out.print("🔄 Using code2prompt for enhanced codebase analysis...", style="cyan")
        for note in compiled.notes:
            out.print(note, style="dim", markup=False)
        out.print(f"📊 Code context: {compiled.bundle.token_count} tokens", style="dim")
        if compiled.scratch_path is not None:
            out.print(f"Context attached as {compiled.scratch_path}", style="dim", markup=False)

    def _stream_formatted(
        self,
        fallback: ModelFallbackController,
        request: BackendRunRequest,
    ) -> AttemptResult:
        out = self.console
        out.print("\n# IMPORTANT: Gemini Analysis in Progress\n", style="yellow")
        out.print("Streaming results from Gemini in real-time. Please wait for completion.\n")
        out.rule(characters=RULE_CHARACTERS, style="cyan")

        final: AttemptResult | None = None
        status = out.status("Running Gemini analysis...", spinner="dots")
        status.start()
        try:
            for event in fallback.stream(request):
                if isinstance(event, AttemptStarted):
                    status.update(f"Running Gemini analysis ({event.model or 'auto-select'})...")
                elif isinstance(event, AttemptProgress):
                    status.update(
                        f"Waiting for Gemini... {event.percent}% "
                        f"({int(event.elapsed_seconds)}s/{int(event.timeout_seconds)}s)",
                    )
                elif isinstance(event, AttemptFirstByte):
                    status.stop()
                    out.print("\n▶ Streaming Gemini response:\n", style="green")
                elif isinstance(event, AttemptChunk):
                    out.out(event.text, end="", highlight=False)
                elif isinstance(event, AttemptNotice):
                    out.print(event.text, style="dim", markup=False)
                elif isinstance(event, ModelRetry):
                    status.stop()
                    out.print(
                        f"\n⚡ Retrying with model: {event.model or 'auto-select'}\n",
                        style="yellow",
                    )
                    status.update("Running Gemini analysis...")
                    status.start()
                elif isinstance(event, AttemptDone):
                    final = event.result
        finally:
            status.stop()

        if final is None:  # pragma: no cover - fallback raises before this
            raise RuntimeError("Gemini produced no result.")
        if final.stdout and not final.stdout.endswith("\n"):
            out.out("")
        out.print()
        out.rule(characters=RULE_CHARACTERS, style="cyan")
        out.print("\n✅ Analysis complete!\n", style="green")
        out.print("Results have been streamed above.", style="yellow")
        return final

    def _run_raw(
        self,
        fallback: ModelFallbackController,
        request: BackendRunRequest,
    ) -> AttemptResult:
        result = fallback.run(request)
        self.console.out(result.stdout.rstrip("\n"), highlight=False)
        return result

    def _report_failure(self, error: BackendRunError) -> None:
        err = self.error_console
        err.print("Analysis failed", style="red")
        guidance = remediation_lines(error.failure_class)
        if not guidance:
            return
        title, *steps = guidance
        err.print(f"\n{title}", style="yellow")
        for step in steps:
            err.print(step, style="dim", markup=False)


class WatchCliController:
    """Run an analysis for every debounced batch of changed files."""

    def __init__(self, *, sync_controller: SyncCliController | None = None) -> None:
        self.sync_controller = sync_controller or SyncCliController()

    def run(self, command: WatchCommand, *, stop_event: threading.Event | None = None) -> int:
        """Watch until interrupted; return the number of analyses started."""

        cwd = command.cwd or Path.cwd()
        settings = Settings.from_env(cwd=cwd)
        patterns = command.patterns or settings.watch.patterns
        debounce_ms = (
            command.debounce_ms if command.debounce_ms is not None else settings.watch.debounce_ms
        )
        out = self.sync_controller.console
        err = self.sync_controller.error_console
        out.print("Starting file watcher...", style="blue")
        out.print(f"Watching patterns: {', '.join(patterns)}", style="dim", markup=False)
        out.print(f"Debounce: {debounce_ms}ms", style="dim")
        out.print("\nPress Ctrl+C to stop\n", style="yellow")

        stop_event = stop_event or threading.Event()
        analyses = 0
        with signal_handlers(stop_event):
            for batch in iter_change_batches(
                cwd,
                patterns=patterns,
                ignored=settings.watch.ignored,
                debounce_ms=debounce_ms,
                stop_event=stop_event,
            ):
                for path in batch.deleted:
                    out.print(f"File deleted: {path.as_posix()}", style="red", markup=False)
                for path in batch.changed:
                    if stop_event.is_set():
                        break
                    out.print(f"\nFile changed: {path.as_posix()}", style="blue", markup=False)
                    out.print("Running analysis...\n", style="yellow")
                    analyses += 1
                    try:
                        self.sync_controller.run(
                            SyncCommand(query=analysis_query(path), cwd=cwd),
                            stop_event=stop_event,
                        )
                    except SyncCanceledError:
                        logger.debug("Analysis of %s canceled", path)
                        stop_event.set()
                        break
                    except ClaudeGeminiError as error:
                        err.print(f"Analysis failed: {error}", style="red", markup=False)
                if stop_event.is_set():
                    break

        out.print("\n\nStopping file watcher...", style="yellow")
        return analyses


class ConfigCliController:
    """List or update configuration files."""

    def run(self, command: ConfigCommand) -> list[str]:
        cwd = command.cwd or Path.cwd()
        if command.list_values:
            settings = Settings.from_env(cwd=cwd)
            return [
                "Current configuration:",
                json.dumps(settings.to_config_dict(), indent=2),
            ]
        if command.assignments:
            return self._set(command.assignments, global_=command.global_, cwd=cwd)
        return _config_help_lines()

    def _set(self, assignments: tuple[str, ...], *, global_: bool, cwd: Path) -> list[str]:
        values: dict[str, object] = {}
        for assignment in assignments:
            key, separator, raw = assignment.partition("=")
            key = key.strip()
            if not separator or not key:
                raise ValueError("Invalid format. Use: --set key=value")
            if key not in CONFIG_KEY_HELP:
                raise ValueError(
                    f"Unknown configuration key: {key}. "
                    f"Available keys: {', '.join(CONFIG_KEY_HELP)}",
                )
            values[key] = parse_config_value(raw.strip())

        path = save_config(values, global_=global_, cwd=cwd)
        lines = [f"Set {key} = {_render_value(value)}" for key, value in values.items()]
        lines.append("(global configuration)" if global_ else "(project configuration)")
        lines.append(f"Saved to {path}")
        return lines


def remediation_lines(failure_class: FailureClass) -> list[str]:
    """Title line followed by steps for the operator, per failure class."""

    if failure_class == FailureClass.QUOTA_EXCEEDED:
        return [
            "Quota exceeded on every model candidate.",
            "1. Set up a Gemini API key for higher quotas",
            "2. Wait for daily quota reset",
            "3. Pass a different model: cg sync -m <model> \"your query\"",
        ]
    if failure_class == FailureClass.BAD_REQUEST:
        return [
            "Bad Request Error. Common causes:",
            "1. Non-existent file paths (e.g., @app/, @lib/ when these don't exist)",
            "2. Incorrectly formatted query",
            "3. Special characters that need escaping",
            "Tips: use @src/ or @./ for the current directory, check paths with ls -la,",
            "try simpler queries first, enable debug: CG_DEBUG=1 cg \"your query\"",
        ]
    if failure_class == FailureClass.TIMEOUT:
        return [
            "The Gemini CLI is not responding. This could be due to:",
            "1. Network connectivity issues",
            "2. Gemini API server problems",
            "3. Authentication issues",
            "Troubleshooting: run gemini directly (gemini -p \"test\"),",
            "check that you're logged in, or enable debug: CG_DEBUG=1 cg \"@package.json test\"",
        ]
    if failure_class == FailureClass.PROCESS_ERROR:
        return [
            "The Gemini CLI exited with an error.",
            "1. Run the same query with CG_DEBUG=1 to see the full stderr",
            "2. Try running gemini directly: gemini -p \"test\"",
        ]
    return []


@contextmanager
def signal_handlers(stop_event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into `stop_event` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.debug("Received %s, stopping", name)
        stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _apply_overrides(settings: Settings, command: SyncCommand) -> None:
    if command.timeout_seconds is not None:
        settings.backend.timeout_seconds = command.timeout_seconds
    if command.ripgrep is not None:
        settings.ripgrep = command.ripgrep
    if command.format is not None:
        settings.format = command.format
    if command.code2prompt is not None:
        settings.bundler.enabled = command.code2prompt
    if command.include:
        settings.bundler.include_patterns = (*settings.bundler.include_patterns, *command.include)
    if command.exclude:
        settings.bundler.exclude_patterns = (*settings.bundler.exclude_patterns, *command.exclude)
    if command.line_numbers is not None:
        settings.bundler.line_numbers = command.line_numbers
    if command.template is not None:
        settings.bundler.template = command.template


def _config_help_lines() -> list[str]:
    width = max(len(key) for key in CONFIG_KEY_HELP)
    return [
        "Configuration management:",
        "  --list           Show current configuration",
        "  --set key=value  Set a configuration value",
        "  --global         Use global configuration",
        "",
        f"Config files: ~/{CONFIG_DIR_NAME}/config.json, ./{CONFIG_DIR_NAME}/config.json",
        "",
        "Available keys:",
        *(f"  {key.ljust(width)} - {text}" for key, text in CONFIG_KEY_HELP.items()),
    ]


def _render_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
