"""Context bundling through code2prompt with token-budget degradation."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from claude_gemini.config import Settings
from claude_gemini.errors import BundlerError, BundlerUnavailableError
from claude_gemini.sync.executables import locate_executable
from claude_gemini.sync.models import ContextBundle, PathReference
from claude_gemini.sync.ripgrep import RipgrepPrefilter

logger = logging.getLogger(__name__)

# Deny-list, never an allow-list: anything not named here may reach the prompt.
DEFAULT_EXCLUSIONS: tuple[str, ...] = (
    # Dependencies and package managers
    "node_modules/**",
    "venv/**",
    "env/**",
    ".venv/**",
    "vendor/**",
    "target/**",
    "pkg/**",
    "packages/**",
    # Build outputs and distributions
    "dist/**",
    "build/**",
    "out/**",
    "bin/**",
    "lib/**",
    "release/**",
    ".next/**",
    ".nuxt/**",
    "_site/**",
    "public/assets/**",
    # IDE and editor files
    ".vscode/**",
    ".idea/**",
    "*.swp",
    "*.swo",
    "*~",
    ".DS_Store",
    "Thumbs.db",
    # Version control
    ".git/**",
    ".svn/**",
    ".hg/**",
    # Logs and temporary files
    "*.log",
    "logs/**",
    "tmp/**",
    "temp/**",
    ".tmp/**",
    # Secrets
    ".env*",
    ".secret*",
    "config/secrets/**",
    # Caches
    ".cache/**",
    "cache/**",
    ".parcel-cache/**",
    ".webpack/**",
    ".rollup.cache/**",
    # Coverage and reports
    "coverage/**",
    ".nyc_output/**",
    "test-results/**",
    # Documentation builds
    "_book/**",
    "docs/_build/**",
    "site/**",
    # Language specific
    "*.pyc",
    "__pycache__/**",
    ".pytest_cache/**",
    "Cargo.lock",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "composer.lock",
    "Gemfile.lock",
)

AGGRESSIVE_EXCLUSIONS: tuple[str, ...] = (
    "*.min.js",
    "*.min.css",
    "*.bundle.js",
    "*.chunk.js",
    "static/**",
    "assets/**",
    "public/**",
    "docs/**",
    "examples/**",
    "test/**",
    "tests/**",
    "__tests__/**",
    "spec/**",
    "*.spec.ts",
    "*.spec.js",
    "*.test.ts",
    "*.test.js",
    "*.d.ts",
    "types/**",
    "@types/**",
)

_TOKEN_COUNT_LINE = re.compile(r"^[ \t]*Token count:[ \t]*([\d,]+)[ \t]*\r?\n?", re.MULTILINE)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


@dataclass(slots=True)
class BundleOptions:
    """Caller-supplied code2prompt rules, layered on top of the defaults."""

    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    line_numbers: bool = False
    template: Path | None = None


@dataclass(slots=True)
class Code2PromptOutput:
    text: str
    token_count: int


class Code2PromptBundler:
    """Render a path set into one bounded text context via code2prompt."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executable: Path,
        token_ceiling: int = 15_000,
        chars_per_token: int = 4,
        timeout_seconds: int = 120,
        prefilter: RipgrepPrefilter | None = None,
    ) -> None:
        self.executable = executable
        self.token_ceiling = token_ceiling
        self.chars_per_token = chars_per_token
        self.timeout_seconds = timeout_seconds
        self.prefilter = prefilter

    @classmethod
    def from_settings(cls, settings: Settings, *, use_ripgrep: bool) -> Code2PromptBundler:
        """Locate code2prompt (and rg when requested); fail fast when the tool is missing."""

        executable = locate_executable(
            settings.bundler.executable,
            settings.backend.search_paths,
        )
        if executable is None:
            raise BundlerUnavailableError(
                f"code2prompt not found: {settings.bundler.executable}. "
                "Install with: cargo install code2prompt",
            )

        prefilter: RipgrepPrefilter | None = None
        if use_ripgrep:
            ripgrep = locate_executable(
                settings.bundler.ripgrep_executable,
                settings.backend.search_paths,
            )
            if ripgrep is None:
                logger.warning("ripgrep not found; skipping pre-filter")
            else:
                prefilter = RipgrepPrefilter(executable=ripgrep)

        return cls(
            executable=executable,
            token_ceiling=settings.bundler.token_ceiling,
            chars_per_token=settings.bundler.chars_per_token,
            timeout_seconds=settings.bundler.timeout_seconds,
            prefilter=prefilter,
        )

    def bundle(
        self,
        references: list[PathReference],
        *,
        base_dir: Path,
        clean_query: str = "",
        options: BundleOptions | None = None,
    ) -> ContextBundle:
        """Bundle the references, degrading when the token budget is exceeded."""

        options = options or BundleOptions()
        primary_path = select_primary_path(references, base_dir=base_dir)
        include = list(options.include)
        notes: list[str] = []

        if not any(reference.is_directory_like for reference in references):
            include.extend(
                reference.resolved.name for reference in references if reference.resolved.name
            )
        if self.prefilter is not None:
            matched = self.prefilter.matching_files(primary_path, clean_query)
            if matched:
                include.extend(matched)
                notes.append(f"Ripgrep pre-filter matched {len(matched)} files.")

        include_rules = _unique(include)
        exclude_rules = _unique([*DEFAULT_EXCLUSIONS, *options.exclude])
        rendered = self.render(
            primary_path,
            include=include_rules,
            exclude=exclude_rules,
            line_numbers=options.line_numbers,
            template=options.template,
        )
        if rendered.token_count <= self.token_ceiling:
            return ContextBundle(
                text=rendered.text,
                token_count=rendered.token_count,
                primary_path=primary_path,
                include=include_rules,
                exclude=exclude_rules,
                notes=notes,
            )

        notes.append(
            f"Large codebase detected ({rendered.token_count} tokens). "
            "Trying more aggressive filtering...",
        )
        logger.info(
            "Bundle over budget: tokens=%s ceiling=%s",
            rendered.token_count,
            self.token_ceiling,
        )
        aggressive_rules = _unique([*exclude_rules, *AGGRESSIVE_EXCLUSIONS])
        filtered = self.render(
            primary_path,
            include=include_rules,
            exclude=aggressive_rules,
            line_numbers=options.line_numbers,
            template=options.template,
        )
        if filtered.token_count <= self.token_ceiling:
            return ContextBundle(
                text=filtered.text,
                token_count=filtered.token_count,
                primary_path=primary_path,
                include=include_rules,
                exclude=aggressive_rules,
                aggressive=True,
                notes=notes,
            )

        limit = self.token_ceiling * self.chars_per_token
        notes.append(f"Content truncated to fit API limits ({self.token_ceiling} tokens approx.)")
        logger.info("Bundle still over budget after filtering: tokens=%s", filtered.token_count)
        return ContextBundle(
            text=filtered.text[:limit],
            token_count=self.token_ceiling,
            primary_path=primary_path,
            include=include_rules,
            exclude=aggressive_rules,
            truncated=True,
            aggressive=True,
            notes=notes,
        )

    def render(
        self,
        path: Path,
        *,
        include: tuple[str, ...],
        exclude: tuple[str, ...],
        line_numbers: bool = False,
        template: Path | None = None,
    ) -> Code2PromptOutput:
        """Run code2prompt once and parse its output."""

        args = build_bundler_args(
            executable=self.executable,
            path=path,
            include=include,
            exclude=exclude,
            line_numbers=line_numbers,
            template=template,
        )
        logger.debug(
            "Running code2prompt on %s (include=%d exclude=%d)",
            path,
            len(include),
            len(exclude),
        )
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                check=False,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as error:
            raise BundlerUnavailableError(f"code2prompt not found: {self.executable}") from error
        except PermissionError as error:
            raise BundlerUnavailableError(
                f"code2prompt is not executable: {self.executable}",
            ) from error
        except subprocess.TimeoutExpired as error:
            raise BundlerError(
                f"code2prompt timed out after {self.timeout_seconds}s on {path}",
            ) from error
        except OSError as error:
            raise BundlerError(f"code2prompt failed to start: {error}") from error

        if completed.returncode != 0:
            raise BundlerError(
                f"code2prompt exited with code {completed.returncode}: "
                f"{_truncate(completed.stderr)}",
            )
        return parse_code2prompt_output(completed.stdout, chars_per_token=self.chars_per_token)


def build_bundler_args(  # noqa: PLR0913
    *,
    executable: Path | str,
    path: Path,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    line_numbers: bool = False,
    template: Path | None = None,
) -> list[str]:
    """Render `<tool> <path> [--include p]* [--exclude p]* [--line-number] --tokens --json`."""

    args = [str(executable), str(path)]
    for pattern in include:
        args.extend(["--include", pattern])
    for pattern in exclude:
        args.extend(["--exclude", pattern])
    if line_numbers:
        args.append("--line-number")
    if template is not None:
        args.extend(["--template", str(template)])
    args.extend(["--tokens", "--json"])
    return args


def parse_code2prompt_output(stdout: str, *, chars_per_token: int = 4) -> Code2PromptOutput:
    """Read `prompt`/`token_count` from JSON, or plaintext with a `Token count:` line."""

    stripped = stdout.strip()
    if not stripped:
        raise BundlerError("code2prompt produced no output.")

    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict):
        text = payload.get("prompt")
        if not isinstance(text, str):
            raise BundlerError("code2prompt JSON output is missing the 'prompt' field.")
        token_count = _coerce_token_count(payload.get("token_count"))
        if token_count is None:
            token_count = _estimate_tokens(text, chars_per_token)
        return Code2PromptOutput(text=text, token_count=token_count)

    plain = _ANSI_ESCAPE.sub("", stdout)
    match = _TOKEN_COUNT_LINE.search(plain)
    if match is None:
        return Code2PromptOutput(text=plain, token_count=_estimate_tokens(plain, chars_per_token))
    text = plain[: match.start()] + plain[match.end() :]
    return Code2PromptOutput(text=text, token_count=int(match.group(1).replace(",", "")))


def select_primary_path(references: list[PathReference], *, base_dir: Path) -> Path:
    """First directory-like target, else the parent of the first file target."""

    if not references:
        return base_dir
    for reference in references:
        if reference.is_directory_like:
            return reference.resolved
    return references[0].resolved.parent


def _coerce_token_count(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.replace(",", "").strip().isdigit():
        return int(value.replace(",", ""))
    return None


def _estimate_tokens(text: str, chars_per_token: int) -> int:
    return len(text) // max(1, chars_per_token)


def _unique(values: list[str]) -> tuple[str, ...]:
    deduped: list[str] = []
    for value in values:
        normalized = value.strip()
        if normalized and normalized not in deduped:
            deduped.append(normalized)
    return tuple(deduped)


def _truncate(value: str, *, limit: int = 240) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
