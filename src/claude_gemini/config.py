"""Runtime configuration for the sync pipeline, watch mode and CLI."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_DIR_NAME = ".claude-gemini"
CONFIG_FILE_NAME = "config.json"
ROOT_CONFIG_FILE_NAME = ".claude-gemini.json"

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODELS: tuple[str, ...] = (
    "gemini-2.5-flash",
    "gemini-2.0-flash-exp",
    "gemini-1.5-flash",
    "gemini-1.5-flash-8b",
)
DEFAULT_EXCLUDED_PATH_PATTERNS: tuple[str, ...] = (
    "node_modules",
    "bower_components",
    "vendor",
    "venv",
    ".venv",
    "__pycache__",
    "*.egg-info",
    "dist",
    "build",
    "out",
    "target",
    ".next",
    ".nuxt",
    "coverage",
    ".git",
    ".svn",
    ".hg",
)
DEFAULT_WATCH_PATTERNS: tuple[str, ...] = ("*.ts", "*.tsx", "*.js", "*.jsx")
DEFAULT_WATCH_IGNORED: tuple[str, ...] = (
    "node_modules",
    ".git",
    "dist",
    "build",
    CONFIG_DIR_NAME,
)


@dataclass(slots=True)
class BackendSettings:
    """Gemini CLI location, model routing and attempt timing."""

    executable: str = "gemini"
    search_paths: tuple[Path, ...] = ()
    model: str = DEFAULT_MODEL
    fallback_models: tuple[str, ...] = DEFAULT_FALLBACK_MODELS
    timeout_seconds: int = 300
    graceful_shutdown_seconds: float = 5.0
    progress_interval_seconds: float = 2.0
    auto_accept: bool = True


@dataclass(slots=True)
class BundlerSettings:
    """code2prompt context bundling settings."""

    enabled: bool = True
    executable: str = "code2prompt"
    ripgrep_executable: str = "rg"
    token_ceiling: int = 15_000
    chars_per_token: int = 4
    timeout_seconds: int = 120
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    line_numbers: bool = False
    template: Path | None = None
    max_inline_prompt_chars: int = 100_000


@dataclass(slots=True)
class PathSettings:
    """`@path` extraction settings."""

    excluded_patterns: tuple[str, ...] = DEFAULT_EXCLUDED_PATH_PATTERNS


@dataclass(slots=True)
class WatchSettings:
    """File watcher settings."""

    patterns: tuple[str, ...] = DEFAULT_WATCH_PATTERNS
    debounce_ms: int = 2_000
    ignored: tuple[str, ...] = DEFAULT_WATCH_IGNORED


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    bundler: BundlerSettings = field(default_factory=BundlerSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    format: bool = True
    ripgrep: bool = False

    @classmethod
    def from_env(cls, cwd: Path | None = None, home: Path | None = None) -> Settings:
        """Merge defaults, config files (global, project, root) and environment overrides."""

        cwd = cwd or Path.cwd()
        home = home or Path.home()
        values = load_config_files(cwd=cwd, home=home)

        backend = BackendSettings(
            executable=os.getenv(
                "CLAUDE_GEMINI_GEMINI_PATH",
                _as_str(values.get("geminiPath"), "gemini"),
            ),
            search_paths=_collect_search_paths(values, home=home),
            model=os.getenv("CLAUDE_GEMINI_MODEL", _as_str(values.get("model"), DEFAULT_MODEL)),
            fallback_models=_as_str_tuple(
                os.getenv("CLAUDE_GEMINI_FALLBACK_MODELS", values.get("fallbackModels")),
                DEFAULT_FALLBACK_MODELS,
            ),
            timeout_seconds=_as_int(
                os.getenv("CLAUDE_GEMINI_TIMEOUT", values.get("timeout")),
                300,
                name="timeout",
            ),
        )
        bundler = BundlerSettings(
            enabled=_as_bool(
                os.getenv("CLAUDE_GEMINI_CODE2PROMPT", values.get("code2prompt")),
                True,
                name="code2prompt",
            ),
            executable=os.getenv(
                "CLAUDE_GEMINI_CODE2PROMPT_PATH",
                _as_str(values.get("code2promptPath"), "code2prompt"),
            ),
            token_ceiling=_as_int(
                os.getenv("CLAUDE_GEMINI_TOKEN_CEILING", values.get("tokenCeiling")),
                15_000,
                name="tokenCeiling",
            ),
            include_patterns=_as_str_tuple(values.get("includePatterns"), ()),
            exclude_patterns=_as_str_tuple(values.get("excludePatterns"), ()),
            line_numbers=_as_bool(values.get("lineNumbers"), False, name="lineNumbers"),
        )
        watch = WatchSettings(
            patterns=_as_str_tuple(values.get("watchPatterns"), DEFAULT_WATCH_PATTERNS),
        )
        return cls(
            backend=backend,
            bundler=bundler,
            watch=watch,
            format=_as_bool(values.get("format"), True, name="format"),
            ripgrep=_as_bool(values.get("ripgrep"), False, name="ripgrep"),
        )

    def validate(self) -> None:
        """Raise configuration error on values the pipeline cannot run with."""

        if self.backend.timeout_seconds <= 0:
            raise ValueError("timeout must be a positive number of seconds.")
        if self.backend.graceful_shutdown_seconds < 0:
            raise ValueError("graceful shutdown window must be >= 0.")
        if self.backend.progress_interval_seconds <= 0:
            raise ValueError("progress interval must be > 0.")
        if self.bundler.token_ceiling <= 0:
            raise ValueError("tokenCeiling must be a positive integer.")
        if self.bundler.chars_per_token <= 0:
            raise ValueError("chars per token must be a positive integer.")
        if self.watch.debounce_ms < 0:
            raise ValueError("debounce must be >= 0 milliseconds.")

    def to_config_dict(self) -> dict[str, object]:
        """Effective configuration using config-file key names."""

        return {
            "timeout": self.backend.timeout_seconds,
            "model": self.backend.model,
            "fallbackModels": list(self.backend.fallback_models),
            "ripgrep": self.ripgrep,
            "format": self.format,
            "code2prompt": self.bundler.enabled,
            "geminiPath": self.backend.executable,
            "code2promptPath": self.bundler.executable,
            "searchPaths": [str(path) for path in self.backend.search_paths],
            "tokenCeiling": self.bundler.token_ceiling,
            "includePatterns": list(self.bundler.include_patterns),
            "excludePatterns": list(self.bundler.exclude_patterns),
            "lineNumbers": self.bundler.line_numbers,
            "watchPatterns": list(self.watch.patterns),
        }


def debug_enabled() -> bool:
    """`DEBUG`, `CG_DEBUG` or `CLAUDE_GEMINI_DEBUG` turn on diagnostic logging."""

    return any(
        _truthy(os.getenv(name)) for name in ("DEBUG", "CG_DEBUG", "CLAUDE_GEMINI_DEBUG")
    )


def config_file_paths(*, cwd: Path, home: Path) -> tuple[Path, ...]:
    """Config files in merge order; later files override earlier ones."""

    return (
        home / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
        cwd / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
        cwd / ROOT_CONFIG_FILE_NAME,
    )


def load_config_files(*, cwd: Path, home: Path) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for path in config_file_paths(cwd=cwd, home=home):
        merged.update(_read_config_file(path))
    return merged


def save_config(
    values: dict[str, Any],
    *,
    global_: bool = False,
    cwd: Path | None = None,
    home: Path | None = None,
) -> Path:
    """Merge values into the project (or global) config file and return its path."""

    base = (home or Path.home()) if global_ else (cwd or Path.cwd())
    path = base / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = _read_config_file(path)
    existing.update(values)
    path.write_text(json.dumps(existing, indent=2) + "\n", "utf-8")
    return path


def parse_config_value(raw: str) -> object:
    """Interpret `--set key=value` input: booleans and numbers, else the raw string."""

    if raw == "true":
        return True
    if raw == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in config file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")
    return payload


def _collect_search_paths(values: dict[str, Any], *, home: Path) -> tuple[Path, ...]:
    candidates: list[Path] = []
    nvm_bin = os.getenv("NVM_BIN", "").strip()
    if nvm_bin:
        candidates.append(Path(nvm_bin))
    candidates.extend(
        Path(value).expanduser() for value in _as_str_tuple(values.get("searchPaths"), ())
    )
    candidates.extend((Path("/usr/local/bin"), home / ".local" / "bin", home / "bin"))

    deduped: list[Path] = []
    for candidate in candidates:
        if candidate not in deduped:
            deduped.append(candidate)
    return tuple(deduped)


def _as_str(value: object, default: str) -> str:
    if value is None:
        return default
    return str(value)


def _as_int(value: object, default: int, *, name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer value for {name}: {value!r}")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _as_bool(value: object, default: bool, *, name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _as_str_tuple(value: object, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, list | tuple):
        parts = [str(part) for part in value]
    else:
        raise ValueError(f"Expected a list or comma-separated string, got {value!r}")
    return tuple(part.strip() for part in parts if part.strip())


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no", "off"}
