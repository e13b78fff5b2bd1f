"""Domain models for query compilation and backend execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PathKind(str, Enum):
    """Classification of an `@path` reference."""

    FILE = "file"
    DIRECTORY = "directory"
    AMBIGUOUS = "ambiguous"


class PromptMode(str, Enum):
    """How the compiled prompt carries codebase context."""

    BUNDLED = "bundled"
    PATHS = "paths"


class AttemptState(str, Enum):
    """Lifecycle of one backend subprocess attempt."""

    PENDING = "pending"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


class FailureClass(str, Enum):
    """Normalized failure classes used by fallback policy."""

    QUOTA_EXCEEDED = "quota_exceeded"
    BAD_REQUEST = "bad_request"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class PathReference:
    """One `@token` from a query that denotes a file or directory."""

    raw: str
    kind: PathKind
    resolved: Path

    @property
    def marker(self) -> str:
        return f"@{self.raw}"

    @property
    def is_directory_like(self) -> bool:
        if self.kind == PathKind.AMBIGUOUS:
            return not self.resolved.is_file()
        return self.kind == PathKind.DIRECTORY


@dataclass(slots=True)
class ExtractedQuery:
    """Path references found in a query plus the instruction text around them."""

    paths: list[PathReference]
    clean_query: str
    excluded: list[PathReference] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class NormalizedQuery:
    """Query with relative references rewritten to absolute ones."""

    text: str
    excluded: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PathValidation:
    """Existence check result for `@path` tokens."""

    valid: bool
    warnings: list[str]
    paths: list[str]


@dataclass(slots=True)
class ContextBundle:
    """Rendered code context and the rules used to build it."""

    text: str
    token_count: int
    primary_path: Path
    include: tuple[str, ...]
    exclude: tuple[str, ...]
    truncated: bool = False
    aggressive: bool = False
    notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CompiledPrompt:
    """Final prompt passed to the backend."""

    text: str
    mode: PromptMode
    clean_query: str
    bundle: ContextBundle | None = None
    warnings: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    scratch_path: Path | None = None


@dataclass(slots=True)
class BackendFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    message: str


@dataclass(slots=True)
class AttemptResult:
    """Terminal outcome of one execution attempt."""

    model: str
    state: AttemptState
    exit_code: int | None
    stdout: str
    stderr: str
    elapsed_seconds: float
    failure: BackendFailureClassification | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == AttemptState.SUCCEEDED

    @property
    def failure_class(self) -> FailureClass | None:
        return self.failure.failure_class if self.failure is not None else None


@dataclass(frozen=True, slots=True)
class AttemptStarted:
    model: str


@dataclass(frozen=True, slots=True)
class AttemptProgress:
    """Emitted periodically while no output has arrived yet."""

    elapsed_seconds: float
    timeout_seconds: float

    @property
    def percent(self) -> int:
        if self.timeout_seconds <= 0:
            return 0
        return min(100, int(self.elapsed_seconds / self.timeout_seconds * 100))


@dataclass(frozen=True, slots=True)
class AttemptFirstByte:
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class AttemptChunk:
    text: str


@dataclass(frozen=True, slots=True)
class AttemptNotice:
    """Informational stderr line, e.g. backend-side model switching."""

    text: str


@dataclass(frozen=True, slots=True)
class AttemptDone:
    result: AttemptResult


@dataclass(frozen=True, slots=True)
class ModelRetry:
    """Fallback controller is moving on to the next model candidate."""

    model: str
    previous: AttemptResult


BackendEvent = (
    AttemptStarted | AttemptProgress | AttemptFirstByte | AttemptChunk | AttemptNotice | AttemptDone
)
SyncEvent = BackendEvent | ModelRetry
