"""`@path` reference extraction, normalization and validation."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from pathlib import Path, PurePosixPath

from claude_gemini.sync.models import (
    ExtractedQuery,
    NormalizedQuery,
    PathKind,
    PathReference,
    PathValidation,
)

logger = logging.getLogger(__name__)

PATH_TOKEN_MAX_CHARS = 50
REWRITE_TOKEN_MAX_CHARS = 100

# `@` only opens a marker at the start of the text or after whitespace.
_MARKER = re.compile(r"(?<!\S)@(\S+)")
_TRAILING_PUNCTUATION = ",;:!?)"
_QUOTES = frozenset("\"'`")


def extract_paths_from_query(
    query: str,
    base_dir: Path,
    *,
    excluded_patterns: tuple[str, ...] = (),
) -> ExtractedQuery:
    """Split a query into distinct path references and the instruction text around them."""

    paths: list[PathReference] = []
    excluded: list[PathReference] = []
    warnings: list[str] = []
    seen: set[str] = set()

    def _strip_marker(match: re.Match[str]) -> str:
        token, suffix = _split_token(match.group(1))
        kind = classify_token(token)
        if kind is None:
            return match.group(0)
        if token not in seen:
            seen.add(token)
            reference = PathReference(
                raw=token,
                kind=kind,
                resolved=resolve_token(token, base_dir),
            )
            pattern = excluded_pattern_for(token, excluded_patterns)
            if pattern is None:
                paths.append(reference)
            else:
                excluded.append(reference)
                warnings.append(_exclusion_warning(token, pattern))
        return suffix

    stripped = _MARKER.sub(_strip_marker, query)
    return ExtractedQuery(
        paths=paths,
        clean_query=_collapse_gaps(stripped) if stripped != query else query.strip(),
        excluded=excluded,
        warnings=warnings,
    )


def convert_paths(
    query: str,
    base_dir: Path,
    *,
    excluded_patterns: tuple[str, ...] = (),
) -> NormalizedQuery:
    """Rewrite relative `@path` markers to absolute ones and drop excluded paths."""

    base = str(base_dir).rstrip("/") or "/"
    excluded: list[str] = []
    warnings: list[str] = []

    def _rewrite(match: re.Match[str]) -> str:
        token, suffix = _split_token(match.group(1))
        if classify_token(token) is None or len(token) > REWRITE_TOKEN_MAX_CHARS:
            return match.group(0)
        pattern = excluded_pattern_for(token, excluded_patterns)
        if pattern is not None:
            if token not in excluded:
                excluded.append(token)
                warnings.append(_exclusion_warning(token, pattern))
            return suffix
        return f"@{_absolutize(token, base)}{suffix}"

    rewritten = _MARKER.sub(_rewrite, query)
    text = _collapse_gaps(rewritten) if excluded else rewritten.strip()
    for warning in warnings:
        logger.debug(warning)
    return NormalizedQuery(text=text, excluded=excluded, warnings=warnings)


def validate_paths(
    query: str,
    base_dir: Path | None = None,
    *,
    excluded_patterns: tuple[str, ...] = (),
) -> PathValidation:
    """Check that every `@path` in the query exists; missing paths are warnings only."""

    base = base_dir or Path.cwd()
    warnings: list[str] = []
    paths: list[str] = []
    for match in _MARKER.finditer(query):
        token, _ = _split_token(match.group(1))
        if classify_token(token) is None or token in paths:
            continue
        if excluded_pattern_for(token, excluded_patterns) is not None:
            continue
        paths.append(token)
        if not resolve_token(token, base).exists():
            warnings.append(f"Path not found: {token}")
    return PathValidation(valid=not warnings, warnings=warnings, paths=paths)


def classify_token(token: str) -> PathKind | None:
    """Return the path kind for a marker token, or None when it reads as prose."""

    if not token or len(token) >= PATH_TOKEN_MAX_CHARS:
        return None
    if any(char.isspace() or char in _QUOTES for char in token):
        return None
    if "/" not in token and "." not in token:
        return None

    if token.endswith("/") or token in {".", ".."}:
        return PathKind.DIRECTORY
    name = PurePosixPath(token).name
    if "." in name.strip("."):
        return PathKind.FILE
    return PathKind.AMBIGUOUS


def resolve_token(token: str, base_dir: Path) -> Path:
    candidate = Path(token).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate))


def excluded_pattern_for(token: str, patterns: tuple[str, ...]) -> str | None:
    """First exclusion pattern matching any segment of the token, if any."""

    segments = [segment for segment in token.split("/") if segment not in {"", ".", ".."}]
    for pattern in patterns:
        for segment in segments:
            if fnmatch.fnmatchcase(segment, pattern):
                return pattern
    return None


def _absolutize(token: str, base: str) -> str:
    if token.startswith(("/", "~")):
        return token
    joined = os.path.normpath(os.path.join(base, token))
    if token.endswith("/") or token in {".", ".."}:
        return joined.rstrip("/") + "/"
    return joined


def _split_token(token: str) -> tuple[str, str]:
    stripped = token.rstrip(_TRAILING_PUNCTUATION + ".") or token.rstrip(_TRAILING_PUNCTUATION)
    return stripped, token[len(stripped) :]


def _collapse_gaps(text: str) -> str:
    return re.sub(r"[ \t]{2,}", " ", text).strip()


def _exclusion_warning(token: str, pattern: str) -> str:
    return f"Skipping excluded path @{token} (matches {pattern!r})"
