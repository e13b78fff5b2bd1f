"""Ripgrep pre-filter that narrows the bundle to files mentioning code terms."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_PREFILTER_FILES = 200

_BACKTICKED = re.compile(r"`([^`\s]{2,})`")
_IDENTIFIER = re.compile(
    r"\b(?:[a-z]+[A-Z]\w*|[A-Z][a-z0-9]+[A-Z]\w*|[A-Za-z][A-Za-z0-9]*_\w+)\b",
)


def extract_code_terms(query: str) -> list[str]:
    """Backticked words and camelCase / PascalCase / snake_case identifiers, in order."""

    terms: list[str] = []
    for term in [*_BACKTICKED.findall(query), *_IDENTIFIER.findall(query)]:
        if term not in terms:
            terms.append(term)
    return terms


@dataclass(slots=True)
class RipgrepPrefilter:
    """Find files under a root that contain any of the query's code terms."""

    executable: Path
    timeout_seconds: int = 30

    def matching_files(self, root: Path, query: str) -> list[str]:
        terms = extract_code_terms(query)
        if not terms:
            return []

        args = [str(self.executable), "--files-with-matches", "--fixed-strings"]
        for term in terms:
            args.extend(["-e", term])
        args.append(".")
        logger.debug("Running ripgrep pre-filter in %s: %s", root, terms)
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                cwd=root,
                check=False,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.warning("ripgrep pre-filter timed out after %ss", self.timeout_seconds)
            return []
        except OSError as error:
            logger.warning("ripgrep pre-filter failed to start: %s", error)
            return []

        # rg exits 1 when nothing matched.
        if completed.returncode not in (0, 1):
            logger.warning(
                "ripgrep returned %s: %s",
                completed.returncode,
                completed.stderr.strip(),
            )
            return []

        files: list[str] = []
        for line in completed.stdout.splitlines():
            path = line.strip().removeprefix("./")
            if path and path not in files:
                files.append(path)
        return sorted(files)[:MAX_PREFILTER_FILES]
