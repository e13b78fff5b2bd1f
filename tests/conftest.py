"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from claude_gemini.sync.backend import echo_agent

_FAKE_CODE2PROMPT = """
import json
import os
import sys

args = sys.argv[1:]
log_path = os.environ.get("FAKE_CODE2PROMPT_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(args) + "\\n")

if os.environ.get("FAKE_CODE2PROMPT_FAIL"):
    sys.stderr.write("boom\\n")
    raise SystemExit(2)

aggressive = "tests/**" in args
tokens = int(os.environ.get("FAKE_CODE2PROMPT_TOKENS", "120"))
if aggressive:
    tokens = int(os.environ.get("FAKE_CODE2PROMPT_AGGRESSIVE_TOKENS", str(tokens)))
body = os.environ.get("FAKE_CODE2PROMPT_BODY", "Project Path: " + args[0] + "\\n\\nsource tree")
print(json.dumps({"prompt": body, "token_count": tokens}))
"""


def write_executable(path: Path, implementation: Path) -> Path:
    """POSIX shell shim that runs a Python file with the current interpreter."""

    path.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Fresh HOME without config files and no inherited claude-gemini env vars."""

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("NVM_BIN", raising=False)
    for name in list(os.environ):
        if name.startswith(("CLAUDE_GEMINI_", "FAKE_CODE2PROMPT_")) or name in {
            "DEBUG",
            "CG_DEBUG",
        }:
            monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture()
def bin_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "bin"
    directory.mkdir()
    return directory


@pytest.fixture()
def fake_gemini(bin_dir: Path) -> Path:
    """`gemini` shim backed by the echo agent."""

    return write_executable(bin_dir / "gemini", Path(echo_agent.__file__))


@pytest.fixture()
def fake_agent(bin_dir: Path) -> Callable[[str, str], Path]:
    """Factory for one-off executables: `fake_agent(name, python_source)`."""

    def _write(name: str, script: str) -> Path:
        implementation = bin_dir / f"{name}_impl.py"
        implementation.write_text(script.strip() + "\n", "utf-8")
        return write_executable(bin_dir / name, implementation)

    return _write


@pytest.fixture()
def fake_code2prompt(fake_agent: Callable[[str, str], Path]) -> Path:
    return fake_agent("code2prompt", _FAKE_CODE2PROMPT)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """Small project tree used as the working directory of a query."""

    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.ts").write_text("export const answer = 42;\n", "utf-8")
    (root / "src" / "auth.ts").write_text("export function login() {}\n", "utf-8")
    (root / "package.json").write_text('{"name": "demo"}\n', "utf-8")
    return root
