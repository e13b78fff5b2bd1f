from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from claude_gemini.errors import BackendNotFoundError, InvalidInputError
from claude_gemini.sync.backend import BackendRunRequest, GeminiCliBackend, build_run_args
from claude_gemini.sync.models import (
    AttemptChunk,
    AttemptDone,
    AttemptFirstByte,
    AttemptNotice,
    AttemptProgress,
    AttemptResult,
    AttemptStarted,
    AttemptState,
    FailureClass,
)

pytestmark = [
    allure.epic("Gemini Runtime"),
    allure.feature("Backend Executor"),
]

AgentFactory = Callable[[str, str], Path]


def _request(executable: Path, **overrides: object) -> BackendRunRequest:
    values: dict[str, object] = {
        "executable": executable,
        "prompt": "hello from the test",
        "model": "gemini-test",
        "timeout_seconds": 20,
        "progress_interval_seconds": 0.1,
        "graceful_shutdown_seconds": 0.5,
    }
    values.update(overrides)
    return BackendRunRequest(**values)  # type: ignore[arg-type]


def _result(events: list[object]) -> AttemptResult:
    done = events[-1]
    assert isinstance(done, AttemptDone)
    return done.result


def test_build_run_args_renders_auto_accept_model_and_prompt() -> None:
    assert build_run_args(executable="gemini", prompt="hi", model="gemini-2.5-pro") == [
        "gemini",
        "-y",
        "-m",
        "gemini-2.5-pro",
        "-p",
        "hi",
    ]


def test_build_run_args_omits_empty_model() -> None:
    assert build_run_args(executable="gemini", prompt="hi", model="", auto_accept=False) == [
        "gemini",
        "-p",
        "hi",
    ]


def test_build_run_args_rejects_empty_prompt() -> None:
    with pytest.raises(InvalidInputError):
        build_run_args(executable="gemini", prompt="  ", model="")


def test_stream_yields_ordered_events_and_full_output(fake_gemini: Path) -> None:
    events = list(GeminiCliBackend().stream(_request(fake_gemini)))

    assert isinstance(events[0], AttemptStarted)
    first_byte = next(i for i, event in enumerate(events) if isinstance(event, AttemptFirstByte))
    first_chunk = next(i for i, event in enumerate(events) if isinstance(event, AttemptChunk))
    assert first_byte < first_chunk

    result = _result(events)
    assert result.state == AttemptState.SUCCEEDED
    assert result.exit_code == 0
    assert result.stdout == "model=gemini-test\nhello from the test\n"
    streamed = "".join(event.text for event in events if isinstance(event, AttemptChunk))
    assert streamed == result.stdout


def test_dotenv_banner_is_not_reported_as_notice(fake_gemini: Path) -> None:
    events = list(GeminiCliBackend().stream(_request(fake_gemini)))

    assert not [event for event in events if isinstance(event, AttemptNotice)]
    assert "[dotenv@" in _result(events).stderr


def test_progress_is_reported_while_waiting_for_first_byte(
    fake_gemini: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CLAUDE_GEMINI_ECHO_DELAY_SECONDS", "0.6")

    events = list(GeminiCliBackend().stream(_request(fake_gemini)))

    progress = [event for event in events if isinstance(event, AttemptProgress)]
    assert progress
    first_byte = next(i for i, event in enumerate(events) if isinstance(event, AttemptFirstByte))
    assert all(events.index(event) < first_byte for event in progress)
    assert progress[0].timeout_seconds == 20
    assert 0 <= progress[0].percent <= 100


def test_quota_failure_is_classified(fake_gemini: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_GEMINI_ECHO_QUOTA_MODELS", "gemini-test")

    result = _result(list(GeminiCliBackend().stream(_request(fake_gemini))))

    assert result.state == AttemptState.FAILED
    assert result.exit_code == 1
    assert result.failure_class == FailureClass.QUOTA_EXCEEDED
    assert result.failure is not None
    assert result.failure.message.startswith("429: Quota exceeded")


def test_failure_classification_is_logged_for_debugging(
    fake_gemini: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("CLAUDE_GEMINI_ECHO_QUOTA_MODELS", "gemini-test")
    caplog.set_level(logging.DEBUG, logger="claude_gemini.sync.backend.cli_backend")

    list(GeminiCliBackend().stream(_request(fake_gemini)))

    assert (
        "reason=gemini_quota_exceeded rule=quota_exceeded pattern=quota exceeded" in caplog.text
    )


def test_ansi_codes_are_stripped_and_notices_surface(fake_agent: AgentFactory) -> None:
    agent = fake_agent(
        "colorful",
        """
import sys
sys.stderr.write("Automatically switching to gemini-2.5-flash\\n")
sys.stderr.flush()
sys.stdout.write("\\x1b[32mgreen\\x1b[0m text\\n")
""",
    )

    events = list(GeminiCliBackend().stream(_request(agent)))

    streamed = "".join(event.text for event in events if isinstance(event, AttemptChunk))
    assert streamed == "green text\n"
    notices = [event.text for event in events if isinstance(event, AttemptNotice)]
    assert notices == ["Automatically switching to gemini-2.5-flash"]
    assert _result(events).stdout == "\x1b[32mgreen\x1b[0m text\n"


def test_timeout_kills_the_child_after_grace_window(
    fake_agent: AgentFactory,
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "agent.pid"
    agent = fake_agent(
        "stubborn",
        f"""
import os
import signal
import time
from pathlib import Path

signal.signal(signal.SIGTERM, signal.SIG_IGN)
Path({str(pid_file)!r}).write_text(str(os.getpid()), "utf-8")
time.sleep(60)
""",
    )

    started = time.monotonic()
    result = _result(list(GeminiCliBackend().stream(_request(agent, timeout_seconds=2))))
    elapsed = time.monotonic() - started

    assert result.state == AttemptState.TIMED_OUT
    assert result.exit_code == 124
    assert result.failure_class == FailureClass.TIMEOUT
    assert elapsed < 10
    assert not _alive(int(pid_file.read_text("utf-8")))


def test_shutdown_request_cancels_the_attempt(
    fake_gemini: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CLAUDE_GEMINI_ECHO_DELAY_SECONDS", "30")
    deadline = time.monotonic() + 0.5

    result = _result(
        list(
            GeminiCliBackend().stream(
                _request(fake_gemini, shutdown_requested=lambda: time.monotonic() > deadline),
            ),
        ),
    )

    assert result.state == AttemptState.CANCELED
    assert result.failure is None


def test_closing_the_stream_early_terminates_the_child(
    fake_gemini: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CLAUDE_GEMINI_ECHO_DELAY_SECONDS", "30")
    stream = GeminiCliBackend().stream(_request(fake_gemini))

    assert isinstance(next(stream), AttemptStarted)
    started = time.monotonic()
    stream.close()

    assert time.monotonic() - started < 5


def test_missing_executable_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(BackendNotFoundError):
        list(GeminiCliBackend().stream(_request(tmp_path / "no-such-gemini")))


def _alive(pid: int) -> bool:
    """True while `pid` runs; a zombie awaiting its reaper counts as gone."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    status = Path(f"/proc/{pid}/status")
    if status.exists():
        try:
            state = next(
                line for line in status.read_text("utf-8").splitlines() if line.startswith("State:")
            )
        except (OSError, StopIteration):
            return False
        return "Z" not in state.split()[1]
    return True


@pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX-only")
def test_timeout_kills_descendants_that_keep_the_pipe_open(
    fake_agent: AgentFactory,
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "descendant.pid"
    agent = fake_agent(
        "forking",
        f"""
import subprocess
import sys
from pathlib import Path

descendant = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
Path({str(pid_file)!r}).write_text(str(descendant.pid), "utf-8")
sys.stdout.write("partial answer\\n")
sys.stdout.flush()
""",
    )

    started = time.monotonic()
    result = _result(
        list(
            GeminiCliBackend().stream(
                _request(agent, timeout_seconds=2, graceful_shutdown_seconds=0.5),
            ),
        ),
    )
    elapsed = time.monotonic() - started

    assert result.state == AttemptState.TIMED_OUT
    assert result.stdout == "partial answer\n"
    assert elapsed < 2 + 0.5 + 3
    assert not _alive(int(pid_file.read_text("utf-8")))


@pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX-only")
def test_cancel_kills_descendants_after_the_leader_exits(
    fake_agent: AgentFactory,
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "descendant.pid"
    agent = fake_agent(
        "forking_cancel",
        f"""
import subprocess
import sys
from pathlib import Path

descendant = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
Path({str(pid_file)!r}).write_text(str(descendant.pid), "utf-8")
""",
    )
    cancel_at = time.monotonic() + 1.0

    started = time.monotonic()
    result = _result(
        list(
            GeminiCliBackend().stream(
                _request(agent, shutdown_requested=lambda: time.monotonic() > cancel_at),
            ),
        ),
    )

    assert result.state == AttemptState.CANCELED
    assert time.monotonic() - started < 5
    assert not _alive(int(pid_file.read_text("utf-8")))
