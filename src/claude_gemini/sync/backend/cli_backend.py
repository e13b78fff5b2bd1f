"""Subprocess-based backend runner for the Gemini CLI."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import re
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Generator
from pathlib import Path
from typing import IO

from claude_gemini.errors import BackendNotFoundError, BackendRunError, InvalidInputError
from claude_gemini.sync.backend.base import BackendRunRequest
from claude_gemini.sync.failure_classifier import (
    TIMEOUT_EXIT_CODE,
    classify_backend_failure,
    is_benign_stderr,
    is_model_switch_notice,
    timeout_failure,
)
from claude_gemini.sync.models import (
    AttemptChunk,
    AttemptDone,
    AttemptFirstByte,
    AttemptNotice,
    AttemptProgress,
    AttemptResult,
    AttemptStarted,
    AttemptState,
    BackendEvent,
    FailureClass,
)

logger = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
_READ_CHUNK_BYTES = 4096
_POLL_SECONDS = 0.1
_READER_JOIN_SECONDS = 1.0
_GROUP_POLL_SECONDS = 0.05
_USE_PROCESS_GROUP = os.name != "nt" and hasattr(os, "killpg")
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

_STDOUT = "stdout"
_STDERR = "stderr"
_EOF = "eof"
_IDLE = "idle"

_RUNNING_STATES = (AttemptState.PENDING, AttemptState.STREAMING)


class GeminiCliBackend:
    """Run one Gemini CLI attempt and stream its output as typed events."""

    def stream(self, request: BackendRunRequest) -> Generator[BackendEvent, None, None]:
        run_args = build_run_args(
            executable=request.executable,
            prompt=request.prompt,
            model=request.model,
            auto_accept=request.auto_accept,
        )
        logger.debug("Running: %s", _describe_args(run_args))
        logger.debug("Working directory: %s", request.cwd or Path.cwd())

        started = time.monotonic()
        process = _spawn(run_args, cwd=request.cwd)
        channel: queue.Queue[tuple[str, str | None]] = queue.Queue()
        readers = [
            threading.Thread(target=_pump_stdout, args=(process.stdout, channel), daemon=True),
            threading.Thread(target=_pump_stderr, args=(process.stderr, channel), daemon=True),
        ]
        for reader in readers:
            reader.start()

        state = AttemptState.PENDING
        exit_code: int | None = None
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        open_streams = len(readers)
        deadline = started + request.timeout_seconds
        next_progress = started + request.progress_interval_seconds

        try:
            yield AttemptStarted(model=request.model)
            while open_streams and state in _RUNNING_STATES:
                now = time.monotonic()
                if now >= deadline:
                    state = AttemptState.TIMED_OUT
                    break
                if request.shutdown_requested is not None and request.shutdown_requested():
                    state = AttemptState.CANCELED
                    break

                try:
                    kind, payload = channel.get(timeout=min(_POLL_SECONDS, deadline - now))
                except queue.Empty:
                    kind, payload = _IDLE, None

                if kind == _STDOUT and payload:
                    if state == AttemptState.PENDING:
                        state = AttemptState.STREAMING
                        yield AttemptFirstByte(elapsed_seconds=time.monotonic() - started)
                    stdout_parts.append(payload)
                    chunk = _ANSI_ESCAPE.sub("", payload) if request.strip_ansi else payload
                    if chunk:
                        yield AttemptChunk(text=chunk)
                elif kind == _STDERR and payload:
                    stderr_parts.append(payload)
                    if is_benign_stderr(payload):
                        continue
                    logger.debug("stderr: %s", payload.rstrip())
                    if is_model_switch_notice(payload):
                        yield AttemptNotice(text=payload.strip())
                elif kind == _EOF:
                    open_streams -= 1

                if state == AttemptState.PENDING and time.monotonic() >= next_progress:
                    yield AttemptProgress(
                        elapsed_seconds=time.monotonic() - started,
                        timeout_seconds=request.timeout_seconds,
                    )
                    next_progress += request.progress_interval_seconds

            if state in _RUNNING_STATES:
                exit_code = _wait_for_exit(process, deadline=deadline)
                if exit_code is None:
                    state = AttemptState.TIMED_OUT
        finally:
            _release(
                process,
                readers=readers,
                graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                force=state in (AttemptState.TIMED_OUT, AttemptState.CANCELED),
            )

        result = _build_result(
            request=request,
            state=state,
            exit_code=exit_code if exit_code is not None else process.returncode,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            elapsed_seconds=time.monotonic() - started,
        )
        if result.failure is not None:
            logger.debug(
                "Attempt failed: model=%s class=%s reason=%s rule=%s pattern=%s",
                request.model or "auto",
                result.failure.failure_class.value,
                result.failure.reason_code,
                result.failure.matched_rule,
                result.failure.matched_pattern,
            )
        yield AttemptDone(result=result)


def build_run_args(
    *,
    executable: Path | str,
    prompt: str,
    model: str,
    auto_accept: bool = True,
) -> list[str]:
    """Render `<binary> [-y] [-m <model>] -p <prompt>`."""

    if not prompt.strip():
        raise InvalidInputError("Prompt is empty.")
    run_args = [str(executable)]
    if auto_accept:
        run_args.append("-y")
    if model.strip():
        run_args.extend(["-m", model.strip()])
    run_args.extend(["-p", prompt])
    return run_args


def _spawn(run_args: list[str], *, cwd: Path | None) -> subprocess.Popen[bytes]:
    try:
        return subprocess.Popen(  # noqa: S603
            run_args,
            cwd=cwd,
            env=os.environ.copy(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=_USE_PROCESS_GROUP,
        )
    except FileNotFoundError as error:
        raise BackendNotFoundError(f"Gemini CLI not found: {run_args[0]}") from error
    except OSError as error:
        raise BackendRunError(
            f"Gemini CLI failed to start: {error}",
            failure_class=FailureClass.PROCESS_ERROR,
        ) from error


def _pump_stdout(stream: IO[bytes], channel: queue.Queue[tuple[str, str | None]]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        read_available = stream.read1  # type: ignore[attr-defined]
        for block in iter(lambda: read_available(_READ_CHUNK_BYTES), b""):
            text = decoder.decode(block)
            if text:
                channel.put((_STDOUT, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            channel.put((_STDOUT, tail))
    except (OSError, ValueError):
        # Pipe closed underneath the reader during teardown.
        logger.debug("stdout reader stopped early", exc_info=True)
    finally:
        channel.put((_EOF, None))


def _pump_stderr(stream: IO[bytes], channel: queue.Queue[tuple[str, str | None]]) -> None:
    try:
        for raw_line in iter(stream.readline, b""):
            channel.put((_STDERR, raw_line.decode("utf-8", errors="replace")))
    except (OSError, ValueError):
        logger.debug("stderr reader stopped early", exc_info=True)
    finally:
        channel.put((_EOF, None))


def _wait_for_exit(process: subprocess.Popen[bytes], *, deadline: float) -> int | None:
    try:
        return process.wait(timeout=max(0.0, deadline - time.monotonic()))
    except subprocess.TimeoutExpired:
        return None


def _release(
    process: subprocess.Popen[bytes],
    *,
    readers: list[threading.Thread],
    graceful_shutdown_seconds: float,
    force: bool,
) -> None:
    """Tear down the process group, then close the pipes whose readers have finished.

    `force` (timeout, cancel) and readers still blocked on a pipe both mean some
    member of the group may be alive even when the leader has already exited.
    """

    if force or process.poll() is None or any(reader.is_alive() for reader in readers):
        _terminate_process(process, graceful_shutdown_seconds=graceful_shutdown_seconds)
    for reader in readers:
        reader.join(timeout=_READER_JOIN_SECONDS)
    for reader, stream in zip(readers, (process.stdout, process.stderr), strict=True):
        if stream is None:
            continue
        if reader.is_alive():
            # Closing would block on the buffer lock the reader still holds.
            logger.warning("Pipe reader for pid=%s still blocked; leaving it open", process.pid)
            continue
        stream.close()


def _terminate_process(
    process: subprocess.Popen[bytes],
    *,
    graceful_shutdown_seconds: float,
) -> None:
    """SIGTERM, wait out the grace window, then SIGKILL the whole process group."""

    logger.debug("Terminating Gemini process group pid=%s", process.pid)
    _send_signal(process, signal.SIGTERM)
    if _wait_for_group(process, deadline=time.monotonic() + graceful_shutdown_seconds):
        return
    logger.debug("Gemini process group pid=%s ignored SIGTERM; killing", process.pid)
    _send_signal(process, _SIGKILL)
    if not _wait_for_group(
        process,
        deadline=time.monotonic() + max(graceful_shutdown_seconds, 1.0),
    ):
        logger.warning("Gemini process group pid=%s did not exit after SIGKILL", process.pid)


def _wait_for_group(process: subprocess.Popen[bytes], *, deadline: float) -> bool:
    """Reap the leader, then on POSIX wait until no process is left in its group."""

    try:
        process.wait(timeout=max(0.0, deadline - time.monotonic()))
    except subprocess.TimeoutExpired:
        return False
    if not _USE_PROCESS_GROUP:
        return True
    while _group_alive(process.pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(_GROUP_POLL_SECONDS)
    return True


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _send_signal(process: subprocess.Popen[bytes], sig: int) -> None:
    try:
        if _USE_PROCESS_GROUP:
            os.killpg(process.pid, sig)
        elif sig == _SIGKILL:
            process.kill()
        else:
            process.terminate()
    except OSError:
        return


def _build_result(  # noqa: PLR0913
    *,
    request: BackendRunRequest,
    state: AttemptState,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    elapsed_seconds: float,
) -> AttemptResult:
    if state == AttemptState.TIMED_OUT:
        return AttemptResult(
            model=request.model,
            state=state,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout,
            stderr=stderr,
            elapsed_seconds=elapsed_seconds,
            failure=timeout_failure(request.timeout_seconds),
        )
    if state == AttemptState.CANCELED:
        return AttemptResult(
            model=request.model,
            state=state,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            elapsed_seconds=elapsed_seconds,
        )
    if exit_code == 0:
        return AttemptResult(
            model=request.model,
            state=AttemptState.SUCCEEDED,
            exit_code=0,
            stdout=stdout,
            stderr=stderr,
            elapsed_seconds=elapsed_seconds,
        )
    return AttemptResult(
        model=request.model,
        state=AttemptState.FAILED,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        elapsed_seconds=elapsed_seconds,
        failure=classify_backend_failure(exit_code=exit_code, stderr=stderr),
    )


def _describe_args(run_args: list[str], *, limit: int = 200) -> str:
    shown = [
        arg if len(arg) <= limit else f"{arg[:limit]}... ({len(arg)} chars)" for arg in run_args
    ]
    return shlex.join(shown)
