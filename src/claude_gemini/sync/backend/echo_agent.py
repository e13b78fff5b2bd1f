"""Local stand-in for the Gemini CLI used by integration tests.

Accepts the same `[-y] [-m <model>] -p <prompt>` arguments and echoes the
prompt back. Behaviour is steered through environment variables so a test can
simulate quota errors, bad requests and slow responses per model.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, or fail the way the real CLI does when asked to."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-y", "--yolo", action="store_true")
    parser.add_argument("-m", "--model", default="")
    parser.add_argument("-p", "--prompt", required=True)
    args = parser.parse_args(argv)

    log_path = os.getenv("CLAUDE_GEMINI_ECHO_LOG")
    if log_path:
        with Path(log_path).open("a", encoding="utf-8") as handle:
            handle.write(f"{args.model or 'auto'}\n")

    sys.stderr.write("[dotenv@16.4.5] injecting env (0) from .env\n")
    sys.stderr.flush()

    quota_models = _split_env("CLAUDE_GEMINI_ECHO_QUOTA_MODELS")
    if args.model in quota_models or "*" in quota_models:
        sys.stderr.write(
            "Quota exceeded for quota metric 'Gemini Requests' and limit "
            "'Requests per day' of service 'generativelanguage.googleapis.com'.\n",
        )
        return 1
    if args.model in _split_env("CLAUDE_GEMINI_ECHO_BAD_REQUEST_MODELS"):
        sys.stderr.write("[API Error: 400 Bad Request] invalid argument\n")
        return 1

    delay = float(os.getenv("CLAUDE_GEMINI_ECHO_DELAY_SECONDS", "0") or 0)
    if delay > 0:
        time.sleep(delay)

    sys.stdout.write(f"model={args.model or 'auto'}\n")
    sys.stdout.flush()
    sys.stdout.write(args.prompt)
    sys.stdout.write("\n")
    sys.stdout.flush()
    return 0


def _split_env(name: str) -> set[str]:
    return {part.strip() for part in os.getenv(name, "").split(",") if part.strip()}


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
