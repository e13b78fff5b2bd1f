"""Query compilation, context bundling and Gemini execution for `cg sync`.

A query such as ``@src/ explain the auth flow`` goes through three stages:

- `compiler` extracts `@path` references and, when code2prompt is available,
  replaces them with one bounded Codebase Context bundle; otherwise the
  references are rewritten to absolute paths for the Gemini CLI to read.
- `fallback` walks the model candidates, moving on only after quota errors.
- `backend` runs one Gemini CLI subprocess per attempt and streams its output
  as typed events, killing the process group on timeout or shutdown.
"""
