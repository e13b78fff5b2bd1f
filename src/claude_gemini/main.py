"""CLI entrypoint for claude-gemini (`cg`)."""

import logging
import sys
from pathlib import Path

import rich_click as click

from claude_gemini import __version__
from claude_gemini.config import debug_enabled
from claude_gemini.errors import ClaudeGeminiError, SyncCanceledError
from claude_gemini.sync.controllers import (
    ConfigCliController,
    ConfigCommand,
    SyncCliController,
    SyncCommand,
    WatchCliController,
    WatchCommand,
)

click.rich_click.USE_MARKDOWN = True
SYNC_CONTROLLER = SyncCliController()
WATCH_CONTROLLER = WatchCliController(sync_controller=SYNC_CONTROLLER)
CONFIG_CONTROLLER = ConfigCliController()
CANCELED_EXIT_CODE = 130

COMMAND_ALIASES = {"s": "sync", "w": "watch"}


class AliasedGroup(click.RichGroup):
    """Resolves short aliases and treats an unknown first argument as a `sync` query."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, COMMAND_ALIASES.get(cmd_name, cmd_name))

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if args and not args[0].startswith("-") and self.get_command(ctx, args[0]) is None:
            args = ["sync", *args]
        return super().parse_args(ctx, args)


@click.group(cls=AliasedGroup)
@click.version_option(version=__version__, prog_name="claude-gemini")
def cli() -> None:
    """Run Gemini CLI analyses over `@path` references from Claude.

    `cg "@src/ explain the auth flow"` is shorthand for `cg sync "..."`.
    """

    _configure_logging()


@cli.command("sync")
@click.argument("query")
@click.option(
    "-t",
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Timeout in seconds for one Gemini attempt (default: 300).",
)
@click.option(
    "-m",
    "--model",
    default=None,
    help="Gemini model to try first. Pass an empty string to let Gemini choose.",
)
@click.option(
    "-r",
    "--ripgrep/--no-ripgrep",
    default=None,
    help="Narrow bundled context to files mentioning identifiers from the query.",
)
@click.option(
    "--format/--no-format",
    "format_output",
    default=None,
    help="Formatted output with progress, or only the raw answer.",
)
@click.option(
    "--code2prompt/--no-code2prompt",
    default=None,
    help="Bundle codebase context with code2prompt when available.",
)
@click.option(
    "--include",
    "include",
    multiple=True,
    help="code2prompt include patterns, comma-separated. Can be repeated.",
)
@click.option(
    "--exclude",
    "exclude",
    multiple=True,
    help="Extra code2prompt exclude patterns, comma-separated. Can be repeated.",
)
@click.option(
    "--line-numbers/--no-line-numbers",
    default=None,
    help="Add line numbers to bundled code.",
)
@click.option(
    "--template",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Custom code2prompt Handlebars template.",
)
@click.pass_context
def sync(  # noqa: PLR0913
    ctx: click.Context,
    query: str,
    timeout_seconds: int | None,
    model: str | None,
    ripgrep: bool | None,
    format_output: bool | None,
    code2prompt: bool | None,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    line_numbers: bool | None,
    template: Path | None,
) -> None:
    """Analyze `@path` references with the Gemini CLI."""

    try:
        SYNC_CONTROLLER.run(
            SyncCommand(
                query=query,
                timeout_seconds=timeout_seconds,
                model=model,
                ripgrep=ripgrep,
                format=format_output,
                code2prompt=code2prompt,
                include=_split_patterns(include),
                exclude=_split_patterns(exclude),
                line_numbers=line_numbers,
                template=template,
            ),
        )
    except SyncCanceledError as error:
        click.echo(str(error), err=True)
        ctx.exit(CANCELED_EXIT_CODE)
    except (ClaudeGeminiError, ValueError) as error:
        raise click.ClickException(str(error)) from error


@cli.command("watch")
@click.option(
    "-p",
    "--pattern",
    "patterns",
    multiple=True,
    help="File patterns to watch, comma-separated. Can be repeated.",
)
@click.option(
    "-d",
    "--debounce",
    "debounce_ms",
    type=click.IntRange(min=0),
    default=None,
    help="Debounce time in milliseconds (default: 2000).",
)
def watch(patterns: tuple[str, ...], debounce_ms: int | None) -> None:
    """Analyze files as they change. Press Ctrl+C to stop."""

    try:
        WATCH_CONTROLLER.run(
            WatchCommand(patterns=_split_patterns(patterns), debounce_ms=debounce_ms),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@cli.command("config")
@click.option("--list", "list_values", is_flag=True, help="Show current configuration.")
@click.option(
    "--set",
    "assignments",
    multiple=True,
    metavar="KEY=VALUE",
    help="Set a configuration value. Can be repeated.",
)
@click.option(
    "--global",
    "global_",
    is_flag=True,
    help="Use ~/.claude-gemini/config.json instead of the project file.",
)
def config(list_values: bool, assignments: tuple[str, ...], global_: bool) -> None:
    """Manage configuration."""

    try:
        lines = CONFIG_CONTROLLER.run(
            ConfigCommand(list_values=list_values, assignments=assignments, global_=global_),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging() -> None:
    if not debug_enabled():
        return
    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format="[DEBUG] %(name)s: %(message)s",
    )


def _split_patterns(values: tuple[str, ...]) -> tuple[str, ...]:
    patterns: list[str] = []
    for value in values:
        patterns.extend(part.strip() for part in value.split(",") if part.strip())
    return tuple(patterns)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cli()
