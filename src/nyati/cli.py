"""Command-line interface for nyati."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

import click
from rich.console import Console
from rich.table import Table

from nyati import __version__
from nyati.config import find_config_file, load_config
from nyati.exceptions import ConfigError, NyatiError
from nyati.hosts import format_selection_summary, select_hosts
from nyati.logging import EventSink, configure_logging, get_level_from_verbosity
from nyati.runner import run
from nyati.tasks import select_tasks
from nyati.types import Config

logger = logging.getLogger("nyati.cli")

EVENT_STYLES = (
    ("Succeeded after retry", "bold green"),
    ("Succeeded", "green"),
    ("Failed", "bold red"),
    ("Aborting", "bold red"),
    ("Skipped", "yellow"),
    ("Retry declined", "yellow"),
    ("Running", "cyan"),
    ("Connected", "cyan"),
)


def event_style(line: str) -> str | None:
    """Pick a rich style for an event line, None for plain output."""
    first_line = line.split("\n", 1)[0]
    for marker, style in EVENT_STYLES:
        if marker in first_line:
            return style
    return None


def make_console_printer(console: Console) -> Callable[[str], None]:
    """EventSink subscriber that mirrors events to the terminal."""

    def print_event(line: str) -> None:
        console.print(line, style=event_style(line), markup=False, highlight=False)

    return print_event


def make_retry_prompt(sink: EventSink) -> Callable[[str, str], Awaitable[bool]]:
    """Console confirmation used for retry: true tasks.

    The prompt runs in a worker thread so other hosts keep running while the
    operator answers. Pending events (the failure and its output) are printed
    before the question is asked.
    """

    def ask(task_name: str, host_name: str) -> bool:
        sink.flush()
        return click.confirm(f"Retry '{task_name}' on {host_name}?", default=False)

    async def confirm_retry(task_name: str, host_name: str) -> bool:
        return await asyncio.to_thread(ask, task_name, host_name)

    return confirm_retry


def _load(config_file: str | None) -> Config:
    try:
        path = Path(config_file) if config_file else find_config_file()
        return load_config(path, __version__)
    except ConfigError as e:
        raise click.ClickException(_describe(e))


def _describe(error: NyatiError) -> str:
    if error.context.suggestion:
        return f"{error}\n  Hint: {error.context.suggestion}"
    return str(error)


config_option = click.option(
    "--config", "-c", "config_file",
    type=click.Path(dir_okay=False),
    help="Path to config file (default: nyati.yaml or nyati.yml in current directory)",
)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """nyati - run deployment tasks on remote hosts over SSH.

    \b
    Examples:
      nyati deploy all                       # all tasks on all hosts (no lib tasks)
      nyati deploy all --include-lib         # include lib tasks
      nyati deploy server1 --task clean      # only the 'clean' task on server1
      nyati deploy 'web*,!web03' -c app.yaml
    """
    if version:
        click.echo(f"nyati {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("deploy")
@click.argument("host")
@config_option
@click.option("--task", "task_name", help="Run only this task (e.g. 'clean')")
@click.option("--include-lib", is_flag=True, help="Include tasks marked as lib")
@click.option("--ordered", is_flag=True,
              help="Run tasks in dependency order; --task also runs its prerequisites")
@click.option("--debug", "-d", is_flag=True, help="Show commands and output for every task")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv, -vvv)")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs and events to this file")
def deploy(
    host: str,
    config_file: str | None,
    task_name: str | None,
    include_lib: bool,
    ordered: bool,
    debug: bool,
    verbose: int,
    log_file: str | None,
) -> None:
    """Run tasks on HOST ('all', a host name, or a pattern like 'web*,!web03')."""
    configure_logging(
        level=get_level_from_verbosity(verbose),
        debug=debug,
        log_file=log_file,
        file_level=logging.INFO if log_file else None,
    )

    config = _load(config_file)
    try:
        hosts = select_hosts(config.hosts, host)
        tasks = select_tasks(config.tasks, task_name, include_lib, ordered)
    except ConfigError as e:
        raise click.ClickException(_describe(e))

    console = Console()
    console.print(format_selection_summary(len(config.hosts), len(hosts), host), style="dim")
    if not tasks:
        console.print("No tasks to run")
        return

    sink = EventSink()
    sink.subscribe(make_console_printer(console))
    failure: NyatiError | None = None
    with sink:
        try:
            asyncio.run(run(
                hosts,
                tasks,
                sink,
                debug=debug,
                confirm_retry=make_retry_prompt(sink),
                on_failure=config.on_failure,
            ))
        except NyatiError as e:
            failure = e

    if sink.dropped:
        logger.warning(f"{sink.dropped} event line(s) were dropped")
    if failure is not None:
        raise click.ClickException(_describe(failure))
    console.print(f"Release {config.release_version} of {config.appname} completed", style="bold green")


@cli.command("validate")
@config_option
def validate(config_file: str | None) -> None:
    """Load and validate the config file without connecting anywhere."""
    config = _load(config_file)
    click.echo(
        f"Config OK: {config.appname} (version {config.version}), "
        f"{len(config.hosts)} host(s), {len(config.tasks)} task(s)"
    )


@cli.command("info")
@config_option
def info(config_file: str | None) -> None:
    """Show hosts and tasks defined in the config file."""
    config = _load(config_file)
    console = Console()

    console.print(f"App: {config.appname}  Version: {config.version}  On failure: {config.on_failure}")

    hosts_table = Table(title="Hosts")
    hosts_table.add_column("Name")
    hosts_table.add_column("Address")
    hosts_table.add_column("Auth")
    for name, host in config.hosts.items():
        auth = "key" if host.uses_key_auth else ("password" if host.password else "none")
        hosts_table.add_row(name, f"{host.address}:{host.port}", auth)
    console.print(hosts_table)

    tasks_table = Table(title="Tasks")
    tasks_table.add_column("#", justify="right")
    tasks_table.add_column("Name")
    tasks_table.add_column("Expect", justify="right")
    tasks_table.add_column("Flags")
    tasks_table.add_column("Depends on")
    for index, task in enumerate(config.tasks, 1):
        flags = [flag for flag, on in (
            ("lib", task.lib), ("retry", task.retry),
            ("askpass", task.askpass), ("output", task.output),
        ) if on]
        tasks_table.add_row(
            str(index), task.name, str(task.expect), ",".join(flags), ", ".join(task.depends_on)
        )
    console.print(tasks_table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
