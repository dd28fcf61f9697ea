"""boundrun CLI -- run a simulated batch with live progress bars.

This module is never imported from ``boundrun/__init__.py``.  It is only
loaded via the ``boundrun`` entry point and ``python -m boundrun``.

Exit codes: 0 when every item succeeded, 1 when any item failed or the
batch was interrupted, 2 for invalid options.
"""

from __future__ import annotations

import asyncio
import logging

try:
    import click
    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table
except ImportError:
    raise ImportError("CLI dependencies not installed. Install with: pip install boundrun[cli]") from None

from . import __version__
from ._common import BatchResult
from .config import DEFAULT_ITEM_COUNT, DEFAULT_MAX_CONCURRENT, DEFAULT_STEPS_PER_ITEM, BatchConfig
from .exceptions import ConfigurationError
from .scheduler import run_batch
from .threaded import run_batch_threaded
from .work import DEFAULT_UPPER_BOUND_MS

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--items",
    "item_count",
    type=int,
    default=DEFAULT_ITEM_COUNT,
    show_default=True,
    envvar="BOUNDRUN_ITEMS",
    help="Number of work items in the batch.",
)
@click.option(
    "--max-concurrent",
    "-j",
    type=int,
    default=DEFAULT_MAX_CONCURRENT,
    show_default=True,
    envvar="BOUNDRUN_MAX_CONCURRENT",
    help="Maximum number of items processed at once.",
)
@click.option(
    "--steps",
    "steps_per_item",
    type=int,
    default=DEFAULT_STEPS_PER_ITEM,
    show_default=True,
    envvar="BOUNDRUN_STEPS",
    help="Progress steps per item.",
)
@click.option(
    "--max-duration-ms",
    type=int,
    default=DEFAULT_UPPER_BOUND_MS,
    show_default=True,
    envvar="BOUNDRUN_MAX_DURATION_MS",
    help="Upper bound of the simulated duration of one item.",
)
@click.option(
    "--ids",
    type=click.Choice(["sequential", "uuid"]),
    default="sequential",
    show_default=True,
    envvar="BOUNDRUN_IDS",
    help="How item identifiers are generated.",
)
@click.option(
    "--failure-rate",
    type=float,
    default=0.0,
    show_default=True,
    envvar="BOUNDRUN_FAILURE_RATE",
    help="Fraction of items made to fail part-way through.",
)
@click.option("--seed", type=int, default=None, envvar="BOUNDRUN_SEED", help="Seed for simulated durations.")
@click.option("--threads", is_flag=True, envvar="BOUNDRUN_THREADS", help="Run items on a thread pool instead of asyncio.")
@click.option("--no-progress", is_flag=True, help="Do not draw progress bars.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="BOUNDRUN_LOG_LEVEL",
    help="Logging verbosity.",
)
@click.version_option(__version__, prog_name="boundrun")
def main(
    item_count: int,
    max_concurrent: int,
    steps_per_item: int,
    max_duration_ms: int,
    ids: str,
    failure_rate: float,
    seed: int | None,
    threads: bool,
    no_progress: bool,
    log_level: str,
) -> None:
    """Run a batch of simulated work items with bounded concurrency."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = BatchConfig(
            item_count=item_count,
            max_concurrent=max_concurrent,
            steps_per_item=steps_per_item,
            max_duration_ms=max_duration_ms,
            ids=ids,  # type: ignore[arg-type]
            failure_rate=failure_rate,
            seed=seed,
        )
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from None

    sink = None if no_progress else "tqdm"
    try:
        if threads:
            result = run_batch_threaded(config.items(), config.max_concurrent, sink=sink, work=config.work())
        else:
            result = asyncio.run(run_batch(config.items(), config.max_concurrent, sink=sink, work=config.work()))
    except KeyboardInterrupt:
        click.secho("Interrupted.", fg="yellow", err=True)
        raise SystemExit(1) from None

    print_summary(result, Console(), Console(stderr=True))
    raise SystemExit(result.exit_code)


def print_summary(result: BatchResult, console: Console, err_console: Console) -> None:
    """Print the batch totals, and a table of failures if there are any."""
    agg = result.aggregate
    console.print(
        f"Completed [bold]{agg.completed_items}/{agg.total_items}[/bold] item(s) in "
        f"{result.total_runtime_seconds:.2f}s: "
        f"[green]{agg.succeeded_items} succeeded[/green], "
        f"[red]{agg.failed_items} failed[/red]"
    )
    if result.cancelled_ids:
        console.print(f"[yellow]{len(result.cancelled_ids)} item(s) not started[/yellow]")
    if not result.failures:
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Item", style="yellow")
    table.add_column("Error")
    for failure in result.failures:
        cause = failure.error.__cause__ or failure.error
        table.add_row(escape(str(failure.item_id)), escape(str(cause)))
    err_console.print(table)
