"""Main CLI application using Click framework."""

import asyncio
import concurrent.futures
import functools
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..config import ConfigError, ConfigLoader, SiteConfig, get_settings
from ..config.settings import ensure_storage_directory
from ..crawler import BatchCrawlOrchestrator, BatchedResult, BatchOptions
from ..diff import DiffGenerator, DiffOptions
from ..storage import open_store
from ..utils.logging import get_structured_logger, setup_logging
from .types import CLIContext, CommandResult, OutputFormat

console = Console()
logger = get_structured_logger(__name__)


def async_command(f):
    """Decorator to run async functions in Click commands."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return asyncio.run(f(*args, **kwargs))

            # Already inside a loop (e.g. during testing): use a fresh one in a thread
            with concurrent.futures.ThreadPoolExecutor() as executor:
                return executor.submit(asyncio.run, f(*args, **kwargs)).result()
        except KeyboardInterrupt:
            console.print("❌ Operation cancelled by user", style="red")
            sys.exit(1)
        except Exception as e:
            console.print(f"❌ Error: {str(e)}", style="red")
            logger.error("CLI command failed", error=str(e))
            sys.exit(1)

    return wrapper


def handle_result(result: CommandResult, ctx: CLIContext) -> None:
    """Handle command result output."""
    if result.success:
        if result.message:
            console.print(f"✅ {result.message}", style="green")
        if result.data and ctx.verbose:
            console.print_json(data=result.data)
    else:
        console.print(f"❌ {result.message}", style="red")
        if result.data and ctx.debug:
            console.print_json(data=result.data)

    if not result.success:
        sys.exit(result.exit_code)


@asynccontextmanager
async def opened_store(ctx: CLIContext):
    ensure_storage_directory(ctx.settings)
    store = await open_store(ctx.settings.storage)
    try:
        yield store
    finally:
        await store.close()


def load_site(ctx: CLIContext, site_id: str) -> Optional[SiteConfig]:
    """Look up a configured site, reporting a failure when it is missing."""
    try:
        return ConfigLoader(ctx.config_path).get_site(site_id)
    except ConfigError as e:
        handle_result(CommandResult(success=False, message=str(e), exit_code=1), ctx)
        return None


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON on stderr")
@click.option(
    "--config",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the sites file (defaults to SITEWATCH_SITES_FILE)",
)
@click.pass_context
def cli(ctx, verbose: bool, debug: bool, json_logs: bool, config: Optional[Path]) -> None:
    """Sitewatch - scheduled multi-site backup and change detection."""
    settings = get_settings()
    setup_logging(
        log_level="DEBUG" if debug else settings.log_level,
        json_logs=json_logs or settings.json_logs,
    )
    ctx.obj = CLIContext(settings, config_path=config, verbose=verbose, debug=debug)


@cli.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice([f.value for f in OutputFormat]),
    default=OutputFormat.TEXT.value,
)
@click.pass_obj
def sites(ctx: CLIContext, output_format: str) -> None:
    """List configured sites."""
    loader = ConfigLoader(ctx.config_path)
    try:
        configured = loader.get_sites_config()
    except ConfigError as e:
        handle_result(CommandResult(success=False, message=str(e), exit_code=1), ctx)
        return

    if output_format == OutputFormat.JSON.value:
        console.print_json(
            data=[site.model_dump(by_alias=True, mode="json") for site in configured]
        )
        return

    if not configured:
        console.print(f"No sites configured in {ctx.config_path}", style="yellow")
        return

    table = Table(title="Configured Sites")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="green")
    table.add_column("Source", style="blue")
    table.add_column("Retention", justify="right")
    table.add_column("Schedule", style="yellow")

    for site in configured:
        if site.urls:
            source = f"{len(site.urls)} URLs"
        else:
            source = site.sitemap_url or site.base_url
        table.add_row(site.id, site.name, source, f"{site.retention_days}d", site.schedule)

    console.print(table)


@cli.command()
@click.pass_obj
def validate(ctx: CLIContext) -> None:
    """Check the sites file for problems."""
    issues = ConfigLoader(ctx.config_path).validate_config()
    for issue in issues:
        console.print(f"⚠️  {issue}", style="yellow")

    handle_result(
        CommandResult(
            success=not issues,
            message="Configuration is valid" if not issues else f"{len(issues)} issue(s) found",
            exit_code=1,
        ),
        ctx,
    )


def print_batch(result: BatchedResult) -> None:
    table = Table(title=f"Batch: {result.site_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    if result.skipped:
        table.add_row("Status", "Skipped (nothing changed since today's full scan)")
    table.add_row("Total URLs", str(result.total_urls))
    table.add_row("Offset", str(result.batch_offset))
    table.add_row("Processed", str(result.processed_in_batch))
    table.add_row("Successful", str(result.successful_backups))
    table.add_row("Failed", str(result.failed_backups))
    table.add_row("Stored", str(result.stored_backups))
    if result.store_failures:
        table.add_row("Store failures", str(result.store_failures))
    table.add_row("Changed", str(len(result.changed_urls)))
    table.add_row(
        "Progress",
        f"{result.progress.completed}/{result.progress.total} "
        f"({result.progress.percent_complete}%)",
    )
    if result.listener_mode:
        table.add_row("Listener mode", "enabled")
    table.add_row("Duration", f"{result.execution_time} ms")
    console.print(table)

    for url in result.changed_urls:
        console.print(f"  • changed: {url}", style="yellow")
    for error in result.errors:
        console.print(f"  • {error}", style="red")


@cli.command()
@click.argument("site_id")
@click.option("--batch-size", type=int, help="URLs per batch (capped by settings)")
@click.option("--offset", type=int, default=0, show_default=True, help="Start offset")
@click.option(
    "--continue/--no-continue",
    "continue_from_last",
    default=True,
    show_default=True,
    help="Resume from saved batch progress",
)
@click.option("--all-batches", is_flag=True, help="Keep running batches until the cycle completes")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_obj
@async_command
async def crawl(
    ctx: CLIContext,
    site_id: str,
    batch_size: Optional[int],
    offset: int,
    continue_from_last: bool,
    all_batches: bool,
    as_json: bool,
) -> None:
    """Run one (or every remaining) batch for a site."""
    site = load_site(ctx, site_id)
    if site is None:
        return

    options = BatchOptions(
        batch_size=batch_size, batch_offset=offset, continue_from_last=continue_from_last
    )
    results = []
    async with opened_store(ctx) as store:
        async with BatchCrawlOrchestrator(store, ctx.settings) as orchestrator:
            while True:
                result = await orchestrator.perform_batch(site, options)
                results.append(result)
                if as_json:
                    console.print_json(data=result.to_dict())
                else:
                    print_batch(result)

                if not (all_batches and result.has_more) or result.processed_in_batch == 0:
                    break
                options = BatchOptions(batch_size=batch_size, continue_from_last=True)

    failed = bool(results[-1].errors) and results[-1].processed_in_batch == 0
    if not as_json:
        handle_result(
            CommandResult(
                success=not failed,
                message=f"Crawled {sum(r.processed_in_batch for r in results)} URL(s) "
                f"in {len(results)} batch(es)",
                exit_code=1,
            ),
            ctx,
        )
    elif failed:
        sys.exit(1)


@cli.command()
@click.argument("site_id")
@click.pass_obj
@async_command
async def progress(ctx: CLIContext, site_id: str) -> None:
    """Show saved batch progress for a site."""
    async with opened_store(ctx) as store:
        orchestrator = BatchCrawlOrchestrator(store, ctx.settings)
        saved = await orchestrator.get_batch_progress(site_id)
        full_scan = await orchestrator.state.get_full_scan(site_id)

    if saved is None:
        console.print(f"No batch in progress for {site_id}", style="yellow")
    else:
        console.print(
            f"Next offset {saved.next_offset} of {saved.total_urls} URLs "
            f"(last run {saved.last_run_time})",
            style="cyan",
        )
    if full_scan is not None:
        console.print(
            f"Last full scan {full_scan.date}: {full_scan.total_urls} URLs", style="green"
        )


@cli.command()
@click.argument("site_id")
@click.confirmation_option(prompt="Discard saved progress, URL cache and full-scan marker?")
@click.pass_obj
@async_command
async def reset(ctx: CLIContext, site_id: str) -> None:
    """Reset crawl progress for a site."""
    async with opened_store(ctx) as store:
        errors = await BatchCrawlOrchestrator(store, ctx.settings).reset_progress(site_id)

    handle_result(
        CommandResult(
            success=not errors,
            message=f"Progress reset for {site_id}" if not errors else "; ".join(errors),
            exit_code=1,
        ),
        ctx,
    )


@cli.command()
@click.argument("site_id")
@click.argument("url")
@click.option("--max-changes", type=int, help="Cap the number of reported changes")
@click.option("--no-cache", is_flag=True, help="Bypass the diff cache")
@click.option("--json", "as_json", is_flag=True, help="Print the diff as JSON")
@click.pass_obj
@async_command
async def diff(
    ctx: CLIContext,
    site_id: str,
    url: str,
    max_changes: Optional[int],
    no_cache: bool,
    as_json: bool,
) -> None:
    """Diff the latest backup of URL against the one before it."""
    options = DiffOptions(max_changes=max_changes, cache_enabled=not no_cache)
    async with opened_store(ctx) as store:
        result = await DiffGenerator(store, ctx.settings.diff).diff_latest(site_id, url, options)

    if result is None:
        handle_result(
            CommandResult(
                success=False,
                message=f"No previous backup of {url} to compare against",
                exit_code=1,
            ),
            ctx,
        )
        return

    if as_json:
        console.print_json(data=result.to_dict())
        return

    summary = result.summary
    console.print(
        f"{summary.total_changes} change(s): {summary.content_changes} content, "
        f"{summary.style_changes} style, {summary.structure_changes} structure"
        + (" (partial)" if result.metadata.is_partial else ""),
        style="bold",
    )

    table = Table()
    table.add_column("Type", style="cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Element", style="green")
    table.add_column("Change", style="yellow")
    table.add_column("Before")
    table.add_column("After")
    for change in sorted(result.classification.all_changes(), key=lambda c: -c.priority):
        table.add_row(
            change.type,
            str(change.priority),
            change.element,
            change.change,
            change.before or "",
            change.after or "",
        )
    console.print(table)


@cli.command()
@click.argument("site_id")
@click.argument("url")
@click.option("--days", type=int, default=30, show_default=True)
@click.pass_obj
@async_command
async def history(ctx: CLIContext, site_id: str, url: str, days: int) -> None:
    """Show dated backups of URL and which of them changed."""
    async with opened_store(ctx) as store:
        entries = await DiffGenerator(store, ctx.settings.diff).get_url_history(
            site_id, url, max_days=days
        )

    if not entries:
        console.print(f"No backups of {url} in the last {days} days", style="yellow")
        return

    table = Table(title=url)
    table.add_column("Date", style="cyan")
    table.add_column("Hash", style="green")
    table.add_column("Changed", justify="center")
    for entry in entries:
        table.add_row(entry.date, entry.hash[:16], "✓" if entry.has_changes else "")
    console.print(table)


def create_cli():
    """Return the root command group."""
    return cli
