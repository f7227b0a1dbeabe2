"""Typer CLI entry point for the call-indexer."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from call_indexer import __version__
from call_indexer.config import Settings, format_validation_error
from call_indexer.exceptions import CallIndexerError, ReconnectGaveUpError
from call_indexer.indexer import Indexer, build_gateway_fetcher, build_store
from call_indexer.listener import ListenerState
from call_indexer.logging import configure_logging, generate_run_id
from call_indexer.retry import RetryEngine

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="call-indexer",
    help="Resilient on-chain event indexer for the call registry contract.",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose logging."),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _prepare(config: Path | None, verbose: bool) -> Settings:
    overrides: dict[str, Any] = {}
    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    settings = _load_settings(config, **overrides)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
        run_id=generate_run_id(),
    )
    return settings


def _build_indexer(settings: Settings) -> Indexer:
    try:
        return Indexer.from_settings(settings)
    except CallIndexerError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]call-indexer[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Call-indexer global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(config: ConfigOption = None, verbose: VerboseOption = False) -> None:
    """Connect, replay history, then follow live registry events."""
    settings = _prepare(config, verbose)
    indexer = _build_indexer(settings)

    console.print(
        Panel(
            f"RPC: [cyan]{settings.chain.rpc_url}[/cyan]\n"
            f"Registry: [cyan]{settings.chain.registry_address}[/cyan]\n"
            f"Start block: {indexer.start_block}",
            title="Call Indexer",
            border_style="blue",
        )
    )

    async def _run() -> ListenerState:
        try:
            return await indexer.run()
        finally:
            await indexer.aclose()

    try:
        state = asyncio.run(_run())
        indexer.raise_if_gave_up()
    except KeyboardInterrupt:
        logger.info("indexer_interrupted")
        err_console.print("\n[yellow]Interrupted. Indexer stopped.[/yellow]")
        return
    except ReconnectGaveUpError as exc:
        err_console.print(Panel(str(exc), title="Listener Gave Up", border_style="red"))
        raise typer.Exit(code=1) from exc
    except CallIndexerError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print(f"[green]Indexer finished:[/green] {state.value}")


@app.command()
def sync(
    from_block: Annotated[
        int | None,
        typer.Option("--from-block", help="First block to replay (default: config)."),
    ] = None,
    to_block: Annotated[
        int | None,
        typer.Option("--to-block", help="Last block to replay (default: head)."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Replay historical registry events once and exit."""
    settings = _prepare(config, verbose)
    indexer = _build_indexer(settings)

    async def _sync() -> Any:
        try:
            return await indexer.run_sync(from_block, to_block)
        finally:
            await indexer.aclose()

    report = asyncio.run(_sync())

    table = Table(title="Historical Sync")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("From block", str(report.from_block))
    table.add_row("To block", str(report.to_block))
    table.add_row("Windows", str(report.windows))
    table.add_row("Created", str(report.created))
    table.add_row("Staked", str(report.staked))
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Failed", str(report.failed))
    console.print(table)

    if not report.completed:
        err_console.print(f"[red]Sync incomplete:[/red] {report.error}")
        raise typer.Exit(code=1)


@app.command()
def fetch(
    cid: Annotated[str, typer.Argument(help="Content address to fetch.")],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Fetch call metadata through the gateway fallback chain."""
    settings = _prepare(config, verbose)
    engine = RetryEngine(settings.retry.default_policy())
    client, fetcher = build_gateway_fetcher(settings, engine)

    async def _fetch() -> dict[str, Any]:
        try:
            return await fetcher.fetch_content(cid)
        finally:
            await client.aclose()

    try:
        payload = asyncio.run(_fetch())
    except CallIndexerError as exc:
        logger.error("fetch_failed", cid=cid, error=str(exc))
        err_console.print(f"[red]Fetch failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print_json(json.dumps(payload))


@app.command()
def calls(config: ConfigOption = None, verbose: VerboseOption = False) -> None:
    """List indexed calls from the configured store."""
    settings = _prepare(config, verbose)
    store = build_store(settings)

    try:
        records = asyncio.run(store.list_calls())
    except CallIndexerError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if not records:
        console.print("[yellow]No calls indexed yet.[/yellow]")
        return

    table = Table(title=f"Indexed Calls ({len(records)})")
    table.add_column("ID", style="cyan")
    table.add_column("Creator")
    table.add_column("Yes", justify="right")
    table.add_column("No", justify="right")
    table.add_column("Status")
    table.add_column("Ends")
    # On-chain IDs are decimal strings; order them numerically.
    records.sort(key=lambda item: (len(item.call_onchain_id), item.call_onchain_id))
    for call in records:
        table.add_row(
            call.call_onchain_id,
            call.creator_wallet,
            str(call.total_stake_yes),
            str(call.total_stake_no),
            call.status.value,
            call.end_ts.isoformat(),
        )
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
