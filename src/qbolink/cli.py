"""
qbolink CLI — command-line interface.

Usage:
    qbolink authorize-url --pkce
    qbolink exchange --owner user_123 --code <code> --realm 9130...
    qbolink fetch --owner user_123 --period last_quarter -o data.json
    qbolink status --owner user_123
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from qbolink import __version__

app = typer.Typer(
    name="qbolink",
    help="QuickBooks Online connection and financial data fetcher",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_CONFIG_OPTION = typer.Option("qbolink.yaml", "--config", "-c", help="Path to config file")
_OWNER_OPTION = typer.Option(..., "--owner", "-u", help="Owner (user) id the connection belongs to")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]qbolink[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
) -> None:
    """Keep a QuickBooks connection alive and pull financial data through it."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )


def _load_link(config: str):  # noqa: ANN202
    from qbolink.link import QBOLink

    config_path = config if Path(config).exists() else None
    return QBOLink.from_config(config_path)


@app.command()
def status(
    owner: str = _OWNER_OPTION,
    config: str = _CONFIG_OPTION,
) -> None:
    """Show the owner's token state."""

    async def _run():  # noqa: ANN202
        async with _load_link(config) as link:
            state = await link.get_state(owner)
            record = await link.store.get_active(owner)
            return state, record, link.clock.now()

    state, record, now = asyncio.run(_run())

    table = Table(title=f"Connection for {owner}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("State", state.value)
    if record is not None:
        table.add_row("Realm", record.realm_id)
        table.add_row("Expires at", record.expires_at.isoformat())
        table.add_row("Expires in", f"{record.seconds_until_expiry(now):.0f}s")
        if record.refresh_expires_at:
            table.add_row("Refresh token expires", record.refresh_expires_at.isoformat())
    console.print(table)


@app.command("authorize-url")
def authorize_url(
    config: str = _CONFIG_OPTION,
    pkce: bool = typer.Option(False, "--pkce", help="Add a PKCE challenge"),
) -> None:
    """Print the consent URL to send a user to."""
    link = _load_link(config)
    result = link.authorization_url(use_pkce=pkce)
    console.print(Panel.fit(result["url"], title="Authorize QuickBooks"))
    console.print(f"state: [bold]{result['state']}[/bold]")
    if "code_verifier" in result:
        console.print(f"code_verifier: [bold]{result['code_verifier']}[/bold]")


@app.command()
def exchange(
    owner: str = _OWNER_OPTION,
    code: str = typer.Option(..., "--code", help="Authorization code from the callback"),
    realm: str = typer.Option(..., "--realm", help="realmId from the callback"),
    code_verifier: str = typer.Option(None, "--code-verifier", help="PKCE verifier, if used"),
    config: str = _CONFIG_OPTION,
) -> None:
    """Exchange an authorization code and store the owner's token."""
    from qbolink.exceptions import QBOLinkError

    async def _run():  # noqa: ANN202
        async with _load_link(config) as link:
            return await link.exchange_code(owner, code, realm, code_verifier=code_verifier)

    try:
        record = asyncio.run(_run())
    except QBOLinkError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(
        f"[green]✓[/green] Connected realm [bold]{record.realm_id}[/bold], "
        f"token expires {record.expires_at.isoformat()}"
    )


@app.command()
def fetch(
    owner: str = _OWNER_OPTION,
    start: str = typer.Option(None, "--start", help="Start date (YYYY-MM-DD)"),
    end: str = typer.Option(None, "--end", help="End date (YYYY-MM-DD)"),
    period: str = typer.Option(
        None,
        "--period",
        "-p",
        help="current_month, current_quarter, current_year, last_month, last_quarter, last_year",
    ),
    customer: str = typer.Option(None, "--customer", help="Restrict reports to one customer/vendor id"),
    output: str = typer.Option("qbo_data.json", "--output", "-o", help="Output JSON file"),
    config: str = _CONFIG_OPTION,
) -> None:
    """Fetch the standard financial data set for the owner's company."""
    from qbolink.connectors.quickbooks import DateRange
    from qbolink.models.fetch import RunStatus

    try:
        if start or end:
            if not (start and end):
                raise ValueError("--start and --end must be given together")
            date_range = DateRange.parse(start, end)
        elif period:
            date_range = DateRange.for_period(period)
        else:
            date_range = None
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(Panel.fit("[bold blue]qbolink[/bold blue] — Financial data fetch", subtitle=f"v{__version__}"))

    async def _run():  # noqa: ANN202
        async with _load_link(config) as link:
            return await link.fetch_financial_reports(owner, date_range, customer_id=customer)

    with console.status("[bold green]Fetching...[/bold green]"):
        result = asyncio.run(_run())

    _display_result(result)

    if result.status is RunStatus.REAUTH_REQUIRED:
        console.print("[yellow]Reconnect QuickBooks: run `qbolink authorize-url`[/yellow]")
        raise typer.Exit(2)

    path = Path(output)
    path.write_text(json.dumps(result.to_dict(), indent=2, default=str))
    console.print(f"[green]✓[/green] Data saved to [bold]{path}[/bold]")


@app.command()
def logout(
    owner: str = _OWNER_OPTION,
    config: str = _CONFIG_OPTION,
) -> None:
    """Remove the owner's stored credential."""

    async def _run() -> int:
        async with _load_link(config) as link:
            return await link.force_reauthenticate(owner)

    count = asyncio.run(_run())
    console.print(f"[green]✓[/green] Removed {count} token record(s) for [bold]{owner}[/bold]")


def _display_result(result) -> None:  # noqa: ANN001
    """Display per-endpoint outcomes in the terminal."""
    table = Table(title="Fetch Summary", show_lines=True)
    table.add_column("Endpoint", style="bold")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")

    for name, outcome in result.outcomes.items():
        mark = "[green]ok[/green]" if outcome.success else "[red]failed[/red]"
        error = outcome.error.message if outcome.error else ""
        table.add_row(name, mark, str(outcome.attempts), error)

    console.print(table)
    status_colors = {"complete": "green", "partial": "yellow", "reauth_required": "red"}
    color = status_colors.get(result.status.value, "white")
    console.print(
        f"Status: [{color}]{result.status.value.upper()}[/{color}] "
        f"({result.completeness:.0%} complete)"
    )
    if result.failed_endpoints:
        console.print(f"Failed: {', '.join(result.failed_endpoints)}")


if __name__ == "__main__":
    app()
