"""Data Portrait CLI.

Unified entry point for running the server and exercising the getgather
integration from a terminal.

Usage:
    data-portrait serve            Start the API server
    data-portrait brands           List supported brands
    data-portrait link amazon      Link an account over REST and fetch its data
    data-portrait history amazon   Fetch purchase history over MCP
    data-portrait history amazon -s laptop   Search purchases by keyword
    data-portrait config show      Show resolved configuration
"""

import asyncio
import logging
import os
import secrets
from typing import Optional

import typer
from rich.console import Console

from src.cli.output import (
    format_brands_table,
    format_link_panel,
    format_records_table,
    format_settings,
)
from src.config import Settings, load_settings, set_settings
from src.errors import AuthTimeoutError, DomainError
from src.models import HostedLink, PurchaseHistoryRecord
from src.services.brand_constants import BRANDS, get_brand
from src.services.client_pool import MCPClientPool
from src.services.gateway_provider import build_client_factory
from src.services.hosted_link import HostedLinkClient, poll_until_finished
from src.services.mcp_client import MCPConnectionError, ToolInvocationError
from src.services.purchase_history_normalizer import (
    filter_unique_orders,
    normalize_purchase_history,
)
from src.services.purchase_history_service import PurchaseHistoryService

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="data-portrait",
    help="Data Portrait server and getgather tooling",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")

app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to data-portrait.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Data Portrait CLI."""
    global _config_path
    _config_path = config
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


def _load() -> Settings:
    """Load settings once per command and make them process-global."""
    try:
        settings = load_settings(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    set_settings(settings)
    return settings


def _require_getgather(settings: Settings) -> None:
    try:
        settings.validate_required()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# --- Server ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Start the API server (FastAPI under uvicorn)."""
    import uvicorn

    settings = _load()
    _require_getgather(settings)
    final_host = host or settings.server.host
    final_port = port or settings.server.port

    # Propagate config path so the server process loads the same file.
    if _config_path:
        os.environ["DATA_PORTRAIT_CONFIG_PATH"] = str(_config_path)

    console.print(f"[bold]Starting Data Portrait server on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "src.api.main:app",
        host=final_host,
        port=final_port,
        workers=1,
        reload=reload,
        log_level=settings.server.log_level,
        lifespan="on",
    )


# --- Brands ---


@app.command()
def brands():
    """List supported brands and the tools that serve them."""
    console.print(format_brands_table(list(BRANDS.values())))


# --- Hosted link over REST ---


async def _run_link(
    settings: Settings, brand_id: str, max_attempts: int,
) -> list[PurchaseHistoryRecord]:
    brand = get_brand(brand_id)
    client = HostedLinkClient(settings.getgather.url, settings.getgather.api_key)
    link = await client.create_link(brand.brand_id)
    console.print(format_link_panel(link))

    with console.status("Waiting for sign-in..."):
        link = await poll_until_finished(
            link,
            client.poll,
            max_attempts=max_attempts,
            interval=settings.polling.interval_seconds,
        )
    if not link.profile_id:
        console.print("[yellow]Link finished without a profile id; nothing to extract.[/yellow]")
        return []

    with console.status("Extracting data..."):
        raw = await client.extract(brand.brand_id, link.profile_id)
    return filter_unique_orders(normalize_purchase_history(brand, raw))


@app.command()
def link(
    brand: str = typer.Argument(..., help="Brand id (see 'data-portrait brands')"),
    max_attempts: Optional[int] = typer.Option(
        None, "--max-attempts", help="Poll attempts before giving up"
    ),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create a hosted link, wait for sign-in, then fetch the extracted data."""
    import httpx

    settings = _load()
    _require_getgather(settings)
    try:
        records = asyncio.run(
            _run_link(settings, brand, max_attempts or settings.polling.max_attempts)
        )
    except AuthTimeoutError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)
    except (DomainError, httpx.HTTPError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(format_records_table(records, as_json=as_json))


# --- Purchase history over MCP ---


async def _run_history(
    settings: Settings, brand_id: str, max_attempts: int,
    keyword: str | None = None,
) -> list[PurchaseHistoryRecord]:
    pool = MCPClientPool(build_client_factory(settings))
    service = PurchaseHistoryService(
        pool,
        upstream_base=settings.getgather.url,
        app_host=settings.server.app_host,
        max_retries=settings.pool.max_retries,
        detail_concurrency=settings.pool.detail_concurrency,
        poll_max_attempts=max_attempts,
        poll_interval=settings.polling.interval_seconds,
    )
    session_key = f"cli-{secrets.token_hex(4)}"

    async def fetch():
        if keyword:
            return await service.search_purchase_history(session_key, keyword, brand_id=brand_id)
        return await service.get_purchase_history(session_key, brand_id)

    try:
        result = await fetch()
        if result.needs_link:
            hosted = HostedLink(
                link_id=result.link_id,
                hosted_link_url=result.hosted_link_url,
                brand_id=brand_id,
            )
            console.print(format_link_panel(hosted))
            with console.status("Waiting for sign-in..."):
                await service.wait_for_link(session_key, hosted)
            result = await fetch()
        return result.content
    finally:
        await pool.close_all()


@app.command()
def history(
    brand: str = typer.Argument(..., help="Brand id (see 'data-portrait brands')"),
    keyword: Optional[str] = typer.Option(
        None, "--search", "-s", help="Only purchases matching this keyword"
    ),
    max_attempts: Optional[int] = typer.Option(
        None, "--max-attempts", help="Poll attempts before giving up"
    ),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Fetch purchase history over MCP, signing in first when required."""
    settings = _load()
    _require_getgather(settings)
    try:
        records = asyncio.run(
            _run_history(
                settings, brand, max_attempts or settings.polling.max_attempts, keyword=keyword,
            )
        )
    except AuthTimeoutError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)
    except (DomainError, MCPConnectionError, ToolInvocationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(format_records_table(records, as_json=as_json))


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    console.print(format_settings(_load()))


if __name__ == "__main__":
    app()
