"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.config import Settings
from src.models import HostedLink, PurchaseHistoryRecord
from src.services.brand_constants import BrandConfig
from src.utils.redaction import mask_value

console = Console()

STATE_COLORS = {
    "not_started": "dim",
    "link_created": "yellow",
    "polling": "blue",
    "finished": "green",
    "abandoned": "red",
}


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_records_table(records: list[PurchaseHistoryRecord], as_json: bool = False) -> str:
    """Format purchase-history records as a Rich table or JSON.

    Args:
        records: Canonical records to display.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps([r.model_dump(mode="json") for r in records], indent=2)

    if not records:
        return "No purchase history found."

    table = Table(title="Purchase History", show_lines=True)
    table.add_column("Brand", style="cyan", no_wrap=True)
    table.add_column("Date")
    table.add_column("Order", style="white")
    table.add_column("Total", justify="right")
    table.add_column("Products")
    table.add_column("Images", justify="right")

    for record in records:
        pairs = record.items()
        with_image = sum(1 for _, image in pairs if image)
        products = ", ".join(record.product_names[:3])
        if len(record.product_names) > 3:
            products += f" (+{len(record.product_names) - 3} more)"
        table.add_row(
            record.brand,
            record.order_date.isoformat() if record.order_date else "—",
            record.order_id or "—",
            record.order_total or "—",
            products or "—",
            f"{with_image}/{len(pairs)}",
        )
    return _render(table)


def format_brands_table(brands: list[BrandConfig]) -> str:
    """Format the supported brands and their tools."""
    table = Table(title="Brands")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("History tool")
    table.add_column("Detail tool")
    for brand in brands:
        table.add_row(
            brand.brand_id, brand.brand_name, brand.history_tool, brand.detail_tool or "—",
        )
    return _render(table)


def format_link_panel(link: HostedLink) -> str:
    """Show a hosted link the user must open."""
    color = STATE_COLORS.get(link.state.value, "white")
    lines = [
        f"[bold]Link ID:[/bold]  {link.link_id}",
        f"[bold]Brand:[/bold]    {link.brand_id or '—'}",
        f"[bold]State:[/bold]    [{color}]{link.state.value}[/{color}]",
        "",
        f"[bold]Open:[/bold] {link.hosted_link_url}",
    ]
    return _render(Panel("\n".join(lines), title="Sign-in required", border_style="yellow"))


def format_settings(settings: Settings) -> str:
    """Format resolved settings with secrets masked."""
    data = settings.model_dump()
    secret_fields = {
        "api_key", "session_secret", "maxmind_license_key",
        "together_api_key", "gemini_api_key", "segment_write_key",
    }
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[bold]{section}:[/bold]")
        for key, value in values.items():
            if key in secret_fields and value:
                value = mask_value(str(value))
            lines.append(f"  {key}: {value if value not in ('', []) else '—'}")
    return _render("\n".join(lines))
