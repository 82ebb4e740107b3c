import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from rich import box
from rich.logging import RichHandler
from rich.table import Table

from .RouteTable import RouteTable

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, use_rich: bool = True) -> logging.Logger:
    """
    Configure the root logger for the router process.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional path of a rotating log file
        use_rich: Render console logs with rich instead of plain text

    Returns:
        The "ssh_router" logger

    Raises:
        ValueError: level is not a known level name
    """
    levelno = logging.getLevelNamesMapping().get(level.upper())
    if levelno is None:
        raise ValueError(f"Unknown log level: {level!r}")

    handlers: List[logging.Handler] = []
    if use_rich:
        handlers.append(RichHandler(rich_tracebacks=True, show_path=False))
    else:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(console)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=levelno,
        format='%(message)s' if use_rich else LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return logging.getLogger('ssh_router')


def render_route_table(route_table: RouteTable, listen: str = "") -> Table:
    """Build a rich table of the active routes."""
    title = "🧭 [bold cyan]Routes[/bold cyan]"
    if listen:
        title += f" on {listen}"

    table = Table(title=title, box=box.SIMPLE)
    table.add_column("Local address", style="bold cyan")
    table.add_column("Target", style="green")
    for ip, target in sorted(route_table.items(), key=lambda item: (item[0].version, item[0])):
        table.add_row(str(ip), str(target))
    if not len(route_table):
        table.add_row("[dim]none[/dim]", "[dim]every connection will be closed[/dim]")
    return table
