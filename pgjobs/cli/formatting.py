"""Rich Formatting Utilities for CLI Output"""

from rich import box
from rich.console import Console
from rich.table import Table

from pgjobs.jobs.schemas import JobStats

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_stats_table(stats: list[JobStats]) -> Table:
    """Create a formatted table of queued jobs per queue and job type"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    table.add_column("Job Type", justify="left", style="magenta")
    table.add_column("Count", justify="right", style="white")
    table.add_column("Working", justify="right", style="green")
    table.add_column("Errored", justify="right", style="red")
    table.add_column("Max Errors", justify="right", style="yellow")
    table.add_column("Oldest Run At", justify="left", style="blue")

    for stat in stats:
        table.add_row(
            stat.queue or "(default)",
            stat.job_type,
            str(stat.count),
            str(stat.count_working),
            str(stat.count_errored),
            str(stat.highest_error_count),
            stat.oldest_run_at.isoformat(timespec="seconds"),
        )

    return table
