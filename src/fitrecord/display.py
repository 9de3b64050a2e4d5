"""
Display manager for Rich-based REPL output and live updates.

Handles all console output including the live metric table, session
summaries and the history report.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .buffer import LiveWindow
from .core import Metric
from .models import Session, SessionStats
from .results import NegotiationResult, RecorderResult
from .stats import (
    aggregate,
    heart_rate_zone,
    percentile_rankings,
    session_deltas,
    trend_stats,
)

logger = logging.getLogger(__name__)

METRIC_LABELS = {
    Metric.SPEED: "Speed",
    Metric.CADENCE: "Cadence",
    Metric.POWER: "Power",
    Metric.RESISTANCE: "Resistance",
    Metric.HEART_RATE: "Heart rate",
}


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
        """
        self.console = console or Console()
        self.live_enabled = False
        self._live: Optional[Live] = None
        self._live_windows: Mapping[Metric, LiveWindow] = {}
        self._live_elapsed = 0.0

    def print_banner(self) -> None:
        """Print startup banner."""
        panel = Panel(
            "[bold cyan]FitRecord - BLE Workout Recorder[/bold cyan]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_status(self, devices: Dict[str, dict], recorder_state: str) -> None:
        """Display connection state of each device and the last known values.

        Args:
            devices: Device class name -> negotiator status dict
            recorder_state: Current session recorder state
        """
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Device", style="cyan")
        table.add_column("State", style="magenta")
        table.add_column("Service", style="white")
        table.add_column("Notifications", style="yellow")

        values: Dict[Metric, float] = {}
        for device_class, status in devices.items():
            table.add_row(
                f"{device_class} ({status.get('device') or '-'})",
                status.get("state", "unknown"),
                status.get("service") or "-",
                f"{status.get('received', 0)} ok / {status.get('dropped', 0)} dropped",
            )
            values.update(status.get("values", {}))

        self.console.print(table)
        self.console.print(f"Session: [bold]{recorder_state}[/bold]", highlight=False)
        if values:
            self.console.print(self.format_metrics_table(values))

    def print_result(self, cmd: str, result) -> None:  # type: ignore[no-untyped-def]
        """Display command result.

        Args:
            cmd: Command name
            result: NegotiationResult or RecorderResult enum
        """
        if result in (NegotiationResult.SUCCESS, RecorderResult.SUCCESS):
            self.console.print(f"[green]✓[/green] {cmd} succeeded", highlight=False)
        elif result == RecorderResult.ALREADY_ENDED:
            self.console.print(
                f"[yellow]⚠[/yellow] {cmd}: session already ended", highlight=False
            )
        elif result == RecorderResult.NO_DEVICE:
            self.console.print(
                f"[red]✗[/red] {cmd}: connect a device first", highlight=False
            )
        elif result == RecorderResult.INVALID_TRANSITION:
            self.console.print(
                f"[yellow]⚠[/yellow] {cmd} not possible in the current state",
                highlight=False,
            )
        elif result == RecorderResult.PERSISTENCE_FAILURE:
            self.console.print(
                f"[red]✗[/red] {cmd}: session kept in memory but could not be saved "
                "(use 'retry')",
                highlight=False,
            )
        elif result == NegotiationResult.DEVICE_NOT_FOUND:
            self.console.print(
                f"[red]✗[/red] {cmd}: device not found. Make sure it's powered on and in range.",
                highlight=False,
            )
        elif result == NegotiationResult.NO_COMPATIBLE_SERVICE:
            self.console.print(
                f"[red]✗[/red] {cmd}: device has no compatible service",
                highlight=False,
            )
        elif result == NegotiationResult.CONNECTION_FAILED:
            self.console.print(f"[red]✗[/red] {cmd} failed", highlight=False)
        else:
            self.console.print(
                f"[yellow]?[/yellow] {cmd} result: {result.name}", highlight=False
            )

    def print_error(self, message: str) -> None:
        """Print red error message.

        Args:
            message: Error message text
        """
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print_info(self, message: str) -> None:
        """Print blue info message.

        Args:
            message: Info message text
        """
        self.console.print(f"[cyan]Info:[/cyan] {message}", highlight=False)

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan")
        table.add_column("Aliases", style="magenta")
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            aliases = ", ".join(cmd.aliases) if cmd.aliases else "-"
            table.add_row(cmd.name, aliases, cmd.description, cmd.usage)

        self.console.print(table)
        self.console.print(
            "[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]"
        )

    # ========== Live display ==========

    def start_live(self) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        self._live_windows = {}
        self._live_elapsed = 0.0
        renderable = self._create_live_table()
        self._live = Live(renderable, console=self.console, refresh_per_second=2)
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        """Stop live display refresh mode."""
        if not self.live_enabled:
            return

        self.live_enabled = False
        if self._live is not None:
            self._live.stop()
            self._live = None

    def update_live(self, windows: Mapping[Metric, LiveWindow], elapsed: float = 0.0) -> None:
        """Redraw the live table from the recorder's live windows.

        Args:
            windows: Live window per metric
            elapsed: Seconds since the session started
        """
        if not self.live_enabled or self._live is None:
            return

        self._live_windows = windows
        self._live_elapsed = elapsed

        try:
            self._live.update(self._create_live_table())
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live()
        return self.live_enabled

    def _create_live_table(self) -> Table:
        return self.format_live_table(self._live_windows, self._live_elapsed)

    def format_live_table(self, windows: Mapping[Metric, LiveWindow], elapsed: float) -> Table:
        """Current value and recent average per metric, plus elapsed time."""
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Now", style="yellow")
        table.add_column("Recent avg", style="green")

        for metric, label in METRIC_LABELS.items():
            window = windows.get(metric)
            if window is None or not len(window):
                table.add_row(label, "-", "-")
                continue
            recent = aggregate(window)
            table.add_row(
                label,
                self.format_metric(metric, window.latest),
                self.format_metric(metric, recent.avg),
            )

        heart_rate = windows.get(Metric.HEART_RATE)
        if heart_rate is not None and heart_rate.latest:
            zone = heart_rate_zone(heart_rate.latest)
            table.add_row("Zone", f"[{zone.color}]{zone.zone.value}[/]", "")
        table.add_row("Time", self.format_time(int(elapsed)), "")
        return table

    def format_metrics_table(self, values: Dict[Metric, float]) -> Table:
        """Create Rich Table with one row per metric.

        Args:
            values: Latest value per metric

        Returns:
            Rich Table object
        """
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        for metric, label in METRIC_LABELS.items():
            table.add_row(label, self.format_metric(metric, values.get(metric, 0.0)))

        bpm = values.get(Metric.HEART_RATE)
        if bpm:
            zone = heart_rate_zone(bpm)
            table.add_row("Zone", f"[{zone.color}]{zone.zone.value}[/]")
        return table

    # ========== Sessions ==========

    def print_session_summary(self, session: Session) -> None:
        """Display the statistics of an ended session."""
        stats = session.stats
        if stats is None:
            self.print_info("Session has no statistics yet")
            return

        table = Table(
            title=f"Session {self.format_date(session.start_time)}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Metric", style="cyan")
        table.add_column("Avg", style="yellow")
        table.add_column("Max", style="yellow")
        table.add_column("Min", style="yellow")
        table.add_column("Samples", style="white")
        table.add_column("Percentile", style="magenta")

        for metric, label in METRIC_LABELS.items():
            if metric not in stats.metrics:
                continue
            rank = stats.percentile_rank.get(metric)
            table.add_row(
                label,
                self.format_metric(metric, stats.avg(metric)),
                self.format_metric(metric, stats.max(metric)),
                self.format_metric(metric, stats.min(metric)),
                str(len(session.streams.get(metric, ()))),
                self.format_percentile(rank),
            )

        self.console.print(table)
        self.console.print(
            f"Duration: {self.format_duration(session.start_time, session.end_time)}",
            highlight=False,
        )
        if stats.heart_rate_zone:
            zone = stats.heart_rate_zone
            self.console.print(
                f"Average heart rate zone: [{zone.color}]{zone.zone.value}[/]"
            )

    def print_history(self, sessions: Sequence[Session]) -> None:
        """Display past sessions with change against the previous one."""
        if not sessions:
            self.print_info("No recorded sessions")
            return

        table = Table(title="Session History", show_header=True, header_style="bold cyan")
        table.add_column("Date", style="cyan")
        table.add_column("Duration", style="white")
        table.add_column("Avg speed", style="yellow")
        table.add_column("Avg cadence", style="yellow")
        table.add_column("Avg power", style="yellow")
        table.add_column("Avg HR", style="yellow")
        table.add_column("Δ speed", style="magenta")
        table.add_column("Δ power", style="magenta")

        previous: Optional[SessionStats] = None
        for session, stats in trend_stats(sessions):
            deltas: Dict[Metric, Any] = (
                session_deltas(stats, previous) if previous is not None else {}
            )
            table.add_row(
                self.format_date(session.start_time),
                self.format_duration(session.start_time, session.end_time),
                self.format_speed(stats.avg(Metric.SPEED)),
                self.format_cadence(stats.avg(Metric.CADENCE)),
                self.format_power(stats.avg(Metric.POWER)),
                self.format_heart_rate(stats.avg(Metric.HEART_RATE)),
                self.format_change(deltas.get(Metric.SPEED)),
                self.format_change(deltas.get(Metric.POWER)),
            )
            previous = stats

        self.console.print(table)

        ordered = [session for session, _ in trend_stats(sessions)]
        rankings = percentile_rankings(ordered, len(ordered) - 1)
        if any(rank is not None for rank in rankings.values()):
            parts = [
                f"{METRIC_LABELS[metric]} {self.format_percentile(rank)}"
                for metric, rank in rankings.items()
            ]
            self.console.print(
                "[bold]Latest session percentile:[/bold] " + ", ".join(parts),
                highlight=False,
            )

    # ========== Formatting ==========

    @staticmethod
    def format_time(seconds: int) -> str:
        """Convert seconds to MM:SS format.

        Args:
            seconds: Number of seconds

        Returns:
            Formatted time string
        """
        if not isinstance(seconds, int):
            seconds = int(seconds)  # type: ignore[unreachable]
        mins = seconds // 60
        secs = seconds % 60
        return f"{mins}:{secs:02d}"

    @staticmethod
    def format_duration(start: datetime, end: Optional[datetime]) -> str:
        """Whole minutes between start and end."""
        if end is None:
            return "-"
        minutes = int((end - start).total_seconds() // 60)
        return f"{minutes} min"

    @staticmethod
    def format_date(moment: datetime) -> str:
        return moment.astimezone().strftime("%Y-%m-%d %H:%M")

    @staticmethod
    def format_speed(km_h: float) -> str:
        return f"{km_h:.1f} km/h"

    @staticmethod
    def format_cadence(rpm: float) -> str:
        return f"{rpm:.0f} rpm"

    @staticmethod
    def format_power(watts: float) -> str:
        return f"{watts:.0f} W"

    @staticmethod
    def format_heart_rate(bpm: float) -> str:
        return f"{bpm:.0f} bpm"

    @classmethod
    def format_metric(cls, metric: Metric, value: float) -> str:
        """Format a value with the unit of its metric."""
        if metric == Metric.SPEED:
            return cls.format_speed(value)
        if metric == Metric.CADENCE:
            return cls.format_cadence(value)
        if metric == Metric.POWER:
            return cls.format_power(value)
        if metric == Metric.HEART_RATE:
            return cls.format_heart_rate(value)
        return f"{value:.0f}"

    @staticmethod
    def format_change(percent: Optional[float]) -> str:
        if percent is None:
            return "-"
        return f"{percent:+.1f}%"

    @staticmethod
    def format_percentile(rank: Optional[float]) -> str:
        if rank is None:
            return "-"
        return f"{rank:.1f}%"
