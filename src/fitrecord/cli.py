"""
Main REPL application for recording workouts from BLE sensors.

Interactive command loop with async support, auto-completion,
live sensor display and session history.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory

from .commands import COMMANDS, CommandCompleter, get_command
from .config import Settings
from .core import DeviceClass, Metric
from .display import DisplayManager
from .models import DeviceBinding, SensorReading, Session
from .negotiator import ServiceNegotiator
from .recorder import RecorderState, SessionRecorder
from .results import NegotiationResult, PersistenceError, RecorderResult
from .store import JsonSessionStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)
logger = logging.getLogger(__name__)


class Workout:
    """Wires the device negotiators to the current session recorder.

    A recorder records exactly one session; a fresh one is created for every
    ``start`` once the previous session has ended.
    """

    def __init__(
        self,
        settings: Settings,
        display: DisplayManager,
        negotiators: Optional[Dict[DeviceClass, ServiceNegotiator]] = None,
    ) -> None:
        self.settings = settings
        self.display = display
        self.store = JsonSessionStore(settings.sessions_file, settings.user)
        self.negotiators = negotiators or {
            device_class: ServiceNegotiator(device_class, settings)
            for device_class in DeviceClass
        }
        for negotiator in self.negotiators.values():
            negotiator.set_on_reading(self._on_reading)
            negotiator.set_on_disconnect(self._on_device_disconnect)

        # Ended sessions whose save failed, kept until a retry succeeds
        self.unsaved: List[SessionRecorder] = []
        self.recorder = self._new_recorder()

    def _new_recorder(self) -> SessionRecorder:
        recorder = SessionRecorder(
            store=self.store,
            live_window_size=self.settings.live_window_size,
            user_context=self.settings.user,
        )
        recorder.set_on_end(self._on_session_end)
        for negotiator in self.negotiators.values():
            if negotiator.binding is not None:
                recorder.device_connected(negotiator.binding)
        return recorder

    def _on_reading(self, reading: SensorReading) -> None:
        if not self.recorder.handle_reading(reading):
            return
        if self.display.live_enabled and self.recorder.session is not None:
            self.display.update_live(
                self.recorder.live_windows, self.recorder.session.duration
            )

    def _on_device_disconnect(self, binding: DeviceBinding, at: datetime) -> None:
        if self.display.live_enabled:
            self.display.stop_live()
        self.recorder.device_disconnected(binding.device_id, at)
        self.display.print_info(f"{binding.name} disconnected")

    def _on_session_end(self, session: Session, result: RecorderResult) -> None:
        if self.display.live_enabled:
            self.display.stop_live()
        self.display.print_session_summary(session)
        if result == RecorderResult.PERSISTENCE_FAILURE:
            self.display.print_error("Session could not be saved. Use 'retry'.")

    async def connect(self, device_class: DeviceClass) -> NegotiationResult:
        negotiator = self.negotiators[device_class]
        result = await negotiator.connect()
        if result == NegotiationResult.SUCCESS and negotiator.binding is not None:
            self.recorder.device_connected(negotiator.binding)
        return result

    async def disconnect(self, device_class: DeviceClass) -> None:
        await self.negotiators[device_class].disconnect()

    async def disconnect_all(self) -> None:
        for negotiator in self.negotiators.values():
            await negotiator.disconnect()

    def start(self) -> RecorderResult:
        if self.recorder.state == RecorderState.ENDED:
            if self.recorder.needs_save:
                self.unsaved.append(self.recorder)
            self.recorder = self._new_recorder()
        return self.recorder.start()

    def end(self) -> RecorderResult:
        return self.recorder.end()

    def retry_saves(self) -> RecorderResult:
        pending = self.unsaved + ([self.recorder] if self.recorder.needs_save else [])
        if not pending:
            return RecorderResult.INVALID_TRANSITION

        result = RecorderResult.SUCCESS
        for recorder in pending:
            if recorder.retry_save() != RecorderResult.SUCCESS:
                result = RecorderResult.PERSISTENCE_FAILURE
        self.unsaved = [recorder for recorder in self.unsaved if recorder.needs_save]
        return result

    def history(self) -> List[Session]:
        return self.store.fetch_sessions(self.settings.user)

    def samples(self) -> Dict[Metric, Tuple[int, Optional[float]]]:
        """Sample count and last recorded value per metric of the current session."""
        session = self.recorder.session
        if session is None:
            return {}
        summary = {}
        for metric, stream in session.streams.items():
            last = stream.last
            summary[metric] = (len(stream), last.value if last is not None else None)
        return summary


class FitRecordREPL:
    """Interactive REPL for recording workout sessions."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize REPL with devices, recorder and display manager."""
        self.settings = settings or Settings.from_env()
        self.display = DisplayManager()
        self.workout = Workout(self.settings, self.display)
        self.running = False

        # Create prompt session with auto-completion
        self.session: PromptSession = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()

        # Auto-connect to the bike on startup
        self.display.console.print("Attempting to connect to bike...")
        result = await self.workout.connect(DeviceClass.BIKE)
        if result == NegotiationResult.SUCCESS:
            self.display.console.print("✓ Connected successfully\n")
        else:
            self.display.console.print(
                "⚠ Could not connect to bike. Use 'connect' command to retry.\n"
            )

        try:
            while self.running:
                try:
                    # Get user input
                    prompt_text = self._get_prompt()
                    text = await self.session.prompt_async(prompt_text)

                    # Parse and execute command
                    if text.strip():
                        await self._handle_input(text.strip())

                except KeyboardInterrupt:
                    # Just show new prompt on Ctrl+C
                    self.display.console.print()
                    continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection and recording state.

        Returns:
            FormattedText for prompt_toolkit
        """
        names = [
            negotiator.binding.name
            for negotiator in self.workout.negotiators.values()
            if negotiator.binding is not None
        ]
        label = ", ".join(names) if names else "disconnected"
        marker = " ●REC" if self.workout.recorder.is_recording else ""
        return FormattedText([("class:prompt", f"[{label}{marker}] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        # Find command
        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        # Get handler method
        handler_name = cmd.handler
        if not hasattr(self, handler_name):
            self.display.print_error(f"Handler not found: {handler_name}")
            return

        handler = getattr(self, handler_name)

        # Execute command
        try:
            await handler(args)
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    def _parse_device_classes(self, args: list, default: List[DeviceClass]) -> List[DeviceClass]:
        if not args:
            return default
        try:
            return [DeviceClass(args[0].lower())]
        except ValueError:
            self.display.print_error(
                f"Unknown device: {args[0]}. Use one of: "
                + ", ".join(device_class.value for device_class in DeviceClass)
            )
            return []

    # ========== Command Handlers ==========

    async def cmd_connect(self, args: list) -> None:
        """Connect to a bike or heart rate strap."""
        for device_class in self._parse_device_classes(args, [DeviceClass.BIKE]):
            negotiator = self.workout.negotiators[device_class]
            if negotiator.is_connected:
                self.display.print_info("Already connected")
                continue

            self.display.print_info(f"Connecting to {device_class.value}...")
            result = await self.workout.connect(device_class)
            self.display.print_result("connect", result)
            if negotiator.binding is not None:
                self.display.print_info(
                    f"Connected to {negotiator.binding.name} "
                    f"({negotiator.binding.service_type.value} Service)"
                )

    async def cmd_disconnect(self, args: list) -> None:
        """Disconnect one device, or all of them."""
        connected = [
            device_class
            for device_class, negotiator in self.workout.negotiators.items()
            if negotiator.binding is not None
        ]
        targets = self._parse_device_classes(args, connected)
        if not connected or not targets:
            self.display.print_info("Not connected")
            return

        for device_class in targets:
            await self.workout.disconnect(device_class)
        self.display.print_info("Disconnected")

    async def cmd_start(self, args: list) -> None:
        """Start recording a session."""
        result = self.workout.start()
        self.display.print_result("start", result)
        if result == RecorderResult.SUCCESS:
            self.display.print_info("Recording. Use 'end' to finish the session.")

    async def cmd_end(self, args: list) -> None:
        """End the current session."""
        result = self.workout.end()
        if result != RecorderResult.SUCCESS:
            self.display.print_result("end", result)

    async def cmd_retry(self, args: list) -> None:
        """Retry saving sessions that failed to save."""
        result = self.workout.retry_saves()
        if result == RecorderResult.INVALID_TRANSITION:
            self.display.print_info("Nothing to save")
            return
        self.display.print_result("retry", result)

    async def cmd_status(self, args: list) -> None:
        """Show device states and current sensor values."""
        self.display.print_status(
            {
                device_class.value: negotiator.get_status()
                for device_class, negotiator in self.workout.negotiators.items()
            },
            self.workout.recorder.state.value,
        )

    async def cmd_live(self, args: list) -> None:
        """Toggle live display mode."""
        enabled = self.display.toggle_live()
        if enabled:
            recorder = self.workout.recorder
            session = recorder.session
            elapsed = session.duration if session and not session.is_ended else 0.0
            self.display.update_live(recorder.live_windows, elapsed)
        else:
            self.display.print_info("Live display disabled")

    async def cmd_history(self, args: list) -> None:
        """Show past sessions."""
        try:
            sessions = self.workout.history()
        except PersistenceError as e:
            self.display.print_error(f"Could not load sessions: {e}")
            return
        self.display.print_history(sessions)

    async def cmd_info(self, args: list) -> None:
        """Show device and debug information."""
        self.display.console.print("[bold cyan]Settings[/bold cyan]")
        self.display.console.print(f"  Sessions file: {self.settings.sessions_file}")
        self.display.console.print(f"  Address cache: {self.settings.address_cache_file}")
        self.display.console.print(
            f"  Wheel circumference: {self.settings.wheel_circumference_m} m"
        )
        self.display.console.print(f"  Live window: {self.settings.live_window_size} samples")
        self.display.console.print(f"  User: {self.settings.user}")

        self.display.console.print()
        self.display.console.print("[bold cyan]Debug Information[/bold cyan]")
        for device_class, negotiator in self.workout.negotiators.items():
            status = negotiator.get_status()
            self.display.console.print(
                f"  {device_class.value}: {status['state']} "
                f"({status['device'] or '-'}, {status['service'] or '-'}), "
                f"{status['received']} received, {status['dropped']} dropped"
            )
        recorder = self.workout.recorder
        self.display.console.print(f"  Recorder state: {recorder.state.value}")
        self.display.console.print(f"  Live enabled: {self.display.live_enabled}")
        self.display.console.print(f"  Unsaved sessions: {len(self.workout.unsaved)}")
        for metric, (count, last) in self.workout.samples().items():
            latest = self.display.format_metric(metric, last) if last is not None else "-"
            self.display.console.print(f"  {metric.value}: {count} samples, last {latest}")

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        if self.display.live_enabled:
            self.display.stop_live()

        if self.workout.recorder.is_recording:
            self.display.print_info("Ending session...")
            self.workout.end()

        self.display.print_info("Disconnecting...")
        await self.workout.disconnect_all()

        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def run_cli_command(
    command: str,
    settings: Settings,
    seconds: float = 0.0,
    with_heart_rate: bool = False,
) -> None:
    """Run a single CLI command and exit."""
    display = DisplayManager()
    workout = Workout(settings, display)

    try:
        # Handle commands that don't need a connection first
        if command == "clear-cache":
            for negotiator in workout.negotiators.values():
                negotiator.clear_address_cache()
            display.print_info("Cleared cached device addresses")
            return

        if command == "history":
            try:
                display.print_history(workout.history())
            except PersistenceError as e:
                display.print_error(f"Could not load sessions: {e}")
                sys.exit(1)
            return

        if command == "record":
            device_classes = [DeviceClass.BIKE]
            if with_heart_rate:
                device_classes.append(DeviceClass.HEART_RATE)
            for device_class in device_classes:
                display.print_info(f"Connecting to {device_class.value}...")
                result = await workout.connect(device_class)
                if result != NegotiationResult.SUCCESS:
                    display.print_result("connect", result)
                    sys.exit(1)

            result = workout.start()
            if result != RecorderResult.SUCCESS:
                display.print_result("start", result)
                sys.exit(1)

            display.print_info(f"Recording for {seconds:.0f}s (Ctrl+C to stop early)...")
            elapsed = 0.0
            try:
                # Stop early if a disconnect ended the session
                while elapsed < seconds and workout.recorder.is_recording:
                    await asyncio.sleep(0.5)
                    elapsed += 0.5
            finally:
                workout.end()
            if workout.recorder.needs_save:
                sys.exit(1)
            return

        display.print_error(f"Unknown command: {command}")
        sys.exit(1)

    finally:
        # Ensure we disconnect if still connected
        await workout.disconnect_all()


def main() -> None:
    """Entry point for the REPL application."""
    parser = argparse.ArgumentParser(
        description="Record workouts from BLE exercise equipment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fitrecord                      # Start interactive REPL
  fitrecord --record 1800        # Record a 30 minute session from the bike
  fitrecord --record 1800 --hr   # Same, with a heart rate strap
  fitrecord --history            # Show past sessions
  fitrecord --clear-cache        # Clear cached device addresses
        """,
    )

    parser.add_argument(
        "--record",
        type=float,
        metavar="SECONDS",
        help="Connect, record a session for SECONDS and save it",
    )

    parser.add_argument(
        "--hr", action="store_true", help="Also connect a heart rate strap (--record)"
    )

    parser.add_argument("--history", action="store_true", help="Show past sessions")

    parser.add_argument(
        "--clear-cache", action="store_true", help="Clear cached device addresses"
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    settings = Settings.from_env()
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else settings.log_level)

    # Check which command was requested
    commands = []
    if args.record is not None:
        if args.record <= 0:
            print("Error: --record needs a positive duration", file=sys.stderr)
            sys.exit(1)
        commands.append("record")
    if args.history:
        commands.append("history")
    if args.clear_cache:
        commands.append("clear-cache")

    # If no CLI commands, start REPL
    if not commands:
        try:
            repl = FitRecordREPL(settings)
            asyncio.run(repl.run())
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(0)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        # Run CLI commands
        if len(commands) > 1:
            print("Error: Only one command can be specified at a time", file=sys.stderr)
            sys.exit(1)

        try:
            asyncio.run(
                run_cli_command(
                    commands[0],
                    settings,
                    seconds=args.record or 0.0,
                    with_heart_rate=args.hr,
                )
            )
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(1)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
