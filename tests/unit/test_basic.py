"""Basic functionality test for REPL components without device."""

import io
import logging
from datetime import timedelta

import pytest
from prompt_toolkit.document import Document
from rich.console import Console

from conftest import T0, make_session
from fitrecord.cli import Workout
from fitrecord.commands import COMMANDS, CommandCompleter, get_command
from fitrecord.config import Settings
from fitrecord.core import DeviceClass, Metric, ServiceType
from fitrecord.display import DisplayManager
from fitrecord.models import DeviceBinding, SensorReading
from fitrecord.recorder import RecorderState, utc_now
from fitrecord.results import NegotiationResult, PersistenceError, RecorderResult


def make_display() -> DisplayManager:
    return DisplayManager(Console(file=io.StringIO(), width=120))


def output_of(display: DisplayManager) -> str:
    return display.console.file.getvalue()


class StubNegotiator:
    """Negotiator already bound to a device."""

    def __init__(self, binding=None):
        self.binding = binding
        self._on_reading = None
        self._on_disconnect = None

    def set_on_reading(self, callback):
        self._on_reading = callback

    def set_on_disconnect(self, callback):
        self._on_disconnect = callback

    async def connect(self):
        return NegotiationResult.SUCCESS

    async def disconnect(self):
        binding, self.binding = self.binding, None
        if binding is not None:
            self._on_disconnect(binding, utc_now())

    def emit(self, metric: Metric, value: float) -> None:
        self._on_reading(SensorReading(metric, value, utc_now()))


BIKE = DeviceBinding("AA:BB", "iConsole+0419", ServiceType.FITNESS_MACHINE)


@pytest.fixture
def workout(settings):
    return Workout(settings, make_display(), {DeviceClass.BIKE: StubNegotiator(BIKE)})


def test_display_messages_and_results():
    display = make_display()

    display.print_banner()
    display.print_result("start", RecorderResult.SUCCESS)
    display.print_result("end", RecorderResult.ALREADY_ENDED)
    display.print_result("connect", NegotiationResult.NO_COMPATIBLE_SERVICE)
    display.print_info("This is an info message")
    display.print_error("This is an error message")
    display.print_help(COMMANDS)

    out = output_of(display)
    assert "FitRecord" in out
    assert "This is an error message" in out
    assert "retry" in out


def test_display_formatting():
    display = make_display()

    assert display.format_time(125) == "2:05"
    assert display.format_duration(T0, T0 + timedelta(minutes=30, seconds=40)) == "30 min"
    assert display.format_duration(T0, None) == "-"
    assert display.format_speed(24.56) == "24.6 km/h"
    assert display.format_metric(Metric.POWER, 180.4) == "180 W"
    assert display.format_change(12.345) == "+12.3%"
    assert display.format_change(None) == "-"
    assert display.format_percentile(50) == "50.0%"


def test_display_sessions():
    display = make_display()
    sessions = [
        make_session({Metric.SPEED: [20], Metric.HEART_RATE: [150]}, session_id="a"),
        make_session({Metric.SPEED: [25]}, start=T0 + timedelta(days=1), session_id="b"),
    ]

    display.print_session_summary(sessions[0])
    display.print_history(sessions)
    display.print_history([])

    out = output_of(display)
    assert "Hard" in out
    assert "Session History" in out
    assert "+25.0%" in out
    assert "Latest session percentile" in out
    assert "No recorded sessions" in out


def test_command_lookup():
    assert get_command("connect").name == "connect"
    assert get_command("e").name == "end"
    assert get_command("stop").name == "end"
    assert get_command("hi").name == "history"
    assert get_command("speed") is None


def completions(text: str):
    document = Document(text, len(text))
    return [c.text for c in CommandCompleter().get_completions(document, None)]


def test_command_completer():
    assert completions("con") == ["nect"]
    assert completions("connect ") == ["bike", "hr"]
    assert completions("disconnect h") == ["r"]
    assert completions("start ") == []
    assert completions("") == []


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FITRECORD_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("FITRECORD_WHEEL_CIRCUMFERENCE_M", "2.2")
    monkeypatch.setenv("FITRECORD_LIVE_WINDOW", "many")
    monkeypatch.setenv("FITRECORD_USER", "alice")
    monkeypatch.setenv("FITRECORD_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.sessions_file == tmp_path / "sessions.json"
    assert settings.wheel_circumference_m == pytest.approx(2.2)
    assert settings.live_window_size == 100
    assert settings.user == "alice"
    assert settings.log_level == "DEBUG"


def test_settings_ignore_unknown_log_level(monkeypatch):
    monkeypatch.setenv("FITRECORD_LOG_LEVEL", "verbose")

    settings = Settings.from_env()

    assert settings.log_level == "INFO"
    logging.getLogger("fitrecord.test").setLevel(settings.log_level)


def test_workout_records_and_saves(workout):
    negotiator = workout.negotiators[DeviceClass.BIKE]

    assert workout.start() == RecorderResult.SUCCESS
    negotiator.emit(Metric.SPEED, 20)
    negotiator.emit(Metric.SPEED, 30)
    assert workout.end() == RecorderResult.SUCCESS

    [saved] = workout.history()
    assert saved.streams[Metric.SPEED].values() == [20, 30]
    assert "Duration" in output_of(workout.display)


def test_workout_start_after_end_uses_new_recorder(workout):
    workout.start()
    workout.end()
    first = workout.recorder

    assert workout.start() == RecorderResult.SUCCESS
    assert workout.recorder is not first
    assert first.state == RecorderState.ENDED
    assert workout.unsaved == []


@pytest.mark.asyncio
async def test_workout_disconnect_ends_session(workout):
    workout.start()

    await workout.disconnect(DeviceClass.BIKE)

    assert workout.recorder.state == RecorderState.ENDED
    session = workout.recorder.session
    assert session.end_time >= session.start_time
    assert "iConsole+0419 disconnected" in output_of(workout.display)


def test_workout_retries_failed_saves(workout, monkeypatch):
    def fail(session):
        raise PersistenceError("disk full")

    monkeypatch.setattr(workout.store, "save_session", fail)
    workout.start()
    assert workout.end() == RecorderResult.PERSISTENCE_FAILURE
    workout.start()
    assert workout.end() == RecorderResult.PERSISTENCE_FAILURE
    assert len(workout.unsaved) == 1
    assert workout.retry_saves() == RecorderResult.PERSISTENCE_FAILURE

    monkeypatch.undo()
    assert workout.retry_saves() == RecorderResult.SUCCESS
    assert workout.unsaved == []
    assert not workout.recorder.needs_save
    assert len(workout.history()) == 2
    assert workout.retry_saves() == RecorderResult.INVALID_TRANSITION


def test_live_table_follows_recent_window(settings):
    settings.live_window_size = 2
    workout = Workout(settings, make_display(), {DeviceClass.BIKE: StubNegotiator(BIKE)})
    negotiator = workout.negotiators[DeviceClass.BIKE]

    workout.display.start_live()
    workout.start()
    for speed in (10, 20, 30):
        negotiator.emit(Metric.SPEED, speed)
    workout.display.stop_live()

    # the last frame is written out when live mode stops
    out = output_of(workout.display)
    assert "Recent avg" in out
    assert "30.0 km/h" in out
    assert "25.0 km/h" in out
    assert "20.0 km/h" not in out
    assert workout.recorder.session.streams[Metric.SPEED].values() == [10, 20, 30]


def test_workout_samples_report_last_value(workout):
    negotiator = workout.negotiators[DeviceClass.BIKE]
    assert workout.samples() == {}

    workout.start()
    negotiator.emit(Metric.CADENCE, 80)
    negotiator.emit(Metric.CADENCE, 85)

    samples = workout.samples()
    assert samples[Metric.CADENCE] == (2, 85)
    assert samples[Metric.SPEED] == (0, None)
