"""
Session recorder.

Owns a single workout session from start to end. Decoded readings from every
connected device are delivered to ``handle_reading``, which is the only place
session data is mutated. Everything runs on the event loop thread, so no
locking is needed.

States: IDLE -> RECORDING -> ENDED (terminal).
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

from .buffer import LiveWindow, MetricStream
from .core import ALL_METRICS, LIVE_WINDOW_SIZE, Metric
from .models import DeviceBinding, SensorReading, Session
from .results import RecorderResult
from .stats import percentile_rankings, session_stats
from .store import SessionStore

logger = logging.getLogger(__name__)


class RecorderState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    ENDED = "ended"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecorder:
    """Records one session from the readings of the connected devices."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        metrics: Sequence[Metric] = ALL_METRICS,
        clock: Callable[[], datetime] = utc_now,
        live_window_size: int = LIVE_WINDOW_SIZE,
        user_context: Optional[str] = None,
    ) -> None:
        self._store = store
        self._metrics = tuple(metrics)
        self._clock = clock
        self._user_context = user_context
        self._state = RecorderState.IDLE
        self._devices: Dict[str, DeviceBinding] = {}
        self._session: Optional[Session] = None
        self._saved = False
        self._live: Dict[Metric, LiveWindow] = {
            metric: LiveWindow(metric, live_window_size) for metric in self._metrics
        }

        # Called with the session once it has ended
        self._on_end: Optional[Callable[[Session, RecorderResult], None]] = None

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def metrics(self) -> tuple:
        return self._metrics

    @property
    def devices(self) -> Dict[str, DeviceBinding]:
        return dict(self._devices)

    @property
    def is_recording(self) -> bool:
        return self._state == RecorderState.RECORDING

    @property
    def needs_save(self) -> bool:
        """True if the session ended but has not been persisted yet."""
        return self._state == RecorderState.ENDED and not self._saved

    def live_window(self, metric: Metric) -> LiveWindow:
        return self._live[metric]

    @property
    def live_windows(self) -> Dict[Metric, LiveWindow]:
        return dict(self._live)

    def set_on_end(self, callback: Callable[[Session, RecorderResult], None]) -> None:
        """Set callback for session end.

        Args:
            callback: Function called with the ended session and the end result
        """
        self._on_end = callback

    def device_connected(self, binding: DeviceBinding) -> None:
        self._devices[binding.device_id] = binding
        logger.info(f"Device bound: {binding.name} ({binding.service_type.value})")

    def device_disconnected(
        self, device_id: str, at: Optional[datetime] = None
    ) -> RecorderResult:
        """Forget a device and end any active session at the disconnect instant."""
        binding = self._devices.pop(device_id, None)
        if binding is None:
            return RecorderResult.INVALID_TRANSITION
        logger.info(f"Device unbound: {binding.name}")
        if self._state == RecorderState.RECORDING:
            logger.warning(f"{binding.name} disconnected, ending session")
            return self.end(at=at)
        return RecorderResult.SUCCESS

    def start(self) -> RecorderResult:
        """Start recording; only allowed from IDLE with a device connected."""
        if self._state != RecorderState.IDLE:
            logger.warning(f"Cannot start session from state {self._state.value}")
            return RecorderResult.INVALID_TRANSITION
        if not self._devices:
            logger.warning("Cannot start session: no device connected")
            return RecorderResult.NO_DEVICE

        self._session = Session(
            id=uuid.uuid4().hex,
            start_time=self._clock(),
            streams={metric: MetricStream(metric) for metric in self._metrics},
        )
        for window in self._live.values():
            window.clear()
        self._state = RecorderState.RECORDING
        logger.info(f"Session {self._session.id} started")
        return RecorderResult.SUCCESS

    def handle_reading(self, reading: SensorReading) -> bool:
        """Append a reading to the active session.

        Returns:
            True if the reading was recorded
        """
        if self._state != RecorderState.RECORDING or self._session is None:
            return False
        stream = self._session.streams.get(reading.metric)
        if stream is None:
            return False
        if not stream.append(reading):
            return False
        self._live[reading.metric].append(reading)
        return True

    def end(self, at: Optional[datetime] = None) -> RecorderResult:
        """End the session, compute its statistics and save it.

        Ending twice is a no-op, since user action and a disconnect can both
        trigger it.
        """
        if self._state == RecorderState.ENDED:
            return RecorderResult.ALREADY_ENDED
        if self._state != RecorderState.RECORDING or self._session is None:
            logger.info("No active session to end")
            return RecorderResult.INVALID_TRANSITION

        session = self._session
        session.end_time = at or self._clock()
        for stream in session.streams.values():
            stream.freeze()
        self._state = RecorderState.ENDED

        session.stats = session_stats(session.streams, self._metrics)
        self._rank_against_history(session)
        logger.info(
            f"Session {session.id} ended after {session.duration:.0f}s "
            f"({sum(len(s) for s in session.streams.values())} readings)"
        )

        result = self.retry_save()
        if self._on_end:
            try:
                self._on_end(session, result)
            except Exception as e:
                logger.error(f"Session end callback error: {e}")
        return result

    def retry_save(self) -> RecorderResult:
        """Persist the ended session; safe to call again after a failure."""
        if self._state != RecorderState.ENDED or self._session is None:
            return RecorderResult.INVALID_TRANSITION
        if self._saved or self._store is None:
            return RecorderResult.SUCCESS

        try:
            self._session.persisted_id = self._store.save_session(self._session)
        except Exception as e:
            logger.error(f"Failed to save session {self._session.id}: {e}")
            return RecorderResult.PERSISTENCE_FAILURE

        self._saved = True
        return RecorderResult.SUCCESS

    def _rank_against_history(self, session: Session) -> None:
        if self._store is None or session.stats is None:
            return
        try:
            history = self._store.fetch_sessions(self._user_context)
        except Exception as e:
            logger.warning(f"Could not load session history: {e}")
            return

        sessions = [s for s in history if s.id != session.id] + [session]
        session.stats = replace(
            session.stats,
            percentile_rank=percentile_rankings(
                sessions, len(sessions) - 1, self._metrics
            ),
        )
