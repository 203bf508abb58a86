"""
DSP Health Monitor - connectivity state machine for the controlled device

# ============================================================================
# SAFETY PROPERTIES
# ============================================================================
#
# 1. State changes ONLY through an explicit probe (test()) or an explicit
#    reset after a configuration change. There is no background polling and
#    no automatic reconnection.
# 2. A probe is a single bounded TCP connect. It is protocol-agnostic, so it
#    can never send a malformed command to the device.
# 3. In mock mode test() returns OK without touching the network.
# 4. The state lock is NEVER held across the network call. State is read
#    into locals, the connect runs unlocked, results are committed under a
#    short re-acquired lock.
#
# State machine (pure function of consecutive failures):
#   0 failures   -> OK
#   1-2 failures -> DEGRADED
#   >=3 failures -> DISCONNECTED
#
# ============================================================================
"""

import socket
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from core.log_setup import get_logger
from .timeline import HealthTimeline
from .types import (
    DISCONNECT_THRESHOLD,
    DeviceTarget,
    HealthSnapshot,
    HealthState,
    TimelineEntry,
    state_for_failures,
)

health_logger = get_logger('studiob.health', 'HEALTH')

DEFAULT_PROBE_TIMEOUT = 1.2  # seconds; conservative, avoids thread pile-ups


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def tcp_connect_probe(host: str, port: int, timeout: float):
    """Open and immediately close a TCP connection. Raises OSError on failure."""
    conn = socket.create_connection((host, port), timeout=timeout)
    conn.close()


class DeviceHealthMonitor:
    """
    Owns the connectivity belief about the device.

    target_provider returns the DeviceTarget (mode/host/port) to probe when
    test() is called without an explicit target.
    """

    def __init__(self,
                 target_provider: Optional[Callable[[], DeviceTarget]] = None,
                 timeline: Optional[HealthTimeline] = None,
                 probe: Callable[[str, int, float], None] = tcp_connect_probe,
                 disconnect_threshold: int = DISCONNECT_THRESHOLD,
                 clock: Callable[[], datetime] = _utc_now):
        self._target_provider = target_provider
        self.timeline = timeline if timeline is not None else HealthTimeline()
        self._probe = probe
        self.disconnect_threshold = max(1, int(disconnect_threshold))
        self._clock = clock
        self._lock = threading.Lock()

        self._state = HealthState.UNKNOWN
        self._failures = 0
        self._last_ok: Optional[datetime] = None
        self._last_error = ""
        self._last_test_at: Optional[datetime] = None

        self._transition_callbacks: List[Callable[[TimelineEntry], None]] = []

    def register_transition_callback(self, callback: Callable[[TimelineEntry], None]):
        """Called (outside the lock) for every state transition."""
        with self._lock:
            self._transition_callbacks.append(callback)

    # ─────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────

    def _snapshot_locked(self) -> HealthSnapshot:
        return HealthSnapshot(
            state=self._state,
            connected=self._state in (HealthState.OK, HealthState.DEGRADED) and self._last_ok is not None,
            consecutive_failures=self._failures,
            last_ok=_iso(self._last_ok),
            last_error=self._last_error or None,
            last_test_at=_iso(self._last_test_at),
        )

    def snapshot(self) -> HealthSnapshot:
        """Pure read. No I/O."""
        with self._lock:
            return self._snapshot_locked()

    @property
    def state(self) -> HealthState:
        with self._lock:
            return self._state

    # ─────────────────────────────────────────────────────────
    # Probe
    # ─────────────────────────────────────────────────────────

    def test(self, timeout: Optional[float] = None, target: Optional[DeviceTarget] = None) -> HealthSnapshot:
        """
        Run exactly one bounded reachability probe and commit the result.

        Never raises for probe failures; they are counted.
        """
        if target is None:
            if self._target_provider is None:
                raise ValueError("no device target configured")
            target = self._target_provider()

        if target.simulated:
            # No external device exists in mock mode; zero network I/O.
            return self._commit(self._clock(), None)

        if timeout is None or timeout <= 0:
            timeout = DEFAULT_PROBE_TIMEOUT

        host = (target.host or '').strip()
        port = int(target.port or 0)
        error = None
        if not host or port <= 0:
            error = "DSP host/port not configured"
        else:
            started = self._clock()
            try:
                self._probe(host, port, timeout)
            except socket.timeout:
                error = f"connect to {host}:{port} timed out after {timeout:.1f}s"
            except OSError as e:
                error = f"connect to {host}:{port} failed: {e}"
            return self._commit(started, error)

        return self._commit(self._clock(), error)

    def _commit(self, now: datetime, error: Optional[str]) -> HealthSnapshot:
        with self._lock:
            prev = self._state
            self._last_test_at = now
            if error is None:
                self._failures = 0
                self._last_ok = now
                self._last_error = ""
            else:
                self._failures += 1
                self._last_error = error
            self._state = state_for_failures(self._failures, self.disconnect_threshold)
            snap = self._snapshot_locked()
            entry = None
            if self._state != prev:
                entry = TimelineEntry(time=now.isoformat(), state=self._state,
                                      failures=self._failures, last_error=self._last_error)
            callbacks = list(self._transition_callbacks)

        if entry is not None:
            self._record_transition(prev, entry, callbacks)
        return snap

    # ─────────────────────────────────────────────────────────
    # Reset (configuration changed)
    # ─────────────────────────────────────────────────────────

    def reset(self, reason: str = "configuration changed") -> HealthSnapshot:
        """Forget everything learned under the previous configuration."""
        now = self._clock()
        with self._lock:
            prev = self._state
            self._state = HealthState.UNKNOWN
            self._failures = 0
            self._last_error = ""
            self._last_ok = None
            self._last_test_at = None
            snap = self._snapshot_locked()
            callbacks = list(self._transition_callbacks)

        if prev != HealthState.UNKNOWN:
            entry = TimelineEntry(time=now.isoformat(), state=HealthState.UNKNOWN,
                                  failures=0, last_error=reason)
            self._record_transition(prev, entry, callbacks)
        return snap

    def _record_transition(self, prev: HealthState, entry: TimelineEntry, callbacks):
        msg = f"DSP health {prev.value} -> {entry.state.value} (failures={entry.failures})"
        if entry.last_error:
            msg += f" | {entry.last_error}"
        if entry.state == HealthState.DISCONNECTED:
            health_logger.critical(msg)
        elif entry.state == HealthState.DEGRADED:
            health_logger.warning(msg)
        else:
            health_logger.info(msg)

        self.timeline.append(entry)

        for callback in callbacks:
            try:
                callback(entry)
            except Exception as e:
                health_logger.error(f"Transition callback error: {e}")
