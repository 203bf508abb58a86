"""
DSP Health Monitor, Timeline and Write Gate Tests

# ============================================================================
# PURPOSE
# ============================================================================
#
# Verifies the connectivity state machine that guards device writes:
# 1. State is a pure function of consecutive failures
# 2. Mock mode never touches the network
# 3. Timeline entries are written only on state transitions
# 4. The write gate blocks live writes only when DISCONNECTED
#
# ============================================================================
# HOW TO RUN
# ============================================================================
#
#   python -m pytest tests/test_dsp_health.py -v -s
#
# ============================================================================
"""

import os
import socket
import sys
from unittest.mock import Mock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.dsp import gate
from core.dsp.health import DeviceHealthMonitor
from core.dsp.timeline import HealthTimeline
from core.dsp.types import (
    DeviceTarget,
    HealthState,
    OperatingMode,
    TimelineEntry,
    state_for_failures,
)

LIVE = DeviceTarget(OperatingMode.LIVE, '192.0.2.10', 1710)
MOCK = DeviceTarget(OperatingMode.MOCK, '', 0)


def refused(*args, **kwargs):
    raise ConnectionRefusedError("connection refused")


class TestStateMachine:
    """State is derived from consecutive failures only."""

    @pytest.mark.parametrize("failures,expected", [
        (0, HealthState.OK),
        (1, HealthState.DEGRADED),
        (2, HealthState.DEGRADED),
        (3, HealthState.DISCONNECTED),
        (10, HealthState.DISCONNECTED),
    ])
    def test_state_for_failures(self, failures, expected):
        """0 -> OK, 1-2 -> DEGRADED, >=3 -> DISCONNECTED."""
        assert state_for_failures(failures) == expected

    def test_initial_state_unknown(self):
        """A fresh monitor has no belief about the device."""
        monitor = DeviceHealthMonitor(probe=Mock())
        snap = monitor.snapshot()
        assert snap.state == HealthState.UNKNOWN
        assert snap.consecutive_failures == 0
        assert snap.last_test_at is None
        assert snap.connected is False

    def test_failures_increase_then_reset(self):
        """Failures climb by one per failed probe and reset to exactly 0 on success."""
        outcomes = [False, False, True, False, False, False, False, True]
        probe = Mock()
        monitor = DeviceHealthMonitor(probe=probe)

        expected = 0
        for ok in outcomes:
            probe.side_effect = None if ok else ConnectionRefusedError("refused")
            snap = monitor.test(target=LIVE)
            expected = 0 if ok else expected + 1
            assert snap.consecutive_failures == expected
            assert snap.state == state_for_failures(expected)

    def test_success_stamps_last_ok(self):
        """A successful probe records lastOk and clears the error."""
        probe = Mock(side_effect=[ConnectionRefusedError("refused"), None])
        monitor = DeviceHealthMonitor(probe=probe)
        first = monitor.test(target=LIVE)
        assert first.last_error and 'refused' in first.last_error
        assert first.last_ok is None

        second = monitor.test(target=LIVE)
        assert second.state == HealthState.OK
        assert second.last_ok is not None
        assert second.last_error is None
        assert second.connected is True

    def test_timeout_error_text(self):
        """A connect timeout is counted with a readable message."""
        monitor = DeviceHealthMonitor(probe=Mock(side_effect=socket.timeout("timed out")))
        snap = monitor.test(timeout=0.5, target=LIVE)
        assert snap.state == HealthState.DEGRADED
        assert 'timed out' in snap.last_error

    def test_unconfigured_host_counts_as_failure(self):
        """Live mode with no host configured is a failure without a network call."""
        probe = Mock()
        monitor = DeviceHealthMonitor(probe=probe)
        snap = monitor.test(target=DeviceTarget(OperatingMode.LIVE, '', 1710))
        assert snap.consecutive_failures == 1
        assert snap.last_error == "DSP host/port not configured"
        probe.assert_not_called()

    def test_snapshot_is_pure(self):
        """Two snapshots with no intervening test() are identical."""
        monitor = DeviceHealthMonitor(probe=Mock(side_effect=refused))
        monitor.test(target=LIVE)
        assert monitor.snapshot() == monitor.snapshot()

    def test_lock_not_held_during_probe(self):
        """The probe can read the snapshot; the state lock is not held across I/O."""
        monitor = DeviceHealthMonitor()
        seen = []

        def probe(host, port, timeout):
            seen.append(monitor.snapshot().state)

        monitor._probe = probe
        snap = monitor.test(target=LIVE)
        assert seen == [HealthState.UNKNOWN]
        assert snap.state == HealthState.OK

    def test_uses_target_provider(self):
        """Without an explicit target the provider decides what to probe."""
        probe = Mock()
        monitor = DeviceHealthMonitor(target_provider=lambda: LIVE, probe=probe)
        monitor.test(timeout=0.7)
        probe.assert_called_once_with('192.0.2.10', 1710, 0.7)


class TestScenarios:
    """End-to-end probe scenarios."""

    def test_mock_mode_no_network(self):
        """Mock mode returns OK immediately with zero network calls."""
        print("\n" + "="*70)
        print("TEST: Mock mode test() short-circuits")
        print("="*70)

        probe = Mock()
        monitor = DeviceHealthMonitor(probe=probe)
        with patch('socket.create_connection') as create_connection:
            snap = monitor.test(target=MOCK)

        assert snap.state == HealthState.OK
        assert snap.consecutive_failures == 0
        probe.assert_not_called()
        create_connection.assert_not_called()
        print("✓ OK with no socket activity")

    def test_unreachable_live_device(self):
        """Three failures -> DISCONNECTED with exactly two new timeline entries."""
        print("\n" + "="*70)
        print("TEST: Live mode, unreachable endpoint")
        print("="*70)

        probe = Mock()
        timeline = HealthTimeline()
        monitor = DeviceHealthMonitor(probe=probe, timeline=timeline)

        monitor.test(target=LIVE)  # link was up
        assert monitor.state == HealthState.OK
        baseline = len(timeline)

        probe.side_effect = ConnectionRefusedError("refused")
        states = [monitor.test(target=LIVE).state for _ in range(3)]

        assert states == [HealthState.DEGRADED, HealthState.DEGRADED, HealthState.DISCONNECTED]
        new_entries = timeline.read(200)[baseline:]
        assert [e.state for e in new_entries] == [HealthState.DEGRADED, HealthState.DISCONNECTED]
        assert new_entries[-1].failures == 3
        print("✓ OK -> DEGRADED -> DISCONNECTED, 2 entries")

    def test_repeated_failures_past_threshold_no_new_entries(self):
        """Further failures while DISCONNECTED do not grow the timeline."""
        timeline = HealthTimeline()
        monitor = DeviceHealthMonitor(probe=Mock(side_effect=refused), timeline=timeline)
        for _ in range(3):
            monitor.test(target=LIVE)
        count = len(timeline)
        for _ in range(5):
            monitor.test(target=LIVE)
        assert len(timeline) == count
        assert monitor.snapshot().consecutive_failures == 8


class TestReset:
    """Configuration changes forget prior connectivity."""

    def test_reset_to_unknown(self):
        """reset() returns to UNKNOWN and records the transition."""
        timeline = HealthTimeline()
        monitor = DeviceHealthMonitor(probe=Mock(), timeline=timeline)
        monitor.test(target=LIVE)
        snap = monitor.reset("configuration changed")
        assert snap.state == HealthState.UNKNOWN
        assert snap.last_ok is None
        assert timeline.read()[-1].state == HealthState.UNKNOWN
        assert timeline.read()[-1].last_error == "configuration changed"

    def test_reset_from_unknown_is_silent(self):
        """Resetting an UNKNOWN monitor writes nothing."""
        timeline = HealthTimeline()
        monitor = DeviceHealthMonitor(probe=Mock(), timeline=timeline)
        monitor.reset()
        assert len(timeline) == 0

    def test_transition_callbacks(self):
        """Callbacks receive every transition; a failing callback is contained."""
        seen = []

        def broken(entry):
            raise RuntimeError("boom")

        monitor = DeviceHealthMonitor(probe=Mock())
        monitor.register_transition_callback(broken)
        monitor.register_transition_callback(seen.append)
        monitor.test(target=LIVE)
        monitor.test(target=LIVE)
        assert [e.state for e in seen] == [HealthState.OK]


class TestTimeline:
    """Bounded JSONL persistence."""

    def test_persisted_and_bounded(self, tmp_path):
        """Only the newest max_entries lines are retained on disk."""
        path = str(tmp_path / 'state' / 'timeline.jsonl')
        timeline = HealthTimeline(path, max_entries=5)
        for i in range(12):
            state = HealthState.DEGRADED if i % 2 else HealthState.OK
            timeline.append(TimelineEntry(time=f"t{i}", state=state, failures=i % 2))

        with open(path) as f:
            assert len(f.read().splitlines()) == 5
        entries = timeline.read(100)
        assert [e.time for e in entries] == ['t7', 't8', 't9', 't10', 't11']

    def test_read_skips_corrupt_lines(self, tmp_path):
        """A torn or foreign line does not break reads."""
        path = tmp_path / 'timeline.jsonl'
        path.write_text('{"time":"a","state":"OK","failures":0}\nnot json\n'
                        '{"time":"b","state":"DISCONNECTED","failures":3,"last_error":"x"}\n')
        entries = HealthTimeline(str(path)).read()
        assert [e.time for e in entries] == ['a', 'b']
        assert entries[1].last_error == 'x'

    def test_bare_filename(self, tmp_path, monkeypatch):
        """A path with no directory part is written to the working directory."""
        monkeypatch.chdir(tmp_path)
        timeline = HealthTimeline('timeline.jsonl')
        timeline.append(TimelineEntry(time='t0', state=HealthState.OK, failures=0))
        assert len(timeline) == 1
        assert (tmp_path / 'timeline.jsonl').exists()

    def test_read_missing_file(self, tmp_path):
        """No file yet means no history."""
        assert HealthTimeline(str(tmp_path / 'missing.jsonl')).read() == []

    def test_read_count(self):
        """read(n) returns the most recent n, oldest first."""
        timeline = HealthTimeline()
        for i in range(10):
            timeline.append(TimelineEntry(time=str(i), state=HealthState.OK, failures=0))
        assert [e.time for e in timeline.read(3)] == ['7', '8', '9']


class TestWriteGate:
    """Single pure policy for control writes."""

    @pytest.mark.parametrize("health", list(HealthState))
    def test_mock_always_allowed(self, health):
        """Mock mode allows writes regardless of health."""
        assert gate.allowed(OperatingMode.MOCK, health) == (True, "")

    def test_live_disconnected_denied(self):
        """Live + DISCONNECTED is denied with a reason."""
        ok, reason = gate.allowed(OperatingMode.LIVE, HealthState.DISCONNECTED)
        assert ok is False
        assert reason == gate.DISCONNECTED_REASON

    @pytest.mark.parametrize("health", [HealthState.UNKNOWN, HealthState.OK, HealthState.DEGRADED])
    def test_live_other_states_allowed(self, health):
        """Live writes are only blocked by DISCONNECTED."""
        assert gate.allowed(OperatingMode.LIVE, health) == (True, "")

    def test_accepts_plain_strings(self):
        """Mode and health may be passed as their string values."""
        assert gate.allowed('live', 'DISCONNECTED')[0] is False
        assert gate.allowed('mock', 'DISCONNECTED')[0] is True


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v", "-s"]))
