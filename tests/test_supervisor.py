"""
Supervisor (watchdog) Tests

# ============================================================================
# PURPOSE
# ============================================================================
#
# 1. Sustained health records last-known-good exactly once per deployment
# 2. Sustained failure rolls back exactly once per cooldown window
# 3. Restart requests are cleared only after a confirmed restart
# 4. A single-endpoint regression alone never triggers restarts
# 5. Every shelled-out command is bounded and never raises
#
# ============================================================================
"""

import json
import os
import subprocess
import sys
from unittest.mock import Mock, patch

import pytest
import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.dsp.restart_flag import RestartCoordinator
from core.watchdog.deployment import DeploymentPointer, LastKnownGoodStore
from core.watchdog.services import CommandResult, ServiceManager, run_command
from core.watchdog.supervisor import (
    HttpProber,
    Supervisor,
    SupervisorPolicy,
    start_watchdog,
)


class FakeServices:
    """Stands in for systemctl/nginx."""

    def __init__(self):
        self.inactive = set()
        self.restart_fails = set()
        self.proxy_valid = True
        self.restarts = []
        self.reloads = []

    def is_active(self, unit):
        return unit not in self.inactive

    def restart(self, unit):
        self.restarts.append(unit)
        return unit not in self.restart_fails

    def reload(self, unit):
        self.reloads.append(unit)
        return True

    def proxy_config_valid(self):
        return CommandResult(['nginx', '-t'], 0 if self.proxy_valid else 1, '', '' if self.proxy_valid else 'emerg')

    def repair_proxy(self, release_dir):
        return False


class FakeProber:
    def __init__(self, alive=True):
        self.alive = alive

    def engine_alive(self):
        return (self.alive, '/api/health' if self.alive else '')

    def version(self):
        return '1.2.3'


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def runtime(tmp_path):
    """runtime/releases/{r1,r2}, current -> r2."""
    root = tmp_path / 'runtime'
    r1 = root / 'releases' / 'r1'
    r2 = root / 'releases' / 'r2'
    r1.mkdir(parents=True)
    r2.mkdir(parents=True)
    os.utime(r1, (1000, 1000))
    os.utime(r2, (2000, 2000))
    os.symlink(str(r2), str(root / 'current'))
    return {
        'root': str(root),
        'r1': os.path.realpath(str(r1)),
        'r2': os.path.realpath(str(r2)),
        'flag': str(tmp_path / 'state' / 'restart_required.json'),
        'last_good': str(root / 'last_good.json'),
    }


def make_supervisor(runtime, services=None, prober=None, clock=None, **policy):
    services = services or FakeServices()
    prober = prober or FakeProber()
    sup = Supervisor(
        services=services,
        prober=prober,
        pointer=DeploymentPointer(runtime['root']),
        last_good=LastKnownGoodStore(runtime['last_good']),
        restart_flag=RestartCoordinator(runtime['flag']),
        policy=SupervisorPolicy(**policy),
        clock=clock or FakeClock(),
    )
    return sup, services, prober


class TestLastKnownGood:

    def test_written_once_after_good_streak(self, runtime):
        """6 healthy cycles write last-known-good exactly once."""
        print("\n" + "="*70)
        print("TEST: Last-known-good after sustained health")
        print("="*70)

        sup, _, _ = make_supervisor(runtime)
        writes = []
        for _ in range(10):
            report = sup.run_cycle()
            writes.append(report.last_good_written)

        assert writes == [False] * 5 + [True] + [False] * 4
        with open(runtime['last_good']) as f:
            record = json.load(f)
        assert record['path'] == runtime['r2']
        assert record['version'] == '1.2.3'
        assert record['ts']
        print("✓ one write, unchanged path not rewritten")

    def test_rewritten_when_deployment_changes(self, runtime):
        sup, _, _ = make_supervisor(runtime)
        for _ in range(6):
            sup.run_cycle()
        sup.pointer.switch(runtime['r1'])
        report = sup.run_cycle()
        assert report.last_good_written is True
        assert sup.last_good.read().path == runtime['r1']

    def test_partial_health_breaks_streak(self, runtime):
        """A single failed cycle resets the good streak."""
        prober = FakeProber()
        sup, _, _ = make_supervisor(runtime, prober=prober)
        for _ in range(5):
            sup.run_cycle()
        prober.alive = False
        sup.run_cycle()
        prober.alive = True
        reports = [sup.run_cycle() for _ in range(5)]
        assert not any(r.last_good_written for r in reports)
        assert sup.run_cycle().last_good_written is True


class TestRollback:

    def test_one_rollback_then_cooldown(self, runtime):
        """sustained failure rolls back once; the next streak is suppressed."""
        print("\n" + "="*70)
        print("TEST: Rollback with cooldown")
        print("="*70)

        LastKnownGoodStore(runtime['last_good']).write(runtime['r1'], '1.0.0')
        clock = FakeClock()
        sup, services, _ = make_supervisor(runtime, prober=FakeProber(alive=False), clock=clock)

        reports = []
        for _ in range(12):
            reports.append(sup.run_cycle())
            clock.now += 15

        rolled = [i for i, r in enumerate(reports) if r.rolled_back]
        assert rolled == [5]
        assert reports[11].rollback_suppressed is True
        assert sup.pointer.current() == runtime['r1']
        assert 'stub-engine' in services.restarts
        assert 'stub-ui-watch' in services.restarts
        print("✓ exactly one rollback in the cooldown window")

    def test_rollback_resets_counters(self, runtime):
        LastKnownGoodStore(runtime['last_good']).write(runtime['r1'])
        sup, _, _ = make_supervisor(runtime, prober=FakeProber(alive=False))
        for _ in range(6):
            report = sup.run_cycle()
        assert report.rolled_back is True
        assert (sup.fail_streak, sup.good_streak, sup.engine_fail_count) == (0, 0, 0)

    def test_fallback_to_previous_release(self, runtime):
        """Without a record, the newest release other than current is the target."""
        sup, _, _ = make_supervisor(runtime, prober=FakeProber(alive=False))
        for _ in range(6):
            sup.run_cycle()
        assert sup.pointer.current() == runtime['r1']

    def test_refuses_when_target_is_current(self, runtime):
        LastKnownGoodStore(runtime['last_good']).write(runtime['r2'])
        sup, _, _ = make_supervisor(runtime)
        assert sup.rollback() is False
        assert sup.pointer.current() == runtime['r2']
        assert sup.last_rollback_at is None

    def test_allowed_again_after_cooldown(self, runtime):
        clock = FakeClock()
        sup, _, _ = make_supervisor(runtime, clock=clock, rollback_cooldown=600)
        assert sup.rollback() is True                 # r2 -> r1
        clock.now += 599
        assert sup.rollback() is False                # suppressed
        clock.now += 2
        assert sup.rollback() is True                 # r1 -> r2
        assert sup.pointer.current() == runtime['r2']

    def test_fail_streak_needs_all_checks(self, runtime):
        """Engine healthy but proxy invalid still counts as a failed cycle."""
        services = FakeServices()
        services.proxy_valid = False
        sup, _, _ = make_supervisor(runtime, services=services)
        reports = [sup.run_cycle() for _ in range(3)]
        assert [r.fail_streak for r in reports] == [1, 2, 3]
        assert all(r.engine_ok for r in reports)


class TestCycleChecks:

    def test_inactive_unit_restarted(self, runtime):
        services = FakeServices()
        services.inactive.add('stub-ui-watch')
        sup, _, _ = make_supervisor(runtime, services=services)
        report = sup.run_cycle()
        assert 'stub-ui-watch' in services.restarts
        assert report.services_ok is False

    def test_proxy_reloaded_when_valid(self, runtime):
        sup, services, _ = make_supervisor(runtime)
        sup.run_cycle()
        assert services.reloads == ['nginx']

    def test_engine_restart_threshold(self, runtime):
        """Three consecutive probe failures restart the engine once."""
        sup, services, _ = make_supervisor(runtime, prober=FakeProber(alive=False))
        for _ in range(3):
            sup.run_cycle()
        assert services.restarts.count('stub-engine') == 1
        assert sup.engine_fail_count == 0

    def test_pointer_repaired(self, runtime):
        """A missing current pointer is relinked to the newest release."""
        os.remove(os.path.join(runtime['root'], 'current'))
        sup, _, _ = make_supervisor(runtime)
        report = sup.run_cycle()
        assert report.pointer_ok is True
        assert sup.pointer.current() == runtime['r2']

    def test_broken_pointer_repaired(self, runtime):
        link = os.path.join(runtime['root'], 'current')
        os.remove(link)
        os.symlink(os.path.join(runtime['root'], 'releases', 'gone'), link)
        sup, _, _ = make_supervisor(runtime)
        assert sup.pointer.current() is None
        sup.run_cycle()
        assert sup.pointer.current() == runtime['r2']


class TestRestartRequestHandling:

    def test_cleared_on_success(self, runtime):
        RestartCoordinator(runtime['flag']).request("mode change")
        sup, services, _ = make_supervisor(runtime)
        report = sup.run_cycle()
        assert report.restart_request_handled is True
        assert services.restarts == ['stub-engine']
        assert not os.path.exists(runtime['flag'])

    def test_kept_and_retried_on_failure(self, runtime):
        """A failed restart leaves the request for the next cycle."""
        RestartCoordinator(runtime['flag']).request("mode change")
        services = FakeServices()
        services.restart_fails.add('stub-engine')
        sup, _, _ = make_supervisor(runtime, services=services)

        sup.run_cycle()
        assert os.path.exists(runtime['flag'])

        services.restart_fails.clear()
        report = sup.run_cycle()
        assert report.restart_request_handled is True
        assert not os.path.exists(runtime['flag'])
        assert services.restarts.count('stub-engine') == 2

    def test_no_request_no_restart(self, runtime):
        sup, services, _ = make_supervisor(runtime)
        sup.run_cycle()
        assert services.restarts == []


def response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body or {}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status}")
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestHttpProber:

    def test_health_ok(self):
        session = Mock()
        session.get.return_value = response()
        assert HttpProber('http://core', session=session).engine_alive() == (True, '/api/health')
        session.get.assert_called_once_with('http://core/api/health', timeout=2.0)

    def test_fallback_endpoint(self):
        """A broken /api/health alone does not count as engine down."""
        session = Mock()

        def get(url, timeout):
            if url.endswith('/api/health'):
                return response(500)
            return response()

        session.get.side_effect = get
        assert HttpProber('http://core', session=session).engine_alive() == (True, '/api/config')

    def test_both_fail(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("refused")
        assert HttpProber('http://core', session=session).engine_alive() == (False, '')

    def test_version(self):
        session = Mock()
        session.get.return_value = response(body={'ok': True, 'version': '0.3.0'})
        assert HttpProber(session=session).version() == '0.3.0'
        session.get.side_effect = requests.Timeout("slow")
        assert HttpProber(session=session).version() == ''


class TestServiceManager:

    def test_states_verbatim(self):
        """is-enabled / is-active output is surfaced unmodified."""
        def runner(args, timeout):
            if 'is-enabled' in args:
                return CommandResult(args, 1, 'disabled\n')
            return CommandResult(args, 3, 'inactive\n')

        services = ServiceManager(runner=runner)
        assert services.unit_status('stub-ui-watchdog.service') == {
            'unit': 'stub-ui-watchdog.service', 'enabled': 'disabled', 'active': 'inactive'}

    def test_commands_carry_timeout(self):
        runner = Mock(return_value=CommandResult(['x'], 0))
        ServiceManager(runner=runner, timeout=4).restart('stub-engine')
        runner.assert_called_once_with(['systemctl', 'restart', 'stub-engine'], 4)

    def test_enable_now_stops_on_failure(self):
        calls = []

        def runner(args, timeout):
            calls.append(list(args))
            return CommandResult(args, 1, '', 'Access denied')

        results = ServiceManager(runner=runner).enable_now('stub-ui-watchdog.service')
        assert calls == [['systemctl', 'daemon-reload']]
        assert results[0].ok is False

    def test_start_watchdog_surfaces_failure(self):
        def runner(args, timeout):
            if 'enable' in args:
                return CommandResult(args, 1, '', 'Failed to enable unit')
            if 'is-active' in args:
                return CommandResult(args, 3, 'inactive\n')
            if 'is-enabled' in args:
                return CommandResult(args, 1, 'disabled\n')
            return CommandResult(args, 0)

        result = start_watchdog(ServiceManager(runner=runner))
        assert result['ok'] is False
        assert 'Failed to enable unit' in result['error']
        assert result['active'] == 'inactive'

    def test_run_command_timeout(self):
        with patch('subprocess.run', side_effect=subprocess.TimeoutExpired(['sleep'], 1)):
            result = run_command(['sleep', '100'], timeout=1)
        assert result.ok is False
        assert 'timed out' in result.stderr

    def test_run_command_missing_binary(self):
        with patch('subprocess.run', side_effect=FileNotFoundError("no such file")):
            result = run_command(['definitely-not-installed'])
        assert result.returncode == -1

    def test_repair_proxy_requires_script(self, tmp_path):
        runner = Mock()
        assert ServiceManager(runner=runner).repair_proxy(str(tmp_path)) is False
        runner.assert_not_called()


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v", "-s"]))
