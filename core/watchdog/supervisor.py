"""
StudioB Supervisor - independent watchdog loop

# ============================================================================
# POLICY
# ============================================================================
#
# The supervisor is the ONLY component allowed to restart services or roll
# back a deployment. It talks to the core exclusively through the HTTP health
# surface and the restart flag file; there is no shared memory.
#
# Each cycle:
#   1. Repair a broken runtime/current pointer
#   2. Restart any monitored unit that is not active
#   3. Validate the proxy config (narrow self-repair if invalid)
#   4. Consume a pending restart request (cleared only on success)
#   5. Probe /api/health, falling back to /api/config
#   6. Good streak -> record last-known-good (only if it changed)
#   7. Fail streak -> roll back (rate-limited by a cooldown)
#
# The fail streak resets ONLY on a cycle where every check passed.
#
# ============================================================================
"""

import argparse
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import requests

from core.dsp.config_store import ConfigPaths
from core.dsp.restart_flag import RestartCoordinator
from core.log_setup import add_rotating_file, audit_log, configure_audit_log, get_logger
from .deployment import DeploymentPointer, LastKnownGoodStore
from .services import (
    DEFAULT_COMMAND_TIMEOUT,
    ENGINE_UNIT,
    MONITORED_UNITS,
    PROXY_UNIT,
    WATCHDOG_UNIT,
    ServiceManager,
)

watchdog_logger = get_logger('studiob.watchdog', 'WATCHDOG')

DEFAULT_BASE_URL = 'http://127.0.0.1:8787'


@dataclass
class SupervisorPolicy:
    """Escalation constants. Untuned; override per installation."""
    interval: float = 15.0
    engine_restart_threshold: int = 3
    good_streak_required: int = 6
    rollback_threshold: int = 6
    rollback_cooldown: float = 600.0
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    probe_timeout: float = 2.0
    units: Tuple[str, ...] = MONITORED_UNITS
    engine_unit: str = ENGINE_UNIT
    proxy_unit: str = PROXY_UNIT


class HttpProber:
    """Liveness probes against the core's HTTP surface."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 2.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def get(self, path: str) -> requests.Response:
        response = self.session.get(self.base_url + path, timeout=self.timeout)
        response.raise_for_status()
        return response

    def probe(self, path: str) -> bool:
        try:
            self.get(path)
            return True
        except requests.RequestException:
            return False

    def engine_alive(self) -> Tuple[bool, str]:
        """(alive, which endpoint answered). /api/config is a fallback for a single-endpoint regression."""
        if self.probe('/api/health'):
            return True, '/api/health'
        if self.probe('/api/config'):
            watchdog_logger.warning("/api/health failed but /api/config is OK; treating engine as up")
            return True, '/api/config'
        return False, ''

    def version(self) -> str:
        """Best-effort; empty when unavailable."""
        try:
            data = self.get('/api/version').json()
        except (requests.RequestException, ValueError):
            return ""
        if not isinstance(data, dict):
            return ""
        return str(data.get('version') or '')


@dataclass
class CycleReport:
    pointer_ok: bool = False
    services_ok: bool = False
    proxy_ok: bool = False
    engine_ok: bool = False
    restart_request_handled: bool = False
    last_good_written: bool = False
    rolled_back: bool = False
    rollback_suppressed: bool = False
    good_streak: int = 0
    fail_streak: int = 0
    actions: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.services_ok and self.proxy_ok and self.engine_ok

    def to_dict(self):
        return {
            'healthy': self.healthy,
            'pointer_ok': self.pointer_ok,
            'services_ok': self.services_ok,
            'proxy_ok': self.proxy_ok,
            'engine_ok': self.engine_ok,
            'restart_request_handled': self.restart_request_handled,
            'last_good_written': self.last_good_written,
            'rolled_back': self.rolled_back,
            'rollback_suppressed': self.rollback_suppressed,
            'good_streak': self.good_streak,
            'fail_streak': self.fail_streak,
            'actions': list(self.actions),
        }


class Supervisor:
    def __init__(self,
                 services: ServiceManager,
                 prober: HttpProber,
                 pointer: DeploymentPointer,
                 last_good: LastKnownGoodStore,
                 restart_flag: RestartCoordinator,
                 policy: Optional[SupervisorPolicy] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.services = services
        self.prober = prober
        self.pointer = pointer
        self.last_good = last_good
        self.restart_flag = restart_flag
        self.policy = policy or SupervisorPolicy()
        self._clock = clock

        self.engine_fail_count = 0
        self.good_streak = 0
        self.fail_streak = 0
        self.last_rollback_at: Optional[float] = None

    @classmethod
    def from_paths(cls, paths: ConfigPaths, base_url: str = DEFAULT_BASE_URL,
                   policy: Optional[SupervisorPolicy] = None) -> 'Supervisor':
        policy = policy or SupervisorPolicy()
        return cls(
            services=ServiceManager(timeout=policy.command_timeout),
            prober=HttpProber(base_url, timeout=policy.probe_timeout),
            pointer=DeploymentPointer(paths.runtime_dir),
            last_good=LastKnownGoodStore(paths.last_good),
            restart_flag=RestartCoordinator(paths.restart_flag),
            policy=policy,
        )

    # ─────────────────────────────────────────────────────────
    # Cycle
    # ─────────────────────────────────────────────────────────

    def run_cycle(self) -> CycleReport:
        report = CycleReport()

        report.pointer_ok = self.pointer.repair()

        for unit in self.policy.units:
            if not self.services.is_active(unit):
                watchdog_logger.warning(f"Service not active: {unit}")
                self.services.restart(unit)
                report.actions.append(f"restart:{unit}")

        report.proxy_ok = self._check_proxy(report)

        if self.restart_flag.pending():
            report.restart_request_handled = self._handle_restart_request(report)

        report.engine_ok = self._check_engine(report)

        report.services_ok = all(self.services.is_active(u) for u in self.policy.units)

        if report.healthy:
            self.fail_streak = 0
            self.good_streak += 1
            if self.good_streak >= self.policy.good_streak_required:
                report.last_good_written = self._record_last_good()
                self.good_streak = self.policy.good_streak_required
        else:
            self.good_streak = 0
            self.fail_streak += 1
            if self.fail_streak >= self.policy.rollback_threshold:
                watchdog_logger.error(
                    f"Sustained failures detected ({self.fail_streak}/{self.policy.rollback_threshold}); "
                    f"attempting rollback")
                if self.rollback(report):
                    report.rolled_back = True

        report.good_streak = self.good_streak
        report.fail_streak = self.fail_streak
        return report

    def _check_proxy(self, report: CycleReport) -> bool:
        result = self.services.proxy_config_valid()
        if not result.ok:
            watchdog_logger.error(f"nginx -t failed; proxy config is invalid: {result.output}")
            report.actions.append("proxy:repair")
            if self.services.repair_proxy(self.pointer.current()):
                result = self.services.proxy_config_valid()
            if not result.ok:
                watchdog_logger.error("Proxy config remains invalid; manual intervention may be required")
                print("❌ WATCHDOG: proxy config invalid, continuing degraded", flush=True)
                return False
            watchdog_logger.info("Proxy reconfigure succeeded")
        if self.services.is_active(self.policy.proxy_unit):
            self.services.reload(self.policy.proxy_unit)
        return True

    def _handle_restart_request(self, report: CycleReport) -> bool:
        req = self.restart_flag.read()
        reason = req.reason if req else ''
        watchdog_logger.info(f"Restart requested ({reason or 'no reason'}); restarting {self.policy.engine_unit}")
        report.actions.append(f"restart-request:{self.policy.engine_unit}")
        if self.services.restart(self.policy.engine_unit):
            self.restart_flag.clear()
            watchdog_logger.info("Engine restarted and restart request cleared")
            audit_log('restart_request_consumed', reason=reason)
            return True
        # Leave the flag in place; it is retried next cycle.
        watchdog_logger.error("Engine restart failed; leaving restart request in place")
        return False

    def _check_engine(self, report: CycleReport) -> bool:
        alive, _ = self.prober.engine_alive()
        if alive:
            self.engine_fail_count = 0
            return True
        self.engine_fail_count += 1
        watchdog_logger.warning(
            f"Engine health failed ({self.engine_fail_count}/{self.policy.engine_restart_threshold})")
        if self.engine_fail_count >= self.policy.engine_restart_threshold:
            self.engine_fail_count = 0
            self.services.restart(self.policy.engine_unit)
            report.actions.append(f"restart:{self.policy.engine_unit}")
        return False

    def _record_last_good(self) -> bool:
        current = self.pointer.current()
        if not current:
            return False
        previous = self.last_good.read()
        if previous is not None and previous.path == current:
            return False
        try:
            self.last_good.write(current, self.prober.version())
        except OSError as e:
            watchdog_logger.error(f"Failed to record last known good: {e}")
            return False
        return True

    # ─────────────────────────────────────────────────────────
    # Rollback
    # ─────────────────────────────────────────────────────────

    def rollback_target(self, current: Optional[str]) -> Optional[str]:
        record = self.last_good.read()
        if record is not None and self.pointer_is_release(record.path):
            return record.path
        return self.pointer.newest_release(exclude=current)

    @staticmethod
    def pointer_is_release(path: str) -> bool:
        return bool(path) and os.path.isdir(path)

    def rollback(self, report: Optional[CycleReport] = None) -> bool:
        now = self._clock()
        if self.last_rollback_at is not None and now - self.last_rollback_at < self.policy.rollback_cooldown:
            watchdog_logger.warning("Rollback suppressed (cooldown active)")
            if report is not None:
                report.rollback_suppressed = True
            return False

        current = self.pointer.current()
        target = self.rollback_target(current)
        if not target:
            watchdog_logger.error("Rollback requested but no valid target found")
            return False
        if current and target == current:
            watchdog_logger.error("Rollback target equals current deployment; refusing")
            return False

        watchdog_logger.critical(f"ROLLBACK: switching current -> {target}")
        print(f"🚨 WATCHDOG ROLLBACK: {current or '-'} -> {target}", flush=True)
        try:
            self.pointer.switch(target)
        except OSError as e:
            watchdog_logger.error(f"Rollback pointer switch failed: {e}")
            return False

        for unit in self.policy.units:
            if unit == self.policy.proxy_unit and self.services.proxy_config_valid().ok:
                if self.services.reload(unit):
                    continue
            self.services.restart(unit)

        self.last_rollback_at = now
        self.fail_streak = 0
        self.engine_fail_count = 0
        self.good_streak = 0
        if report is not None:
            report.actions.append(f"rollback:{target}")
        audit_log('rollback', previous=current, target=target)
        watchdog_logger.info("ROLLBACK: complete")
        return True

    # ─────────────────────────────────────────────────────────
    # Loop
    # ─────────────────────────────────────────────────────────

    def run_forever(self, stop: Optional[threading.Event] = None):
        stop = stop or threading.Event()
        watchdog_logger.info(f"Supervisor starting (interval={self.policy.interval:.0f}s)")
        while not stop.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                # One bad cycle must not kill the supervisor.
                watchdog_logger.exception(f"Supervisor cycle error: {e}")
            stop.wait(self.policy.interval)


# ============================================================
# Operator-facing helpers (used by the core's HTTP surface)
# ============================================================

def watchdog_status(services: ServiceManager, paths: ConfigPaths,
                    unit: str = WATCHDOG_UNIT) -> dict:
    """Unit state (verbatim from systemd), pending restart request and last-known-good."""
    restart = RestartCoordinator(paths.restart_flag).read()
    last_good = LastKnownGoodStore(paths.last_good).read()
    status = services.unit_status(unit)
    status['restartRequest'] = restart.to_dict() if restart else None
    status['lastKnownGood'] = last_good.to_dict() if last_good else None
    return status


def start_watchdog(services: ServiceManager, unit: str = WATCHDOG_UNIT) -> dict:
    """daemon-reload + enable --now. Failures are surfaced, not swallowed."""
    results = services.enable_now(unit)
    failed = next((r for r in results if not r.ok), None)
    out = {
        'ok': failed is None,
        'unit': unit,
        'enabled': services.enabled_state(unit),
        'active': services.active_state(unit),
        'output': '\n'.join(r.output for r in results if r.output),
    }
    if failed is not None:
        out['error'] = f"{' '.join(failed.args)} failed: {failed.output or failed.returncode}"
    audit_log('watchdog_start', unit=unit, ok=out['ok'])
    return out


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='StudioB supervisor (watchdog)')
    parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    parser.add_argument('--interval', type=float, default=SupervisorPolicy.interval,
                        help='Seconds between cycles')
    parser.add_argument('--base-url', default=DEFAULT_BASE_URL, help='Core HTTP base URL')
    args = parser.parse_args(argv)

    paths = ConfigPaths.from_env()
    add_rotating_file(watchdog_logger, os.path.join(paths.log_dir, 'watchdog.log'))
    configure_audit_log(paths.log_dir)

    supervisor = Supervisor.from_paths(paths, base_url=args.base_url,
                                       policy=SupervisorPolicy(interval=args.interval))
    if args.once:
        report = supervisor.run_cycle()
        print(report.to_dict(), flush=True)
        return 0 if report.healthy else 1

    try:
        supervisor.run_forever()
    except KeyboardInterrupt:
        watchdog_logger.info("Supervisor stopped")
    return 0


if __name__ == '__main__':
    sys.exit(main())
