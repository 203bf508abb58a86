"""
Service Manager - thin systemctl / nginx wrapper with bounded timeouts

Every shelled-out command carries a timeout. A command that times out or
cannot be executed is reported as a failed CommandResult; nothing here
raises for operational failures.
"""

import os
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from core.log_setup import get_logger

watchdog_logger = get_logger('studiob.watchdog', 'WATCHDOG')

DEFAULT_COMMAND_TIMEOUT = 10.0
ENGINE_UNIT = 'stub-engine'
UI_WATCH_UNIT = 'stub-ui-watch'
PROXY_UNIT = 'nginx'
WATCHDOG_UNIT = 'stub-ui-watchdog.service'
MONITORED_UNITS = (PROXY_UNIT, UI_WATCH_UNIT, ENGINE_UNIT)


@dataclass(frozen=True)
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


Runner = Callable[[Sequence[str], float], CommandResult]


def run_command(args: Sequence[str], timeout: float = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
    """Run a command, capturing output. Timeouts and exec errors become returncode -1."""
    try:
        proc = subprocess.run(list(args), capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return CommandResult(args, -1, "", f"timed out after {timeout:.0f}s")
    except OSError as e:
        return CommandResult(args, -1, "", str(e))
    return CommandResult(args, proc.returncode, proc.stdout or "", proc.stderr or "")


class ServiceManager:
    def __init__(self, runner: Optional[Runner] = None,
                 timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 systemctl: str = 'systemctl', nginx: str = 'nginx'):
        self._run = runner or run_command
        self.timeout = timeout
        self.systemctl = systemctl
        self.nginx = nginx

    def _systemctl(self, *args: str) -> CommandResult:
        return self._run([self.systemctl, *args], self.timeout)

    # Status ------------------------------------------------------------

    def is_active(self, unit: str) -> bool:
        return self._systemctl('is-active', '--quiet', unit).ok

    def active_state(self, unit: str) -> str:
        """`systemctl is-active` output verbatim (e.g. "active", "failed")."""
        result = self._systemctl('is-active', unit)
        return result.stdout.strip() or result.stderr.strip() or 'unknown'

    def enabled_state(self, unit: str) -> str:
        """`systemctl is-enabled` output verbatim (e.g. "enabled", "disabled")."""
        result = self._systemctl('is-enabled', unit)
        return result.stdout.strip() or result.stderr.strip() or 'unknown'

    def unit_status(self, unit: str) -> dict:
        return {'unit': unit, 'enabled': self.enabled_state(unit), 'active': self.active_state(unit)}

    # Actions -----------------------------------------------------------

    def restart(self, unit: str) -> bool:
        watchdog_logger.info(f"Attempting restart: {unit}")
        result = self._systemctl('restart', unit)
        if result.ok:
            watchdog_logger.info(f"Restarted: {unit}")
        else:
            watchdog_logger.error(f"Failed to restart {unit}: {result.output}")
        return result.ok

    def reload(self, unit: str) -> bool:
        result = self._systemctl('reload', unit)
        if not result.ok:
            watchdog_logger.warning(f"Reload of {unit} failed: {result.output}")
        return result.ok

    def enable_now(self, unit: str) -> List[CommandResult]:
        """daemon-reload then enable --now. Stops at the first failure."""
        results = [self._systemctl('daemon-reload')]
        if results[0].ok:
            results.append(self._systemctl('enable', '--now', unit))
        return results

    # Proxy -------------------------------------------------------------

    def proxy_config_valid(self) -> CommandResult:
        return self._run([self.nginx, '-t'], self.timeout)

    def repair_proxy(self, release_dir: Optional[str]) -> bool:
        """Narrow self-repair: <release>/scripts/install_full.sh --configure-nginx-only."""
        if not release_dir:
            return False
        script = os.path.join(release_dir, 'scripts', 'install_full.sh')
        if not os.access(script, os.X_OK):
            watchdog_logger.error(f"Proxy repair unavailable: {script} not executable")
            return False
        result = self._run(['bash', script, '--configure-nginx-only'], self.timeout)
        if not result.ok:
            watchdog_logger.error(f"Proxy reconfigure failed: {result.output}")
        return result.ok
