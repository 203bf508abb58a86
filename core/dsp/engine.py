"""
DSP Engine - owned aggregate of the live control plane

Holds the active ConfigSnapshot, the live control-value cache, the
validation record and the health monitor. One instance per process; tests
build isolated instances.

Locks are per concern (config, controls, validation, callbacks) and are
never held across device or filesystem I/O.
"""

import json
import math
import os
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from core.log_setup import audit_log, get_logger
from . import gate
from .config_store import ConfigError, ConfigPaths, ConfigStore
from .health import DEFAULT_PROBE_TIMEOUT, DeviceHealthMonitor, tcp_connect_probe
from .restart_flag import RestartCoordinator
from .timeline import HealthTimeline
from .types import (
    ConfigSnapshot,
    DeviceTarget,
    HealthSnapshot,
    HealthState,
    OperatingMode,
    TimelineEntry,
    ValidationRecord,
)

engine_logger = get_logger('studiob.engine', 'ENGINE')

# Stable control names used by the UI. Numeric ids are device-level wiring.
CONTROL_NAMES = {
    'STUB_SPK_LEVEL': 160,
    'STUB_SPK_MUTE': 161,
    'STUB_SPK_AUTOMUTE': 560,
    'STUB_MIC_HOST': 121,
    'STUB_MIC_GUEST_1': 122,
    'STUB_MIC_GUEST_2': 123,
    'STUB_MIC_GUEST_3': 124,
    'STUB_PGM_L': 411,
    'STUB_PGM_R': 412,
    'STUB_SPK_L': 460,
    'STUB_SPK_R': 461,
    'STUB_RSR_L': 462,
    'STUB_RSR_R': 463,
}
METER_IDS = (411, 412, 460, 461, 462, 463)
SPK_LEVEL = CONTROL_NAMES['STUB_SPK_LEVEL']
SPK_MUTE = CONTROL_NAMES['STUB_SPK_MUTE']
SPK_AUTOMUTE = CONTROL_NAMES['STUB_SPK_AUTOMUTE']

DEVICE_WRITE_TIMEOUT = 1.5
MOCK_METER_INTERVAL = 0.05

# device_writer(control_id, value, timeout); raises on failure
DeviceWriter = Callable[[int, float, float], None]
EventCallback = Callable[[str, Dict], None]


class ControlError(Exception):
    """Unknown, malformed or non-allowlisted control reference/value."""
    pass


class WriteDenied(ControlError):
    """The write gate refused the mutation. str(e) is the operator-facing reason."""
    pass


class DeviceWriteError(Exception):
    """The device collaborator failed to apply a value."""
    pass


def resolve_control(ref: Union[str, int]) -> int:
    """Control name ("STUB_SPK_MUTE") or decimal id ("161") -> id."""
    if isinstance(ref, bool):
        raise ControlError(f"invalid control id {ref!r}")
    if isinstance(ref, int):
        return ref
    text = str(ref or '').strip()
    if text in CONTROL_NAMES:
        return CONTROL_NAMES[text]
    try:
        return int(text)
    except ValueError:
        raise ControlError(f"invalid control id {ref!r}")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ApplyResult:
    device_changed: bool
    mode_changed: bool
    restart_required: bool

    def to_dict(self) -> Dict:
        return {
            'deviceChanged': self.device_changed,
            'modeChanged': self.mode_changed,
            'restartRequired': self.restart_required,
        }


class Engine:
    def __init__(self,
                 config: ConfigSnapshot,
                 version: str = "dev",
                 monitor: Optional[DeviceHealthMonitor] = None,
                 restart: Optional[RestartCoordinator] = None,
                 intents_path: Optional[str] = None,
                 device_writer: Optional[DeviceWriter] = None):
        if not config.rc_allowlist:
            raise ConfigError("rc_allowlist is empty")
        self.version = version
        self.restart = restart
        self.intents_path = intents_path
        self._device_writer = device_writer

        self._config_lock = threading.Lock()
        self._config = config

        self._validation_lock = threading.Lock()
        self._validation: Optional[ValidationRecord] = None
        self._config_changed = False

        self._rc_lock = threading.Lock()
        self._rc: Dict[int, float] = {}
        self._last_sent: Dict[int, float] = {}
        self._init_controls(config.rc_allowlist)

        self._callbacks_lock = threading.Lock()
        self._event_callbacks: List[EventCallback] = []

        self.monitor = monitor if monitor is not None else DeviceHealthMonitor(
            target_provider=self.device_target)
        self.monitor.register_transition_callback(self._on_health_transition)

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _init_controls(self, allowlist):
        with self._rc_lock:
            for cid in allowlist:
                if cid not in self._rc:
                    self._rc[cid] = 0.75 if cid == SPK_LEVEL else 0.0
                    self._last_sent[cid] = math.nan

    # ─────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────

    def register_event_callback(self, callback: EventCallback):
        """callback(event_type, payload) for delta / health_update / config_applied."""
        with self._callbacks_lock:
            self._event_callbacks.append(callback)

    def _emit(self, event_type: str, payload: Dict):
        with self._callbacks_lock:
            callbacks = list(self._event_callbacks)
        for callback in callbacks:
            try:
                callback(event_type, payload)
            except Exception as e:
                engine_logger.error(f"Event callback error ({event_type}): {e}")

    def _on_health_transition(self, entry: TimelineEntry):
        if entry.state == HealthState.DISCONNECTED:
            print(f"🚨 DSP DISCONNECTED: {entry.last_error}", flush=True)

    # ─────────────────────────────────────────────────────────
    # Configuration
    # ─────────────────────────────────────────────────────────

    @property
    def config(self) -> ConfigSnapshot:
        with self._config_lock:
            return self._config

    def device_target(self) -> DeviceTarget:
        with self._config_lock:
            return self._config.device_target

    def apply_config(self, new: ConfigSnapshot, reason: str = "config applied") -> ApplyResult:
        """
        Swap in a freshly loaded snapshot.

        Validation invalidation and the health reset complete before this
        returns, so a caller that sees success can trust "validation required".
        """
        if not new.rc_allowlist:
            raise ConfigError("rc_allowlist is empty")

        with self._config_lock:
            old = self._config
            self._config = new
        device_changed = old.signature != new.signature
        mode_changed = old.mode != new.mode

        if device_changed:
            with self._validation_lock:
                had_record = self._validation is not None
                self._validation = None
                self._config_changed = had_record or self._config_changed
            self.monitor.reset("configuration changed")
            engine_logger.info(
                f"DSP config changed ({old.mode.value} {old.dsp_host or '-'}:{old.dsp_port} -> "
                f"{new.mode.value} {new.dsp_host or '-'}:{new.dsp_port}); validation cleared")

        restart_required = False
        if mode_changed and self.restart is not None:
            self.restart.request(f"dsp mode changed {old.mode.value} -> {new.mode.value}")
            restart_required = True

        self._init_controls(new.rc_allowlist)

        result = ApplyResult(device_changed, mode_changed, restart_required)
        audit_log('config_applied', reason=reason, mode=new.mode.value, **result.to_dict())
        self._emit('config_applied', {'config': new.safe_dict(), **result.to_dict()})
        return result

    def reload(self, store: ConfigStore, reason: str = "reload") -> ApplyResult:
        return self.apply_config(store.load(), reason=reason)

    # ─────────────────────────────────────────────────────────
    # Health / validation
    # ─────────────────────────────────────────────────────────

    def health(self) -> HealthSnapshot:
        return self.monitor.snapshot()

    def test_device(self, timeout: float = DEFAULT_PROBE_TIMEOUT) -> HealthSnapshot:
        """Operator-triggered single-shot connectivity test."""
        target = self.device_target()
        snap = self.monitor.test(timeout=timeout, target=target)

        if not target.simulated and snap.state == HealthState.OK:
            with self._config_lock:
                current = self._config.signature
            if current == target.signature():
                with self._validation_lock:
                    self._validation = ValidationRecord(
                        validated_at=snap.last_test_at or _utc_now_iso(),
                        config_signature=current)
                    self._config_changed = False
            else:
                # Config moved while the probe was in flight; the result is stale.
                snap = self.monitor.reset("configuration changed during test")

        audit_log('dsp_test', mode=target.mode.value, host=target.host, port=target.port,
                  state=snap.state.value, error=snap.last_error)
        self._emit('health_update', snap.to_dict())
        return snap

    def gate_check(self) -> Tuple[bool, str]:
        with self._config_lock:
            mode = self._config.mode
        return gate.allowed(mode, self.monitor.state)

    def validation(self) -> Optional[ValidationRecord]:
        with self._validation_lock:
            return self._validation

    def mode_status(self) -> Dict:
        with self._config_lock:
            mode = self._config.mode
            signature = self._config.signature
        with self._validation_lock:
            record = self._validation
            config_changed = self._config_changed
        validated = record is not None and record.config_signature == signature
        if record is not None and not validated:
            config_changed = True
        return {
            'desiredMode': mode.value,
            'validated': validated,
            'validatedAt': record.validated_at if validated else None,
            'configChanged': config_changed,
            'restartRequired': self.restart.pending() if self.restart is not None else False,
            'health': self.monitor.snapshot().to_dict(),
        }

    # ─────────────────────────────────────────────────────────
    # Control writes
    # ─────────────────────────────────────────────────────────

    def set_control(self, ref: Union[str, int], value, source: str = "api") -> Dict:
        """
        Gated write of one control value.

        Raises ControlError / WriteDenied / DeviceWriteError.
        """
        cid = resolve_control(ref)
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ControlError(f"invalid value {value!r}")
        if math.isnan(value) or math.isinf(value):
            raise ControlError(f"invalid value {value!r}")

        with self._config_lock:
            mode = self._config.mode
            allowlist = self._config.rc_allowlist
        if cid not in allowlist:
            raise ControlError(f"rc {cid} not allowlisted")

        ok, reason = gate.allowed(mode, self.monitor.state)
        if not ok:
            engine_logger.warning(f"Write denied rc={cid} source={source}: {reason}")
            audit_log('write_denied', rc=cid, value=value, source=source, reason=reason)
            raise WriteDenied(reason)

        if mode == OperatingMode.LIVE and self._device_writer is not None:
            try:
                self._device_writer(cid, value, DEVICE_WRITE_TIMEOUT)
            except DeviceWriteError:
                raise
            except (OSError, ValueError) as e:
                raise DeviceWriteError(f"device write rc={cid} failed: {e}")

        with self._rc_lock:
            self._rc[cid] = value
        return {'rc': cid, 'value': value, 'mode': mode.value}

    def apply_speaker_mute_intent(self, mute: bool, source: str = "ui") -> Dict:
        with self._config_lock:
            mode = self._config.mode
        self._log_intent({
            'ts': _utc_now_iso(),
            'intent': 'speaker_mute',
            'mute': bool(mute),
            'source': source,
            'mode': mode.value,
        })
        return self.set_control(SPK_MUTE, 1.0 if mute else 0.0, source=source)

    def _log_intent(self, record: Dict):
        if not self.intents_path:
            return
        try:
            os.makedirs(os.path.dirname(self.intents_path), exist_ok=True)
            with open(self.intents_path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(record, separators=(',', ':')) + '\n')
        except OSError as e:
            engine_logger.warning(f"Intent log write failed ({self.intents_path}): {e}")

    # ─────────────────────────────────────────────────────────
    # Snapshots
    # ─────────────────────────────────────────────────────────

    def state_snapshot(self) -> Dict:
        with self._rc_lock:
            rc = {str(k): v for k, v in sorted(self._rc.items())}
        return {'version': self.version, 'rc': rc, 'time': _utc_now_iso()}

    def studio_status(self) -> Dict:
        with self._config_lock:
            mode = self._config.mode
        with self._rc_lock:
            rc = dict(self._rc)
        get = lambda name: rc.get(CONTROL_NAMES[name], 0.0)
        return {
            'ok': True,
            'ts': _utc_now_iso(),
            'version': self.version,
            'mode': mode.value,
            'speaker': {
                'level': get('STUB_SPK_LEVEL'),
                'mute': get('STUB_SPK_MUTE') >= 0.5,
                'automute': get('STUB_SPK_AUTOMUTE') >= 0.5,
            },
            'meters': {
                'spkL': get('STUB_SPK_L'),
                'spkR': get('STUB_SPK_R'),
                'pgmL': get('STUB_PGM_L'),
                'pgmR': get('STUB_PGM_R'),
                'rsrL': get('STUB_RSR_L'),
                'rsrR': get('STUB_RSR_R'),
            },
        }

    # ─────────────────────────────────────────────────────────
    # Delta publishing / mock meters
    # ─────────────────────────────────────────────────────────

    def collect_deltas(self) -> Dict[int, float]:
        """Controls that moved by at least the deadband since the last publish."""
        with self._config_lock:
            deadband = self._config.deadband
        delta = {}
        with self._rc_lock:
            for cid, val in self._rc.items():
                last = self._last_sent.get(cid, math.nan)
                if math.isnan(last) or abs(val - last) >= deadband:
                    delta[cid] = val
                    self._last_sent[cid] = val
        return delta

    def step_mock_meters(self, rng: Optional[random.Random] = None):
        """One random-walk step of the meter values (mock mode only)."""
        rng = rng or random
        with self._rc_lock:
            for cid in METER_IDS:
                if cid not in self._rc:
                    continue
                nxt = self._rc[cid] + (rng.random() - 0.5) * 0.15
                self._rc[cid] = min(1.0, max(0.0, nxt))
            if SPK_AUTOMUTE in self._rc and rng.randrange(200) == 0:
                self._rc[SPK_AUTOMUTE] = 0.0 if self._rc[SPK_AUTOMUTE] >= 0.5 else 1.0

    def _publish_loop(self):
        while not self._stop.is_set():
            hz = max(1, self.config.publish_hz)
            delta = self.collect_deltas()
            if delta:
                self._emit('delta', {'rc': {str(k): v for k, v in delta.items()},
                                     't': int(time.time() * 1000)})
            self._stop.wait(1.0 / hz)

    def _mock_loop(self):
        while not self._stop.is_set():
            if self.config.mode == OperatingMode.MOCK:
                self.step_mock_meters()
            self._stop.wait(MOCK_METER_INTERVAL)

    def start(self):
        """Start the publisher and mock meter threads."""
        if self._threads:
            return
        self._stop.clear()
        for target, name in ((self._publish_loop, 'dsp-publish'), (self._mock_loop, 'dsp-mock-meters')):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)
        engine_logger.info(f"Engine started (mode={self.config.mode.value}, "
                           f"publish={self.config.publish_hz}Hz)")

    def stop(self):
        self._stop.set()
        for t in self._threads:
            t.join(timeout=2.0)
        self._threads = []


def build_engine(store: ConfigStore, version: str = "dev",
                 device_writer: Optional[DeviceWriter] = None,
                 probe: Callable[[str, int, float], None] = tcp_connect_probe) -> Engine:
    """Wire an Engine to the filesystem locations under store.paths."""
    paths: ConfigPaths = store.paths
    monitor = DeviceHealthMonitor(timeline=HealthTimeline(paths.timeline), probe=probe)
    return Engine(
        store.load(),
        version=version,
        monitor=monitor,
        restart=RestartCoordinator(paths.restart_flag),
        intents_path=paths.intents,
        device_writer=device_writer,
    )
