"""
DSP Control Plane Type Definitions

Pure data containers shared by the health monitor, write gate, config store
and engine. No I/O happens here.

Classes:
    HealthState: Coarse operator-facing connectivity state
    OperatingMode: mock (simulated) or live (real device traffic)
    HealthSnapshot: Read-only view of the health record
    TimelineEntry: One health-state transition
    DeviceTarget: mode/host/port used for a single probe
    ValidationRecord: "a human confirmed the device under this config"
    ConfigMeta: Per-field provenance of the active configuration
    ConfigSnapshot: One resolved, authoritative configuration
"""

import hashlib
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple


class HealthState(str, Enum):
    """Connectivity belief about the controlled device."""
    UNKNOWN = "UNKNOWN"
    OK = "OK"
    DEGRADED = "DEGRADED"
    DISCONNECTED = "DISCONNECTED"


class OperatingMode(str, Enum):
    """Write mode. MOCK never generates device traffic."""
    MOCK = "mock"
    LIVE = "live"


# Consecutive failures at which the device is considered gone.
DISCONNECT_THRESHOLD = 3


def state_for_failures(failures: int, threshold: int = DISCONNECT_THRESHOLD) -> HealthState:
    """0 => OK, 1..threshold-1 => DEGRADED, >= threshold => DISCONNECTED."""
    if failures <= 0:
        return HealthState.OK
    if failures >= threshold:
        return HealthState.DISCONNECTED
    return HealthState.DEGRADED


@dataclass(frozen=True)
class HealthSnapshot:
    """Read-only shape returned to the UI and the write gate."""
    state: HealthState
    connected: bool
    consecutive_failures: int
    last_ok: Optional[str] = None
    last_error: Optional[str] = None
    last_test_at: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'state': self.state.value,
            'connected': self.connected,
            'consecutiveFailures': self.consecutive_failures,
            'lastOk': self.last_ok,
            'lastError': self.last_error,
            'lastTestAt': self.last_test_at,
        }


@dataclass(frozen=True)
class TimelineEntry:
    """Structured record of a health transition (one JSONL line)."""
    time: str
    state: HealthState
    failures: int
    last_error: str = ""

    def to_dict(self) -> Dict:
        d = {
            'time': self.time,
            'state': self.state.value,
            'failures': self.failures,
        }
        if self.last_error:
            d['last_error'] = self.last_error
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> 'TimelineEntry':
        return cls(
            time=str(data['time']),
            state=HealthState(data['state']),
            failures=int(data.get('failures', 0)),
            last_error=str(data.get('last_error', '') or ''),
        )


@dataclass(frozen=True)
class DeviceTarget:
    mode: OperatingMode
    host: str
    port: int

    @property
    def simulated(self) -> bool:
        return self.mode == OperatingMode.MOCK

    def signature(self) -> str:
        return config_signature(self.mode, self.host, self.port)


def config_signature(mode: OperatingMode, host: str, port: int) -> str:
    """Hash of the device-relevant subset of a configuration."""
    raw = f"{OperatingMode(mode).value}|{(host or '').strip()}|{int(port or 0)}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class ValidationRecord:
    validated_at: str
    config_signature: str


@dataclass
class ConfigMeta:
    """Where each device-relevant key came from. Never affects behavior."""
    loaded_at: str = ""
    document_path: str = ""
    legacy_path: str = ""
    mode_source: str = "default"
    dsp_host_source: str = "default"
    dsp_port_source: str = "default"
    env_used: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    One resolved configuration. Replaced wholesale on reload/apply.

    Only mode/dsp_host/dsp_port are device-relevant; everything else can
    change without invalidating a prior connectivity validation.
    """
    mode: OperatingMode = OperatingMode.MOCK
    dsp_host: str = ""
    dsp_port: int = 1710
    admin_pin: str = "CHANGE_ME"
    rc_allowlist: Tuple[int, ...] = ()
    http_listen: str = "127.0.0.1:8787"
    publish_hz: int = 20
    deadband: float = 0.01
    meta: ConfigMeta = field(default_factory=ConfigMeta, compare=False)

    @property
    def device_target(self) -> DeviceTarget:
        return DeviceTarget(self.mode, self.dsp_host, self.dsp_port)

    @property
    def signature(self) -> str:
        return config_signature(self.mode, self.dsp_host, self.dsp_port)

    def safe_dict(self) -> Dict:
        """Everything except the admin secret."""
        return {
            'mode': self.mode.value,
            'dsp': {'ip': self.dsp_host, 'port': self.dsp_port, 'mode': self.mode.value},
            'rc_allowlist': list(self.rc_allowlist),
            'ui': {'http_listen': self.http_listen},
            'meters': {'publish_hz': self.publish_hz, 'deadband': self.deadband},
        }
