"""
StudioB DSP control plane

Health monitor, write gate, layered configuration and the engine that owns
them. See engine.Engine for the process-wide aggregate.
"""

from .types import (
    ConfigMeta,
    ConfigSnapshot,
    DeviceTarget,
    HealthSnapshot,
    HealthState,
    OperatingMode,
    TimelineEntry,
    ValidationRecord,
    config_signature,
    state_for_failures,
)
from .gate import allowed
from .timeline import HealthTimeline
from .health import DeviceHealthMonitor, tcp_connect_probe
from .config_store import (
    ConfigError,
    ConfigPaths,
    ConfigStore,
    ConfigValidationError,
    EditableConfig,
    editable_from_wire,
    normalize_mode,
    validate_editable,
)
from .restart_flag import RestartCoordinator, RestartRequest
from .engine import (
    CONTROL_NAMES,
    ControlError,
    DeviceWriteError,
    Engine,
    WriteDenied,
    build_engine,
    resolve_control,
)
