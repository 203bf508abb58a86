"""
DSP Config Store - one authoritative configuration from layered sources

Precedence (highest wins):
    1. Environment overrides (STUDIOB_UI_MODE, STUDIOB_DSP_IP, ...)
    2. Operator-edited document   <base>/config/config.v1.json
    3. Legacy document            <base>/config.json (migrated forward once)
    4. Compiled defaults

The system must never refuse to start because of a bad mode string: an
unrecognized mode is coerced to mock with a recorded warning. The only
load-time refusal is an empty control allowlist.

Edits (Engineering page) go through validate -> timestamped backup ->
temp write -> atomic rename. A failed validation never touches disk.
"""

import ipaddress
import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from core.fsutil import atomic_write_json, read_json
from core.log_setup import get_logger
from .types import ConfigMeta, ConfigSnapshot, OperatingMode

config_logger = get_logger('studiob.config', 'CONFIG')

# Stable control ids (see engine.CONTROL_NAMES)
DEFAULT_RC_ALLOWLIST = (160, 161, 560, 121, 122, 123, 124, 411, 412, 460, 461, 462, 463)
DEFAULT_DSP_PORT = 1710
DEFAULT_ADMIN_PIN = "CHANGE_ME"
DEFAULT_HTTP_LISTEN = "127.0.0.1:8787"
DEFAULT_PUBLISH_HZ = 20
DEFAULT_DEADBAND = 0.01

ENV_MODE = 'STUDIOB_UI_MODE'
ENV_DSP_IP = 'STUDIOB_DSP_IP'
ENV_DSP_PORT = 'STUDIOB_DSP_PORT'
ENV_ADMIN_PIN = 'STUDIOB_ADMIN_PIN'
ENV_HTTP_LISTEN = 'STUDIOB_HTTP_LISTEN'
ENV_HOME = 'STUDIOB_HOME'

_MODE_ALIASES = {
    'mock': OperatingMode.MOCK,
    'simulate': OperatingMode.MOCK,
    'simulated': OperatingMode.MOCK,
    'live': OperatingMode.LIVE,
}
_DECORATION = re.compile(r'[\s(\[]')


class ConfigError(Exception):
    """Configuration cannot be used at all (startup refusal)."""
    pass


class ConfigValidationError(ConfigError):
    """An operator edit was rejected. str(e) is the operator-facing reason."""
    pass


# ============================================================
# Paths
# ============================================================

@dataclass(frozen=True)
class ConfigPaths:
    """All persisted artifacts live under one base directory."""
    base_dir: str

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ConfigPaths':
        environ = os.environ if environ is None else environ
        base = (environ.get(ENV_HOME) or '').strip()
        if not base:
            base = os.path.join(os.path.expanduser("~"), ".StudioB-UI")
        return cls(base_dir=os.path.abspath(base))

    @property
    def document(self) -> str:
        return os.path.join(self.base_dir, 'config', 'config.v1.json')

    @property
    def legacy_document(self) -> str:
        return os.path.join(self.base_dir, 'config.json')

    @property
    def state_dir(self) -> str:
        return os.path.join(self.base_dir, 'state')

    @property
    def restart_flag(self) -> str:
        return os.path.join(self.state_dir, 'restart_required.json')

    @property
    def timeline(self) -> str:
        return os.path.join(self.state_dir, 'dsp_health_timeline.jsonl')

    @property
    def intents(self) -> str:
        return os.path.join(self.state_dir, 'intents.jsonl')

    @property
    def runtime_dir(self) -> str:
        return os.path.join(self.base_dir, 'runtime')

    @property
    def last_good(self) -> str:
        return os.path.join(self.runtime_dir, 'last_good.json')

    @property
    def log_dir(self) -> str:
        return os.path.join(self.base_dir, 'logs')


# ============================================================
# Mode normalization
# ============================================================

def normalize_mode(value: Any) -> Optional[OperatingMode]:
    """
    Case-insensitive, decoration-tolerant mode parsing.

    "LIVE" -> live, "mock (default)" -> mock, "simulate" -> mock.
    Returns None for empty or unrecognized input.
    """
    if value is None:
        return None
    text = str(value).strip().strip('"\'').lower()
    if not text:
        return None
    token = _DECORATION.split(text, maxsplit=1)[0]
    return _MODE_ALIASES.get(token)


# ============================================================
# Editable subset (mode + DSP connection)
# ============================================================

@dataclass(frozen=True)
class EditableConfig:
    mode: str = ""
    dsp_ip: str = ""
    dsp_port: int = 0

    def normalized(self) -> 'EditableConfig':
        mode = normalize_mode(self.mode)
        return EditableConfig(
            mode=mode.value if mode else "",
            dsp_ip=(self.dsp_ip or '').strip(),
            dsp_port=int(self.dsp_port or 0),
        )

    def to_dict(self) -> Dict:
        return {'mode': self.mode, 'dsp': {'ip': self.dsp_ip, 'port': self.dsp_port}}


@dataclass(frozen=True)
class WireEdit:
    """An edit as received from a client, plus which field supplied the mode."""
    config: EditableConfig
    mode_input_top: str
    mode_input_dsp: str
    mode_source: str


def editable_from_wire(payload: Mapping[str, Any]) -> WireEdit:
    """
    Accept both historical client shapes:
        {"mode": "live", "dsp": {"ip": ..., "port": ...}}
        {"dsp": {"mode": "live", "ip": ..., "port": ...}}

    Some clients briefly sent BOTH with a stale top-level label such as
    "mock (default)"; the nested dsp.mode is always preferred when present.
    """
    if not isinstance(payload, Mapping):
        raise ConfigValidationError("config body must be a JSON object")
    dsp = payload.get('dsp') or {}
    if not isinstance(dsp, Mapping):
        raise ConfigValidationError("dsp must be an object")

    mode_top = str(payload.get('mode') or '').strip()
    mode_dsp = str(dsp.get('mode') or '').strip()
    mode_source = 'mode'
    chosen = mode_top
    if mode_dsp:
        chosen = mode_dsp
        mode_source = 'dsp.mode'

    port = dsp.get('port', 0)
    if port is None or port == '':
        port = 0
    if isinstance(port, bool):
        raise ConfigValidationError(f"dsp.port must be 1-65535 (got {port!r})")
    if isinstance(port, str):
        try:
            port = int(port.strip())
        except ValueError:
            raise ConfigValidationError(f"dsp.port must be 1-65535 (got {port!r})")
    if isinstance(port, float):
        if not port.is_integer():
            raise ConfigValidationError(f"dsp.port must be 1-65535 (got {port!r})")
        port = int(port)
    if not isinstance(port, int):
        raise ConfigValidationError(f"dsp.port must be 1-65535 (got {port!r})")

    cfg = EditableConfig(mode=chosen, dsp_ip=str(dsp.get('ip') or ''), dsp_port=port)
    return WireEdit(config=cfg, mode_input_top=mode_top, mode_input_dsp=mode_dsp,
                    mode_source=mode_source)


def validate_editable(cfg: EditableConfig):
    """Raise ConfigValidationError when an operator edit is unsafe."""
    if (cfg.mode or '').strip() and normalize_mode(cfg.mode) is None:
        raise ConfigValidationError(f"mode must be 'mock' or 'live' (got {cfg.mode!r})")
    host = (cfg.dsp_ip or '').strip()
    if host:
        try:
            ipaddress.ip_address(host)
        except ValueError:
            raise ConfigValidationError(f"dsp.ip must be a valid IP address (got {cfg.dsp_ip!r})")
    if isinstance(cfg.dsp_port, bool) or not isinstance(cfg.dsp_port, int):
        raise ConfigValidationError(f"dsp.port must be 1-65535 (got {cfg.dsp_port!r})")
    if cfg.dsp_port != 0 and not (1 <= cfg.dsp_port <= 65535):
        raise ConfigValidationError(f"dsp.port must be 1-65535 (got {cfg.dsp_port})")


# ============================================================
# Store
# ============================================================

def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConfigStore:
    """
    Loads ConfigSnapshots and persists operator edits.

    Stateless apart from paths; every load() re-reads disk and env.
    """

    def __init__(self, paths: ConfigPaths, environ: Optional[Mapping[str, str]] = None):
        self.paths = paths
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    # ─────────────────────────────────────────────────────────
    # Load
    # ─────────────────────────────────────────────────────────

    def load(self) -> ConfigSnapshot:
        meta = ConfigMeta(loaded_at=_utc_stamp(), document_path=self.paths.document)
        values: Dict[str, Any] = {
            'dsp_host': "",
            'dsp_port': DEFAULT_DSP_PORT,
            'admin_pin': DEFAULT_ADMIN_PIN,
            'rc_allowlist': DEFAULT_RC_ALLOWLIST,
            'http_listen': DEFAULT_HTTP_LISTEN,
            'publish_hz': DEFAULT_PUBLISH_HZ,
            'deadband': DEFAULT_DEADBAND,
        }
        raw_mode: Any = None
        migrated = False

        if os.path.exists(self.paths.legacy_document):
            meta.legacy_path = self.paths.legacy_document
            if os.path.exists(self.paths.document):
                meta.warnings.append(
                    f"{self.paths.legacy_document} exists but {self.paths.document} is present; "
                    f"ignoring legacy document")
            else:
                legacy = self._read_legacy(meta)
                if legacy is not None:
                    raw_mode = self._apply_legacy(legacy, values, meta)
                    migrated = self._migrate_legacy(raw_mode, values, meta)

        # A document written by this load's migration holds the same values.
        document = None if migrated else self._read_document(meta)
        if document is not None:
            doc_mode = self._apply_document(document, values, meta)
            if doc_mode is not None:
                raw_mode = doc_mode

        env_mode = self._apply_env(values, meta)
        if env_mode is not None:
            raw_mode = env_mode

        mode = normalize_mode(raw_mode)
        if mode is None:
            if raw_mode is not None and str(raw_mode).strip():
                meta.warnings.append(f"invalid mode {raw_mode!r}; forcing mock")
            mode = OperatingMode.MOCK
            meta.mode_source = 'default'

        allowlist = tuple(values['rc_allowlist'])
        if not allowlist:
            raise ConfigError("rc_allowlist is empty")

        for warning in meta.warnings:
            config_logger.warning(warning)

        return ConfigSnapshot(
            mode=mode,
            dsp_host=values['dsp_host'],
            dsp_port=values['dsp_port'],
            admin_pin=values['admin_pin'],
            rc_allowlist=allowlist,
            http_listen=values['http_listen'],
            publish_hz=values['publish_hz'],
            deadband=values['deadband'],
            meta=meta,
        )

    def _read_document(self, meta: ConfigMeta) -> Optional[Dict]:
        try:
            data = read_json(self.paths.document)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            meta.warnings.append(f"config document parse error ({self.paths.document}): {e}")
            return None
        if not isinstance(data, dict):
            meta.warnings.append(f"config document {self.paths.document} is not an object")
            return None
        return data

    def _read_legacy(self, meta: ConfigMeta) -> Optional[Dict]:
        try:
            data = read_json(self.paths.legacy_document)
        except (OSError, ValueError) as e:
            meta.warnings.append(f"legacy config parse error ({self.paths.legacy_document}): {e}")
            return None
        if not isinstance(data, dict):
            meta.warnings.append(f"legacy config {self.paths.legacy_document} is not an object")
            return None
        return data

    def _apply_legacy(self, legacy: Dict, values: Dict, meta: ConfigMeta) -> Any:
        raw_mode = None
        dsp = legacy.get('dsp') if isinstance(legacy.get('dsp'), dict) else {}
        if str(legacy.get('mode') or '').strip():
            raw_mode = legacy['mode']
            meta.mode_source = 'legacy'
        if str(dsp.get('ip') or '').strip():
            values['dsp_host'] = str(dsp['ip']).strip()
            meta.dsp_host_source = 'legacy'
        port = self._coerce_port(dsp.get('port'), 'legacy dsp.port', meta)
        if port:
            values['dsp_port'] = port
            meta.dsp_port_source = 'legacy'
        return raw_mode

    def _migrate_legacy(self, raw_mode: Any, values: Dict, meta: ConfigMeta) -> bool:
        """Write what the legacy layer resolved to the versioned path once, then retire the legacy file."""
        mode = normalize_mode(raw_mode)
        document = {
            'mode': mode.value if mode else "",
            'dsp': {
                'mode': mode.value if mode else "",
                'ip': values['dsp_host'] if meta.dsp_host_source == 'legacy' else "",
                'port': values['dsp_port'] if meta.dsp_port_source == 'legacy' else 0,
            },
        }
        try:
            atomic_write_json(self.paths.document, document)
            os.replace(self.paths.legacy_document, self.paths.legacy_document + '.migrated')
        except OSError as e:
            meta.warnings.append(f"legacy config migration failed: {e}")
            return False
        config_logger.info(f"Migrated {self.paths.legacy_document} -> {self.paths.document}")
        print(f"✓ Legacy config migrated to {self.paths.document}", flush=True)
        return True

    def _apply_document(self, doc: Dict, values: Dict, meta: ConfigMeta) -> Any:
        raw_mode = None
        dsp = doc.get('dsp') if isinstance(doc.get('dsp'), dict) else {}

        if str(dsp.get('mode') or '').strip():
            raw_mode = dsp['mode']
            meta.mode_source = 'document'
        elif str(doc.get('mode') or '').strip():
            # Early releases briefly wrote the mode to the top-level field.
            raw_mode = doc['mode']
            meta.mode_source = 'document-legacy-mode'
            meta.warnings.append("config uses deprecated top-level 'mode'; treating it as dsp.mode")

        if str(dsp.get('ip') or '').strip():
            values['dsp_host'] = str(dsp['ip']).strip()
            meta.dsp_host_source = 'document'
        port = self._coerce_port(dsp.get('port'), 'dsp.port', meta)
        if port:
            values['dsp_port'] = port
            meta.dsp_port_source = 'document'

        admin = doc.get('admin') if isinstance(doc.get('admin'), dict) else {}
        if str(admin.get('pin') or '').strip():
            values['admin_pin'] = str(admin['pin']).strip()

        ui = doc.get('ui') if isinstance(doc.get('ui'), dict) else {}
        if str(ui.get('http_listen') or '').strip():
            values['http_listen'] = str(ui['http_listen']).strip()

        meters = doc.get('meters') if isinstance(doc.get('meters'), dict) else {}
        try:
            if meters.get('publish_hz') and int(meters['publish_hz']) > 0:
                values['publish_hz'] = int(meters['publish_hz'])
            if meters.get('deadband') and float(meters['deadband']) > 0:
                values['deadband'] = float(meters['deadband'])
        except (TypeError, ValueError) as e:
            meta.warnings.append(f"invalid meters settings: {e}")

        if 'rc_allowlist' in doc:
            allowlist = doc['rc_allowlist']
            if isinstance(allowlist, list):
                try:
                    values['rc_allowlist'] = tuple(int(v) for v in allowlist)
                except (TypeError, ValueError):
                    meta.warnings.append("rc_allowlist contains non-integer ids; using defaults")
            else:
                meta.warnings.append("rc_allowlist is not a list; using defaults")
        return raw_mode

    def _apply_env(self, values: Dict, meta: ConfigMeta) -> Any:
        env = self.environ
        raw_mode = None
        v = (env.get(ENV_MODE) or '').strip()
        if v:
            raw_mode = v
            meta.mode_source = 'env'
            meta.env_used[ENV_MODE] = v
        v = (env.get(ENV_DSP_IP) or '').strip()
        if v:
            values['dsp_host'] = v
            meta.dsp_host_source = 'env'
            meta.env_used[ENV_DSP_IP] = v
        v = (env.get(ENV_DSP_PORT) or '').strip()
        if v:
            try:
                values['dsp_port'] = int(v)
                meta.dsp_port_source = 'env'
                meta.env_used[ENV_DSP_PORT] = v
            except ValueError:
                meta.warnings.append(f"invalid {ENV_DSP_PORT} {v!r}; ignoring")
        v = (env.get(ENV_ADMIN_PIN) or '').strip()
        if v:
            values['admin_pin'] = v
            meta.env_used[ENV_ADMIN_PIN] = '***'
        v = (env.get(ENV_HTTP_LISTEN) or '').strip()
        if v:
            values['http_listen'] = v
            meta.env_used[ENV_HTTP_LISTEN] = v
        return raw_mode

    @staticmethod
    def _coerce_port(value: Any, label: str, meta: ConfigMeta) -> int:
        if value in (None, '', 0):
            return 0
        if isinstance(value, bool):
            meta.warnings.append(f"invalid {label} {value!r}; ignoring")
            return 0
        try:
            port = int(value)
        except (TypeError, ValueError):
            meta.warnings.append(f"invalid {label} {value!r}; ignoring")
            return 0
        if not 1 <= port <= 65535:
            meta.warnings.append(f"invalid {label} {port}; ignoring")
            return 0
        return port

    # ─────────────────────────────────────────────────────────
    # Operator edits
    # ─────────────────────────────────────────────────────────

    def read_editable(self) -> Dict[str, Any]:
        """
        Read the operator document. A missing file is not an error.

        Returns {exists, raw, config, path, error}.
        """
        result = {'exists': False, 'raw': "", 'config': EditableConfig(),
                   'path': self.paths.document, 'error': None}
        try:
            with open(self.paths.document, 'r', encoding='utf-8') as f:
                raw = f.read()
        except FileNotFoundError:
            return result
        except OSError as e:
            result['error'] = str(e)
            return result

        result['exists'] = True
        result['raw'] = raw
        try:
            doc = json.loads(raw)
            if not isinstance(doc, dict):
                raise ValueError("document is not an object")
        except ValueError as e:
            result['error'] = f"invalid json: {e}"
            return result

        dsp = doc.get('dsp') if isinstance(doc.get('dsp'), dict) else {}
        mode = str(dsp.get('mode') or doc.get('mode') or '')
        port = dsp.get('port', 0)
        if isinstance(port, bool) or not isinstance(port, int):
            port = 0
        result['config'] = EditableConfig(mode=mode, dsp_ip=str(dsp.get('ip') or ''), dsp_port=port)
        return result

    def write_editable(self, cfg: EditableConfig) -> Tuple[str, EditableConfig]:
        """
        Validate, back up the previous document, write atomically.

        Keys outside the editable subset (admin, meters, allowlist, ...) are
        preserved. Returns (path, normalized config).
        """
        validate_editable(cfg)
        cfg = cfg.normalized()
        path = self.paths.document

        document: Dict[str, Any] = {}
        if os.path.exists(path):
            self._backup(path)
            try:
                existing = read_json(path)
                if isinstance(existing, dict):
                    document = existing
            except ValueError:
                config_logger.warning(f"Existing {path} is not valid JSON; rewriting from scratch (backup kept)")

        dsp = document.get('dsp') if isinstance(document.get('dsp'), dict) else {}
        dsp = dict(dsp)
        dsp['mode'] = cfg.mode
        dsp['ip'] = cfg.dsp_ip
        dsp['port'] = cfg.dsp_port
        document['dsp'] = dsp
        # Keep the deprecated top-level field in sync so older tooling agrees.
        document['mode'] = cfg.mode

        atomic_write_json(path, document)
        config_logger.info(f"Config written: {path} (mode={cfg.mode or 'unset'}, "
                           f"dsp={cfg.dsp_ip or '-'}:{cfg.dsp_port})")
        return path, cfg

    @staticmethod
    def _backup(path: str) -> str:
        stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
        backup = f"{path}.bak-{stamp}"
        n = 1
        while os.path.exists(backup):
            backup = f"{path}.bak-{stamp}-{n}"
            n += 1
        shutil.copy2(path, backup)
        return backup
