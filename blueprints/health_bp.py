"""
StudioB Core — Health Blueprint
Routes: /api/health, /api/version, /api/config
Dependencies: engine, version, start time

The supervisor probes these for liveness. A fault here is converted to a
JSON 500 so it never looks like the whole process is gone.
"""

import os
import time
from datetime import datetime, timezone
from functools import wraps

import psutil
from flask import Blueprint, jsonify

from core.log_setup import get_logger

api_logger = get_logger('studiob.api', 'API')

health_bp = Blueprint('health', __name__)

# Dependencies injected at registration time
_engine = None
_version = None
_start_time = None


def init_app(engine, version, start_time):
    """Initialize blueprint with required dependencies."""
    global _engine, _version, _start_time
    _engine = engine
    _version = version
    _start_time = start_time


def _json_fault_boundary(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            api_logger.exception(f"{fn.__name__} failed: {e}")
            return jsonify({'ok': False, 'error': f"internal error: {e}"}), 500
    return wrapper


@health_bp.route('/api/health', methods=['GET'])
@_json_fault_boundary
def health():
    """Process liveness plus write mode. Never performs device I/O."""
    config = _engine.config
    allowed, reason = _engine.gate_check()
    mem = psutil.Process(os.getpid()).memory_info()
    return jsonify({
        'ok': True,
        'version': _version,
        'time': datetime.now(timezone.utc).isoformat(),
        'uptime': round(time.time() - _start_time, 1),
        'mode': config.mode.value,
        'desiredWriteMode': config.mode.value,
        'dspWriteMode': config.mode.value,
        'writesAllowed': allowed,
        'writesBlockedReason': reason or None,
        'dspHealth': _engine.health().state.value,
        'restartRequired': _engine.restart.pending() if _engine.restart else False,
        'memory': {'rss_mb': round(mem.rss / (1024 * 1024), 1)},
    })


@health_bp.route('/api/version', methods=['GET'])
@_json_fault_boundary
def version():
    return jsonify({'ok': True, 'version': _version})


@health_bp.route('/api/config', methods=['GET'])
@_json_fault_boundary
def config():
    """Active configuration minus the admin PIN, with provenance."""
    snap = _engine.config
    return jsonify({
        'ok': True,
        'config': snap.safe_dict(),
        'meta': snap.meta.to_dict(),
    })
