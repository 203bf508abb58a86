"""
StudioB Core — DSP Health Blueprint
Routes: /api/dsp/*
Dependencies: engine

Read-only routes never touch the network. The only route that probes the
device is POST /api/dsp/test, one bounded connect per request.
"""

from flask import Blueprint, jsonify, request

from core.admin_auth import admin_required
from core.dsp.health import DEFAULT_PROBE_TIMEOUT
from core.dsp.timeline import DEFAULT_READ_COUNT, DEFAULT_MAX_ENTRIES

dsp_bp = Blueprint('dsp', __name__)

# Dependencies injected at registration time
_engine = None


def init_app(engine):
    """Initialize blueprint with required dependencies."""
    global _engine
    _engine = engine


def _admin_pin():
    return _engine.config.admin_pin


@dsp_bp.route('/api/dsp/health', methods=['GET'])
def dsp_health():
    return jsonify(_engine.health().to_dict())


@dsp_bp.route('/api/dsp/mode', methods=['GET'])
def dsp_mode():
    """Desired mode and whether an operator validated it under the active config."""
    return jsonify(_engine.mode_status())


@dsp_bp.route('/api/dsp/timeline', methods=['GET'])
def dsp_timeline():
    """Recent health transitions. ?n= (default 50, clamped to 1..200)."""
    n = request.args.get('n', DEFAULT_READ_COUNT, type=int)
    n = max(1, min(DEFAULT_MAX_ENTRIES, n))
    entries = _engine.monitor.timeline.read(n)
    return jsonify({'ok': True, 'n': n, 'entries': [e.to_dict() for e in entries]})


@dsp_bp.route('/api/dsp/test', methods=['POST'])
@admin_required(_admin_pin)
def dsp_test():
    """Operator-triggered single-shot connectivity test."""
    snap = _engine.test_device(timeout=DEFAULT_PROBE_TIMEOUT)
    print(f"DSP TEST: {snap.state.value}" + (f" ({snap.last_error})" if snap.last_error else ""), flush=True)
    return jsonify({
        'ok': True,
        'health': snap.to_dict(),
        'mode': _engine.mode_status(),
    })
