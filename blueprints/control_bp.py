"""
StudioB Core — Control Blueprint
Routes: /api/state, /api/studio/status, /api/rc/*, /api/intent/*
Dependencies: engine

Every write goes through the engine, which runs the write gate first.
"""

from flask import Blueprint, jsonify, request

from core.admin_auth import admin_required
from core.dsp.engine import ControlError, DeviceWriteError, WriteDenied

control_bp = Blueprint('control', __name__)

# Dependencies injected at registration time
_engine = None


def init_app(engine):
    """Initialize blueprint with required dependencies."""
    global _engine
    _engine = engine


def _admin_pin():
    return _engine.config.admin_pin


def _write(fn, *args, **kwargs):
    try:
        result = fn(*args, **kwargs)
    except WriteDenied as e:
        return jsonify({'ok': False, 'error': str(e)}), 409
    except ControlError as e:
        return jsonify({'ok': False, 'error': str(e)}), 400
    except DeviceWriteError as e:
        return jsonify({'ok': False, 'error': str(e)}), 502
    return jsonify({'ok': True, **result})


@control_bp.route('/api/state', methods=['GET'])
def state():
    """Debug snapshot of every cached control value."""
    return jsonify(_engine.state_snapshot())


@control_bp.route('/api/studio/status', methods=['GET'])
def studio_status():
    return jsonify(_engine.studio_status())


@control_bp.route('/api/rc/<ref>', methods=['POST'])
@admin_required(_admin_pin)
def set_rc(ref):
    data = request.get_json(silent=True) or {}
    if 'value' not in data:
        return jsonify({'ok': False, 'error': 'value is required'}), 400
    return _write(_engine.set_control, ref, data['value'], source='api')


@control_bp.route('/api/intent/speaker/mute', methods=['POST'])
@admin_required(_admin_pin)
def speaker_mute_intent():
    data = request.get_json(silent=True) or {}
    mute = data.get('mute')
    if not isinstance(mute, bool):
        return jsonify({'ok': False, 'error': 'mute must be true or false'}), 400
    source = str(data.get('source') or 'ui')
    return _write(_engine.apply_speaker_mute_intent, mute, source=source)
