"""
StudioB Core — Admin Config Blueprint
Routes: /api/admin/config/*, /api/admin/restart
Dependencies: engine, config store

Saving the config applies it before responding: when the client sees
ok:true, validation has already been cleared for a changed device.
"""

from flask import Blueprint, jsonify, request

from core.admin_auth import admin_required
from core.dsp.config_store import ConfigError, ConfigValidationError, editable_from_wire
from core.log_setup import audit_log, get_logger

api_logger = get_logger('studiob.api', 'API')

admin_bp = Blueprint('admin', __name__)

# Dependencies injected at registration time
_engine = None
_store = None


def init_app(engine, store):
    """Initialize blueprint with required dependencies."""
    global _engine, _store
    _engine = engine
    _store = store


def _admin_pin():
    return _engine.config.admin_pin


@admin_bp.route('/api/admin/config/file', methods=['GET'])
@admin_required(_admin_pin)
def get_config_file():
    result = _store.read_editable()
    if result['error']:
        return jsonify({'ok': False, 'error': result['error'], 'path': result['path'],
                        'raw': result['raw']}), 500
    return jsonify({
        'ok': True,
        'exists': result['exists'],
        'path': result['path'],
        'config': result['config'].to_dict(),
        'raw': result['raw'],
    })


@admin_bp.route('/api/admin/config/file', methods=['PUT'])
@admin_required(_admin_pin)
def put_config_file():
    """Validate -> backup -> atomic write -> load -> apply."""
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({'ok': False, 'error': 'invalid json'}), 400
    try:
        edit = editable_from_wire(payload)
        path, saved = _store.write_editable(edit.config)
    except ConfigValidationError as e:
        return jsonify({'ok': False, 'error': str(e)}), 400
    except OSError as e:
        api_logger.error(f"Config write failed: {e}")
        return jsonify({'ok': False, 'error': f"write failed: {e}"}), 500

    audit_log('config_write', path=path, mode=saved.mode, dsp_ip=saved.dsp_ip,
              dsp_port=saved.dsp_port, mode_source=edit.mode_source)

    try:
        applied = _engine.apply_config(_store.load(), reason='operator config save')
    except ConfigError as e:
        return jsonify({'ok': False, 'error': f"saved but not applied: {e}", 'path': path}), 500

    return jsonify({
        'ok': True,
        'path': path,
        'config': saved.to_dict(),
        'mode_saved': saved.mode,
        'mode_input_top': edit.mode_input_top,
        'mode_input_dsp': edit.mode_input_dsp,
        'mode_source': edit.mode_source,
        'restart_required': applied.restart_required,
        'applied': applied.to_dict(),
    })


@admin_bp.route('/api/admin/config/reload', methods=['POST'])
@admin_required(_admin_pin)
def reload_config():
    try:
        applied = _engine.reload(_store, reason='operator reload')
    except ConfigError as e:
        return jsonify({'ok': False, 'error': str(e)}), 500
    return jsonify({'ok': True, 'applied': applied.to_dict(), 'mode': _engine.mode_status()})


@admin_bp.route('/api/admin/restart', methods=['POST'])
@admin_required(_admin_pin)
def request_restart():
    if _engine.restart is None:
        return jsonify({'ok': False, 'error': 'restart coordination unavailable'}), 503
    data = request.get_json(silent=True) or {}
    reason = str(data.get('reason') or 'operator requested restart')
    req = _engine.restart.request(reason)
    return jsonify({'ok': True, 'restartRequest': req.to_dict()})
