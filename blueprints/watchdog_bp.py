"""
StudioB Core — Watchdog Blueprint
Routes: /api/watchdog/status, /api/admin/watchdog/start
Dependencies: engine, service manager, config paths
"""

from flask import Blueprint, jsonify

from core.admin_auth import admin_required
from core.watchdog.supervisor import start_watchdog, watchdog_status

watchdog_bp = Blueprint('watchdog', __name__)

# Dependencies injected at registration time
_engine = None
_services = None
_paths = None


def init_app(engine, services, paths):
    """Initialize blueprint with required dependencies."""
    global _engine, _services, _paths
    _engine = engine
    _services = services
    _paths = paths


def _admin_pin():
    return _engine.config.admin_pin


@watchdog_bp.route('/api/watchdog/status', methods=['GET'])
def status():
    """enabled/active strings are systemd's own words, unmodified."""
    return jsonify({'ok': True, **watchdog_status(_services, _paths)})


@watchdog_bp.route('/api/admin/watchdog/start', methods=['POST'])
@admin_required(_admin_pin)
def start():
    print("WATCHDOG: Operator requested start", flush=True)
    result = start_watchdog(_services)
    return jsonify(result), (200 if result['ok'] else 500)
