#!/usr/bin/env python3
"""
StudioB Core - DSP control plane service

Serves the operator HTTP surface (Flask) and pushes live updates over
Socket.IO. The device is only ever touched by an explicit operator test or
a gated control write; the watchdog runs as a separate process.
"""

import os
import sys
import time

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO, emit
from werkzeug.exceptions import HTTPException

from core.dsp.config_store import ConfigError, ConfigPaths, ConfigStore
from core.dsp.engine import build_engine
from core.log_setup import configure_audit_log, get_logger
from core.watchdog.services import ServiceManager

from blueprints.health_bp import health_bp, init_app as health_init
from blueprints.dsp_bp import dsp_bp, init_app as dsp_init
from blueprints.control_bp import control_bp, init_app as control_init
from blueprints.admin_bp import admin_bp, init_app as admin_init
from blueprints.watchdog_bp import watchdog_bp, init_app as watchdog_init

STUDIOB_VERSION = "0.3.0"

api_logger = get_logger('studiob.api', 'API')

# ============================================================
# CORS Configuration
# ============================================================
# Add custom origins via STUDIOB_CORS_ORIGINS (comma-separated)
DEFAULT_CORS_ORIGINS = [
    "http://localhost:8787",
    "http://127.0.0.1:8787",
    "http://localhost",
    "http://127.0.0.1",
]


def get_allowed_origins():
    """Get list of allowed CORS origins from defaults + environment"""
    origins = DEFAULT_CORS_ORIGINS.copy()
    env_origins = os.environ.get('STUDIOB_CORS_ORIGINS', '')
    for origin in env_origins.split(','):
        origin = origin.strip()
        if origin and origin not in origins:
            origins.append(origin)
    return origins


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'ok': False, 'error': 'not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({'ok': False, 'error': 'method not allowed'}), 405

    @app.errorhandler(Exception)
    def unhandled(e):
        if isinstance(e, HTTPException):
            return jsonify({'ok': False, 'error': e.description or e.name}), e.code
        api_logger.exception(f"Unhandled error: {e}")
        return jsonify({'ok': False, 'error': f"internal error: {e}"}), 500


def create_app(engine, store, paths=None, services=None, version=STUDIOB_VERSION,
               cors_origins=None):
    """Build the Flask app + Socket.IO server around an existing engine."""
    paths = paths or store.paths
    services = services or ServiceManager()
    origins = cors_origins if cors_origins is not None else get_allowed_origins()

    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": origins}})
    socketio = SocketIO(app, cors_allowed_origins=origins, async_mode='threading')

    health_init(engine, version, time.time())
    dsp_init(engine)
    control_init(engine)
    admin_init(engine, store)
    watchdog_init(engine, services, paths)

    app.register_blueprint(health_bp)
    app.register_blueprint(dsp_bp)
    app.register_blueprint(control_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(watchdog_bp)

    _register_error_handlers(app)

    def broadcast(event_type, payload):
        socketio.emit(event_type, payload)

    engine.register_event_callback(broadcast)

    @socketio.on('connect')
    def on_connect():
        emit('snapshot', engine.state_snapshot())

    return app, socketio


def _split_listen(listen):
    host, _, port = (listen or '').rpartition(':')
    try:
        return host or '127.0.0.1', int(port)
    except ValueError:
        api_logger.warning(f"Invalid listen address {listen!r}; using 127.0.0.1:8787")
        return '127.0.0.1', 8787


def main():
    paths = ConfigPaths.from_env()
    store = ConfigStore(paths)
    try:
        engine = build_engine(store, version=STUDIOB_VERSION)
    except ConfigError as e:
        print(f"❌ Configuration refused: {e}", flush=True)
        return 2

    audit_path = configure_audit_log(paths.log_dir)
    config = engine.config
    host, port = _split_listen(config.http_listen)

    print("\n" + "=" * 60)
    print(f"  StudioB Core v{STUDIOB_VERSION} - DSP Control Plane")
    print("=" * 60)
    print(f"  Base:   {paths.base_dir}")
    print(f"  Config: {paths.document} (mode from {config.meta.mode_source})")
    print(f"  Mode:   {config.mode.value}")
    print(f"  DSP:    {config.dsp_host or '-'}:{config.dsp_port}")
    print(f"  Audit:  {audit_path or 'disabled'}")
    print(f"  Listen: {host}:{port}")
    print("=" * 60 + "\n", flush=True)

    app, socketio = create_app(engine, store)
    engine.start()
    try:
        socketio.run(app, host=host, port=port, debug=False, allow_unsafe_werkzeug=True)
    finally:
        engine.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
