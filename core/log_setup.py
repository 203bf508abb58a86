"""
StudioB Core - Logging helpers

Tagged stream loggers per concern plus the persistent audit log.

TRUST RULE: operator-relevant events are never silent. Every health
transition, gated denial, config write and supervisor action is logged
through one of these loggers.
"""

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional


def get_logger(name: str, tag: str) -> logging.Logger:
    """Return a named logger with a tagged stream handler (added once)."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            f'%(asctime)s [{tag}] %(levelname)s: %(message)s'
        ))
        logger.addHandler(handler)
    return logger


def add_rotating_file(logger: logging.Logger, path: str,
                      max_bytes: int = 5 * 1024 * 1024, backup_count: int = 5) -> bool:
    """Attach a rotating file handler. Returns False if the path is unusable."""
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=max_bytes,
                                      backupCount=backup_count, encoding='utf-8')
    except OSError as e:
        logger.warning(f"File logging unavailable ({path}): {e}")
        return False
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s',
                                           datefmt='%Y-%m-%dT%H:%M:%S'))
    logger.addHandler(handler)
    return True


# Persistent audit log with file rotation
_audit_logger = logging.getLogger('studiob.audit')
_audit_logger.setLevel(logging.INFO)
_audit_logger.propagate = False  # Don't spam console
_audit_lock = threading.Lock()
_audit_path: Optional[str] = None


def configure_audit_log(log_dir: str) -> Optional[str]:
    """Point the audit logger at <log_dir>/audit.log (5 MB x 5)."""
    global _audit_path
    path = os.path.join(log_dir, 'audit.log')
    with _audit_lock:
        if _audit_path == path:
            return path
        for h in list(_audit_logger.handlers):
            _audit_logger.removeHandler(h)
            h.close()
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024,
                                          backupCount=5, encoding='utf-8')
        except OSError as e:
            print(f"⚠️ Audit log unavailable ({path}): {e}", flush=True)
            _audit_path = None
            return None
        handler.setFormatter(logging.Formatter('%(asctime)s %(message)s',
                                               datefmt='%Y-%m-%dT%H:%M:%S'))
        _audit_logger.addHandler(handler)
        _audit_path = path
    return path


def audit_log(event_type: str, **kwargs):
    """Write a structured audit log entry (one compact JSON object per line)."""
    entry = json.dumps({'event': event_type, **kwargs}, separators=(',', ':'), default=str)
    _audit_logger.info(entry)
