"""
Admin credential check for mutating routes.

The PIN travels in the X-Admin-PIN header and is compared in constant time.
Failures return a generic message; nothing in the response helps guessing.
"""

import hmac
from functools import wraps
from typing import Callable

from flask import jsonify, request

from core.log_setup import get_logger

api_logger = get_logger('studiob.api', 'API')

ADMIN_HEADER = 'X-Admin-PIN'


def pin_matches(provided: str, configured: str) -> bool:
    return hmac.compare_digest((provided or '').encode('utf-8'), (configured or '').encode('utf-8'))


def admin_required(get_pin: Callable[[], str]):
    """Route decorator. get_pin returns the currently configured PIN."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            configured = (get_pin() or '').strip()
            if not configured:
                return jsonify({'ok': False, 'error': 'admin PIN not configured'}), 503
            provided = (request.headers.get(ADMIN_HEADER) or '').strip()
            if not provided or not pin_matches(provided, configured):
                api_logger.warning(f"Unauthorized {request.method} {request.path} from {request.remote_addr}")
                return jsonify({'ok': False, 'error': 'unauthorized'}), 401
            return fn(*args, **kwargs)
        return wrapper
    return decorator
