"""
Restart Coordinator - durable cross-process "please restart me" signal

The engine writes state/restart_required.json; the supervisor consumes it
and removes it only after the restart is confirmed. Delivery is
at-least-once: every operation here is idempotent, and a missing or corrupt
record simply means "no request pending".
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from core.fsutil import atomic_write_json, read_json
from core.log_setup import audit_log, get_logger

engine_logger = get_logger('studiob.engine', 'ENGINE')


@dataclass(frozen=True)
class RestartRequest:
    ts: str
    reason: str

    def to_dict(self) -> Dict:
        return {'ts': self.ts, 'reason': self.reason}


class RestartCoordinator:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def request(self, reason: str) -> RestartRequest:
        """Record (or refresh) a pending restart request."""
        req = RestartRequest(ts=datetime.now(timezone.utc).isoformat(),
                             reason=(reason or 'restart requested').strip())
        with self._lock:
            atomic_write_json(self.path, req.to_dict())
        engine_logger.warning(f"Restart required: {req.reason}")
        audit_log('restart_requested', reason=req.reason)
        return req

    def read(self) -> Optional[RestartRequest]:
        try:
            data = read_json(self.path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            # A torn or foreign file still counts as a pending request.
            engine_logger.warning(f"Unreadable restart flag {self.path}: {e}")
            return RestartRequest(ts="", reason="unreadable restart flag")
        if not isinstance(data, dict):
            return RestartRequest(ts="", reason="unreadable restart flag")
        return RestartRequest(ts=str(data.get('ts') or ''), reason=str(data.get('reason') or ''))

    def pending(self) -> bool:
        return os.path.exists(self.path)

    def clear(self) -> bool:
        """Remove the request. Returns True if one was removed."""
        with self._lock:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                return False
        return True
