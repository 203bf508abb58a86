"""
DSP Health Timeline - bounded, append-only transition history

Operators use this to answer "when did the DSP go disconnected?" without
digging through journald.

- Written ONLY when the health STATE changes.
- Bounded to the last `max_entries` lines.
- Persisted as JSONL when a path is configured; in-memory otherwise.
- Persistence failures are logged and swallowed (visibility-only feature).
"""

import json
import os
import threading
from typing import List, Optional

from core.log_setup import get_logger
from .types import TimelineEntry

health_logger = get_logger('studiob.health', 'HEALTH')

DEFAULT_MAX_ENTRIES = 200
DEFAULT_READ_COUNT = 50


class HealthTimeline:
    def __init__(self, path: Optional[str] = None, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.path = path
        self.max_entries = max(1, int(max_entries))
        self._memory: List[TimelineEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: TimelineEntry):
        with self._lock:
            if not self.path:
                self._memory.append(entry)
                if len(self._memory) > self.max_entries:
                    self._memory = self._memory[-self.max_entries:]
                return
            try:
                os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(entry.to_dict(), separators=(',', ':')) + '\n')
                self._bound()
            except OSError as e:
                health_logger.warning(f"Timeline write failed ({self.path}): {e}")

    def _bound(self):
        """Trim the file to max_entries. Caller holds the lock."""
        with open(self.path, 'r', encoding='utf-8') as f:
            lines = [line for line in f.read().splitlines() if line.strip()]
        if len(lines) <= self.max_entries:
            return
        lines = lines[-self.max_entries:]
        tmp = self.path + '.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines) + '\n')
        os.replace(tmp, self.path)

    def read(self, n: int = DEFAULT_READ_COUNT) -> List[TimelineEntry]:
        """Most recent n entries, oldest first. Unparseable lines are skipped."""
        if n <= 0:
            n = DEFAULT_READ_COUNT
        with self._lock:
            if not self.path:
                return list(self._memory[-n:])
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    raw = [line.strip() for line in f.read().splitlines() if line.strip()]
            except FileNotFoundError:
                return []
            except OSError as e:
                health_logger.warning(f"Timeline read failed ({self.path}): {e}")
                return []

        out = []
        for line in raw[-n:]:
            try:
                out.append(TimelineEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                continue
        return out

    def __len__(self):
        return len(self.read(self.max_entries))
