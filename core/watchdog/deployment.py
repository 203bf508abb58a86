"""
Deployment pointer and last-known-good record

runtime/
    current -> releases/<release>   (symlink, the active deployment)
    releases/<release>/
    last_good.json                  {path, ts, version}
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from core.fsutil import atomic_write_json, read_json
from core.log_setup import get_logger

watchdog_logger = get_logger('studiob.watchdog', 'WATCHDOG')


@dataclass(frozen=True)
class LastKnownGood:
    path: str
    ts: str
    version: str = ""

    def to_dict(self):
        return {'path': self.path, 'ts': self.ts, 'version': self.version}


class DeploymentPointer:
    def __init__(self, runtime_dir: str):
        self.runtime_dir = runtime_dir
        self.current_link = os.path.join(runtime_dir, 'current')
        self.releases_dir = os.path.join(runtime_dir, 'releases')

    def current(self) -> Optional[str]:
        """Resolved release directory, or None if the pointer is missing/broken."""
        if not os.path.islink(self.current_link):
            return None
        target = os.path.realpath(self.current_link)
        return target if os.path.isdir(target) else None

    def releases(self) -> List[str]:
        """Release directories, newest (by mtime) first."""
        try:
            names = os.listdir(self.releases_dir)
        except OSError:
            return []
        dirs = [os.path.realpath(os.path.join(self.releases_dir, n)) for n in names]
        dirs = [d for d in dirs if os.path.isdir(d)]
        dirs.sort(key=lambda d: (os.path.getmtime(d), d), reverse=True)
        return dirs

    def newest_release(self, exclude: Optional[str] = None) -> Optional[str]:
        for d in self.releases():
            if exclude and d == exclude:
                continue
            return d
        return None

    def switch(self, target: str):
        """Atomically repoint current at target."""
        tmp = self.current_link + '.tmp'
        if os.path.lexists(tmp):
            os.remove(tmp)
        os.symlink(target, tmp)
        os.replace(tmp, self.current_link)

    def repair(self) -> bool:
        """Point a missing or broken current at the newest release. True if usable afterwards."""
        if self.current() is not None:
            return True
        watchdog_logger.warning(f"{self.current_link} is missing or broken; attempting repair")
        newest = self.newest_release()
        if newest is None:
            watchdog_logger.error(f"No releases found under {self.releases_dir}")
            return False
        try:
            self.switch(newest)
        except OSError as e:
            watchdog_logger.error(f"Symlink repair failed: {e}")
            return False
        watchdog_logger.info(f"Repaired symlink: {self.current_link} -> {newest}")
        return True


class LastKnownGoodStore:
    def __init__(self, path: str):
        self.path = path

    def read(self) -> Optional[LastKnownGood]:
        try:
            data = read_json(self.path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            watchdog_logger.warning(f"Unreadable last-known-good record {self.path}: {e}")
            return None
        if not isinstance(data, dict) or not data.get('path'):
            return None
        return LastKnownGood(path=str(data['path']), ts=str(data.get('ts') or ''),
                             version=str(data.get('version') or ''))

    def write(self, path: str, version: str = "") -> LastKnownGood:
        record = LastKnownGood(path=path, ts=datetime.now(timezone.utc).isoformat(), version=version)
        atomic_write_json(self.path, record.to_dict(), indent=None)
        watchdog_logger.info(f"Recorded last known good: {path} (v{version or 'unknown'})")
        return record
