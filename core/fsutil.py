"""
Filesystem helpers shared by the engine and the watchdog.

Atomic write: write a temp file in the same directory, fsync, then rename
over the target. Readers never observe a half-written document; if the
process dies before the rename, the previous target is untouched.
"""

import json
import os
from typing import Any, Optional


def atomic_write_text(path: str, text: str, mode: int = 0o644):
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, exist_ok=True)
    tmp = path + '.tmp'
    try:
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise


def atomic_write_json(path: str, data: Any, indent: Optional[int] = 2):
    text = json.dumps(data, indent=indent, separators=None if indent else (',', ':'))
    atomic_write_text(path, text + '\n')


def read_json(path: str) -> Any:
    """Parse a JSON file. Raises FileNotFoundError / ValueError."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)
