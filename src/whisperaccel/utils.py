"""Shared utility functions for whisperaccel.

- subprocess_flags(): Windows-specific flags to hide console windows
- now_ms(): wall-clock milliseconds for event timestamps
"""

from __future__ import annotations

import sys
import time
from typing import Any, Dict


def subprocess_flags() -> Dict[str, Any]:
    """Return subprocess flags to hide console window on Windows.

    Usage:
        result = subprocess.run(cmd, **subprocess_flags())
    """
    if sys.platform == "win32":
        # CREATE_NO_WINDOW = 0x08000000
        return {"creationflags": 0x08000000}
    return {}


def now_ms() -> int:
    return int(time.time() * 1000)
