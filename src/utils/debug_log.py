"""
Debug Log Utility

Optional file-based JSON-lines tracing for the hanging-protocol and
synchronization core. Lines are written only when enabled via environment
variable; failures are ignored so tracing never breaks the viewer.

Inputs:
    - debug_log(location, message, data) calls from core modules
    - Environment: HANGINGCORE_DEBUG_LOG (set to 1, true, or yes to enable)
    - Environment: HANGINGCORE_DEBUG_LOG_PATH (optional override of the log file)

Outputs:
    - When enabled: appends JSON lines to <project_root>/.debug/hanging_core.log
    - When disabled or on error: no side effects

Requirements:
    - Standard library only: pathlib, os, json, time
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

# src/utils/debug_log.py -> parent=utils, parent.parent=src, parent.parent.parent=project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

_DEBUG_ENV = os.getenv("HANGINGCORE_DEBUG_LOG", "0").strip().lower()
DEBUG_LOG_ENABLED = _DEBUG_ENV in ("1", "true", "yes")

# Console echo of sync propagation; set HANGINGCORE_SYNC_DEBUG=1 to enable.
_SYNC_DEBUG_ENV = os.getenv("HANGINGCORE_SYNC_DEBUG", "0").strip().lower()
SYNC_DEBUG_ENABLED = _SYNC_DEBUG_ENV in ("1", "true", "yes")


def sync_debug(msg: str) -> None:
    """Print sync propagation message to console only when HANGINGCORE_SYNC_DEBUG is set."""
    if SYNC_DEBUG_ENABLED:
        print(f"[SYNC DEBUG] {msg}")


def get_debug_log_path() -> Path:
    """Return the file debug lines are appended to."""
    override = os.getenv("HANGINGCORE_DEBUG_LOG_PATH", "").strip()
    if override:
        return Path(override)
    return _PROJECT_ROOT / ".debug" / "hanging_core.log"


def debug_log(
    location: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Append one JSON log line when debug logging is enabled.

    Failures (missing dir, permission, unserializable data, etc.) are caught
    and ignored.

    Args:
        location: Call site identifier (e.g. "stage_selector.select_stage").
        message: Short description of the event.
        data: Optional dict of context; non-JSON values are stringified.
    """
    if not DEBUG_LOG_ENABLED:
        return
    try:
        log_path = get_debug_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "location": location,
            "message": message,
            "data": data or {},
            "timestamp": int(time.time() * 1000),
        }
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, default=str) + "\n")
    except Exception:
        pass
