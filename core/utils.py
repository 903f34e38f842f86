"""Shared helpers for tapfarm.

Keys are bearer tokens, so nothing here ever writes one out in full:
:func:`redact_key` shortens a key for log lines and :func:`key_digest`
gives the on-disk identifier used by the cooldown state file.  The state
file itself is read and written through :func:`safe_json_read` and
:func:`safe_json_write`, which keep a few generations of backups so a
crash mid-write never loses the cooldown table.
"""

import hashlib
import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REDACT_VISIBLE_CHARS = 8
STATE_BACKUPS = 3


def redact_key(key: str, visible: int = REDACT_VISIBLE_CHARS) -> str:
    """Return a log-safe form of *key* (leading characters + ``...``)."""
    if len(key) <= visible:
        return key[: max(1, visible // 2)] + "..."
    return key[:visible] + "..."


def key_digest(key: str) -> str:
    """SHA-256 hex digest of *key*; stable across restarts and safe on disk."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _backup_path(filepath: str, generation: int) -> str:
    return f"{filepath}.backup.{generation}"


def safe_json_read(filepath: str, max_backups: int = STATE_BACKUPS) -> Optional[Dict[str, Any]]:
    """Load a state file, falling back to its backups.

    The cooldown table is only useful if it parses, so a truncated or
    hand-edited ``cooldowns.json`` is skipped in favour of the newest
    backup that still holds a JSON object.

    Returns:
        The first JSON object found, or ``None`` when the file and every
        backup are missing or unusable.
    """
    candidates = [filepath] + [_backup_path(filepath, n) for n in range(1, max_backups + 1)]
    for candidate in candidates:
        if not os.path.exists(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.debug("Skipping unreadable state file %s: %s", candidate, e)
            continue
        if isinstance(data, dict):
            if candidate != filepath:
                logger.warning("Recovered state from backup %s", candidate)
            return data
    return None


def safe_json_write(filepath: str, data: Dict[str, Any], max_backups: int = STATE_BACKUPS) -> bool:
    """Replace a state file without ever leaving it half-written.

    The previous contents shift down one backup generation (the oldest is
    dropped).  The new contents go to ``<file>.tmp``, are parsed back, and
    only then are moved into place with :func:`os.replace`.

    Returns:
        ``True`` when the new state is on disk.  Failures are logged and
        reported as ``False``; the scheduler keeps running either way.
    """
    temp_file = filepath + ".tmp"
    try:
        dirpath = os.path.dirname(filepath)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)

        if os.path.exists(filepath):
            for generation in range(max_backups - 1, 0, -1):
                older = _backup_path(filepath, generation)
                if os.path.exists(older):
                    os.replace(older, _backup_path(filepath, generation + 1))
            os.replace(filepath, _backup_path(filepath, 1))

        with open(temp_file, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        with open(temp_file, "r", encoding="utf-8") as fh:
            json.load(fh)

        os.replace(temp_file, filepath)
        return True
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"⚠️ Could not save state to {filepath}: {e}")
        return False
