from __future__ import annotations

"""
Device-local cache, the last resort when both remote tables are down.

One JSON file per owner plus a single file holding the last used owner code,
mirroring what the web client kept in localStorage.
"""

import json
import logging
import time
from pathlib import Path
from urllib.parse import quote

from .config import get_settings

logger = logging.getLogger(__name__)

LAST_USER_KEY = "qr_last_user_code"


class LocalCache:
    def __init__(self, directory: str | Path | None = None):
        if directory is None:
            directory = get_settings().cache_dir
        self.directory = Path(directory)

    def _path(self, owner_code: str) -> Path:
        # Owner codes are free text, keep them filesystem safe
        return self.directory / f"qr_user_{quote(owner_code, safe='')}.json"

    def save(self, owner_code: str, record: dict) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            payload = {**record, "ts": int(time.time() * 1000)}
            self._path(owner_code).write_text(json.dumps(payload), encoding="utf-8")
            self.set_last_owner(owner_code)
            return True
        except (OSError, TypeError) as e:
            logger.error("Local cache write failed for %s: %s", owner_code, e)
            return False

    def load(self, owner_code: str) -> dict | None:
        path = self._path(owner_code)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Local cache read failed for %s: %s", owner_code, e)
            return None

    def delete(self, owner_code: str) -> bool:
        try:
            self._path(owner_code).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error("Local cache delete failed for %s: %s", owner_code, e)
            return False

    def last_owner(self) -> str | None:
        path = self.directory / LAST_USER_KEY
        try:
            code = path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return code or None

    def set_last_owner(self, owner_code: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / LAST_USER_KEY).write_text(owner_code, encoding="utf-8")
        except OSError as e:
            logger.error("Could not remember last owner %s: %s", owner_code, e)

    def clear_last_owner(self) -> None:
        try:
            (self.directory / LAST_USER_KEY).unlink(missing_ok=True)
        except OSError as e:
            logger.error("Could not clear last owner: %s", e)
