"""
Persistent key/value settings store
"""

import json
import os
import threading
from typing import Any, Dict, Optional

from logging_utils import log_debug, log_warning


class SettingsStore:
    """Small JSON document on disk holding adapter settings

    Known keys: save_path (str), listen_port (int).
    """

    def __init__(self, path: str):
        self.path = path
        self._values: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.load()

    def load(self):
        if not os.path.exists(self.path):
            log_debug(f"[SETTINGS] No settings file at {self.path}, starting empty")
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                values = json.load(f)
        except (OSError, ValueError) as e:
            log_warning(f"[SETTINGS] Could not read {self.path}: {e}")
            return
        if not isinstance(values, dict):
            log_warning(f"[SETTINGS] Ignoring {self.path}: not a JSON object")
            return
        with self._lock:
            self._values = values
        log_debug(f"[SETTINGS] Loaded {len(values)} setting(s) from {self.path}")

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            value = self._values.get(key)
        return value if isinstance(value, str) else default

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        with self._lock:
            value = self._values.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return default
        return value

    def set_str(self, key: str, value: str):
        with self._lock:
            self._values[key] = str(value)

    def set_int(self, key: str, value: int):
        with self._lock:
            self._values[key] = int(value)

    def save(self):
        """Write the settings to disk, replacing the previous file"""
        with self._lock:
            data = json.dumps(self._values, indent=4, sort_keys=True)
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(data)
        os.replace(tmp_path, self.path)
        log_debug(f"[SETTINGS] Saved settings to {self.path}")
