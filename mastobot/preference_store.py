from __future__ import annotations

import json
from pathlib import Path
from threading import RLock
from typing import Dict, Optional

from .logger_factory import get_logger
from .utils.logfmt import fmt


class PreferenceStore:
    """Per-user settings persisted to ``users.json`` as ``{acct: {"systemprompt": name}}``.

    Read or parse failures yield an empty mapping; write failures are logged.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self.path = self.base_path / "users.json"
        self._lock = RLock()
        self.log = get_logger("PreferenceStore")

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.log.error(f"[prefs-load-error] {fmt('path', self.path)} {fmt('error', e)}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, dict]) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            self.log.error(f"[prefs-save-error] {fmt('path', self.path)} {fmt('error', e)}")

    def get_system_prompt(self, acct: str) -> Optional[str]:
        with self._lock:
            entry = self._read().get(acct)
        if not isinstance(entry, dict):
            return None
        v = entry.get("systemprompt")
        return str(v) if v is not None else None

    def set_system_prompt(self, acct: str, name: str) -> None:
        with self._lock:
            data = self._read()
            data[acct] = {"systemprompt": name}
            self._write(data)
        self.log.info(f"[prefs-set] {fmt('acct', acct)} {fmt('systemprompt', name)}")
