"""
Persisted named string settings for the pipeline lab.

Settings are arbitrary ``name -> string`` preferences (editor theme, key
bindings, default session content...) stored with a freshness window of 30
days. The store is a JSON file in the lab data directory::

    {
        "theme": {"value": "dark", "expires_at": "2026-11-17T10:00:00"}
    }

Any string is accepted; expired entries read as absent and are dropped on
the next write.
"""

import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .shared.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_DAYS = 30


class SettingStore:
    """File-backed store of named string settings with per-entry expiry."""

    def __init__(self, path: Path, now: Callable[[], datetime] = datetime.now):
        self._path = Path(path)
        self._now = now
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, str]] = self._load()

    def _load(self) -> Dict[str, Dict[str, str]]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict) and "value" in v}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._entries, f, indent=2)
        os.replace(tmp_path, self._path)

    def _is_live(self, entry: Dict[str, str]) -> bool:
        expires_at = entry.get("expires_at")
        if not expires_at:
            return True
        try:
            return datetime.fromisoformat(expires_at) > self._now()
        except ValueError:
            return False

    def get(self, name: str) -> Optional[str]:
        """Return the persisted value, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None or not self._is_live(entry):
                return None
            return str(entry["value"])

    def set(self, name: str, value: str, ttl_days: int = DEFAULT_TTL_DAYS) -> None:
        """Persist ``value`` under ``name`` for ``ttl_days`` days."""
        with self._lock:
            self._entries = {k: v for k, v in self._entries.items() if self._is_live(v)}
            self._entries[name] = {
                "value": value,
                "expires_at": (self._now() + timedelta(days=ttl_days)).isoformat(),
            }
            self._save()

    def all(self) -> Dict[str, str]:
        """Return every live setting."""
        with self._lock:
            return {k: str(v["value"]) for k, v in self._entries.items() if self._is_live(v)}


@dataclass
class Setting:
    """A setting bound to a field value and a change callback."""

    store: SettingStore
    name: str
    value: str
    on_change: Callable[[str], None]

    def change(self, value: str) -> None:
        """Persist a new value and notify the dependent field."""
        self.value = value
        self.store.set(self.name, value)
        self.on_change(value)


def use_setting(
    store: SettingStore,
    name: str,
    current: str,
    on_change: Callable[[str], None] = lambda value: None,
) -> Setting:
    """Initialise a setting for a field.

    A persisted non-empty value overrides ``current``. The resulting value is
    persisted again (refreshing its expiry) and ``on_change`` is called
    synchronously so dependent state starts consistent.
    """
    persisted = store.get(name)
    value = persisted if persisted else current
    store.set(name, value)
    on_change(value)
    return Setting(store=store, name=name, value=value, on_change=on_change)


# ============= HTTP routes =============


router = APIRouter(prefix="/settings", tags=["settings"])


class SettingValue(BaseModel):
    value: str


def _store(request: Request) -> SettingStore:
    return request.app.state.setting_store


@router.get("")
async def list_settings(request: Request):
    """Return all live settings."""
    return {"settings": _store(request).all()}


@router.get("/{name}")
async def get_setting(name: str, request: Request):
    value = _store(request).get(name)
    if value is None:
        raise HTTPException(status_code=404, detail=f"Setting '{name}' not set")
    return {"name": name, "value": value}


@router.put("/{name}")
async def put_setting(name: str, body: SettingValue, request: Request):
    _store(request).set(name, body.value)
    logger.debug("Setting %s updated", name)
    return {"name": name, "value": body.value}
