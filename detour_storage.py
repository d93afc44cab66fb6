"""File-based persistence for detour detection state."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from detour_state import DetourState, initialize_detour_state, isoformat, normalize_loaded_state, state_to_dict


SNAPSHOT_VERSION = 2


class DetourStateStore:
    """Loads and atomically writes one JSON snapshot of the engine state."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self.last_saved_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> DetourState:
        """Hydrate state from disk; a missing or unreadable file yields empty state."""
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return initialize_detour_state()
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[detour-storage] failed to load {self._path}: {exc}")
            self.last_error = str(exc)
            return initialize_detour_state()

        # Snapshots are wrapped with metadata; bare state dicts are older files.
        payload = raw.get("state", raw) if isinstance(raw, dict) else raw
        try:
            state = normalize_loaded_state(payload)
        except Exception as exc:
            print(f"[detour-storage] failed to restore {self._path}: {exc}")
            self.last_error = str(exc)
            return initialize_detour_state()
        print(
            f"[detour-storage] loaded {len(state.active_detours)} active detours, "
            f"{len(state.detour_history)} history entries from {self._path}"
        )
        return state

    def _serialise(self, snapshot: Dict[str, Any]) -> str:
        data = {
            "version": SNAPSHOT_VERSION,
            "saved_at": isoformat(datetime.now(timezone.utc)),
            "state": snapshot,
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def save(self, state: DetourState) -> bool:
        """Write the state snapshot. Returns False when the write failed."""
        return await self.save_snapshot(state_to_dict(state))

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> bool:
        async with self._lock:
            try:
                payload = self._serialise(snapshot)
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
                tmp_path.write_text(payload)
                tmp_path.replace(self._path)
            except (OSError, TypeError, ValueError) as exc:
                print(f"[detour-storage] failed to write {self._path}: {exc}")
                self.last_error = str(exc)
                return False
            self.last_saved_at = datetime.now(timezone.utc)
            self.last_error = None
            return True


__all__ = ["DetourStateStore", "SNAPSHOT_VERSION"]
