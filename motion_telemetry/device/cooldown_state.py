"""Optional persistence of detector cooldowns across restarts."""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class CooldownStateStore(Protocol):
    def load(self) -> dict[str, datetime]: ...

    def save(self, device_id: str, cooldown_until: datetime) -> None: ...


class JsonFileCooldownStateStore:
    """Keeps ``{device_id: cooldown_until}`` in a small JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: dict[str, datetime] = {}

    def load(self) -> dict[str, datetime]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._state = {
                device_id: datetime.fromisoformat(until) for device_id, until in raw.items()
            }
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(
                "Ignoring unreadable cooldown state file",
                path=str(self.path),
                error=str(e),
            )
            self._state = {}
        return dict(self._state)

    def save(self, device_id: str, cooldown_until: datetime) -> None:
        self._state[device_id] = cooldown_until
        payload = {device: until.isoformat() for device, until in self._state.items()}
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp_path, self.path)
