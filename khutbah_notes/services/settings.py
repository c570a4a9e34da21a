"""Persistence helpers for client-side settings."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional


@dataclass
class ClientSettings:
    """Container for values that outlive a single process."""

    user_id: Optional[str] = None
    id_token: Optional[str] = None


class SettingsStore:
    """Load and store :class:`ClientSettings` alongside other persisted state."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ClientSettings:
        if not self._path.exists():
            return ClientSettings()

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return ClientSettings()
        if not isinstance(payload, dict):
            return ClientSettings()

        settings = ClientSettings()
        for field, value in payload.items():
            if hasattr(settings, field):
                setattr(settings, field, value)
        return settings

    def save(self, settings: ClientSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(settings)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")


__all__ = ["ClientSettings", "SettingsStore"]
