"""
Remembered device-name to printer-model choices.

When a printer advertises a name no pattern recognizes, the user picks the
model once and the choice is stored here, so later connections resolve
without asking again.
"""

import json
import logging
import os
from collections.abc import MutableMapping
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

# Config directory location
CONFIG_DIR = Path(os.environ.get("PHOMYMO_CONFIG_DIR", Path.home() / ".config" / "phomymo"))
MAPPING_FILE = CONFIG_DIR / "device_models.json"


class DeviceMapping(MutableMapping):
    """
    JSON-file backed mapping of BLE device name -> model name.

    The file is read on first access and rewritten on every change. A
    missing or corrupt file is treated as empty.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else None
        self._data: Optional[dict[str, str]] = None

    @property
    def path(self) -> Path:
        # Resolved late so tests can monkeypatch MAPPING_FILE
        return self._path if self._path is not None else MAPPING_FILE

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data

        self._data = {}
        if not self.path.exists():
            return self._data

        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable device mapping {self.path}: {e}")
            return self._data

        if isinstance(data, dict):
            self._data = {
                str(name): str(model) for name, model in data.items()
                if isinstance(model, str)
            }
        return self._data

    def _save(self) -> None:
        # Ensure config directory exists
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._load(), indent=2, sort_keys=True))

    def __getitem__(self, device_name: str) -> str:
        return self._load()[device_name]

    def __setitem__(self, device_name: str, model: str) -> None:
        self._load()[device_name] = model
        self._save()

    def __delitem__(self, device_name: str) -> None:
        del self._load()[device_name]
        self._save()

    def __iter__(self) -> Iterator[str]:
        return iter(dict(self._load()))

    def __len__(self) -> int:
        return len(self._load())

    def clear(self) -> None:
        """Remove every mapping and delete the file."""
        self._data = {}
        if self.path.exists():
            self.path.unlink()
