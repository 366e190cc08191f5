"""
Key-value storage standing in for the browser's localStorage/sessionStorage.

``LocalStorage`` persists to a JSON file and survives restarts (device id,
dismissed install prompt). ``SessionStorage`` lives as long as the process.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "road_patrol_device_id"
PWA_PROMPT_DISMISSED_KEY = "pwa_prompt_dismissed"
LOCATION_PROMPT_DISMISSED_KEY = "location_prompt_dismissed"


class SessionStorage:
    """In-memory storage for the lifetime of the process."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


class LocalStorage(SessionStorage):
    """Durable storage backed by a JSON file."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path).expanduser()
        self._items = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Local storage at {self.path} unreadable, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._items, indent=2), encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        super().set_item(key, value)
        self._save()

    def remove_item(self, key: str) -> None:
        super().remove_item(key)
        self._save()

    def clear(self) -> None:
        super().clear()
        self._save()


class PromptPreferences:
    """Dismissed-prompt flags: install prompt persists, location prompt is per session."""

    def __init__(self, local: SessionStorage, session: SessionStorage):
        self.local = local
        self.session = session

    @property
    def install_prompt_dismissed(self) -> bool:
        return self.local.get_item(PWA_PROMPT_DISMISSED_KEY) == "true"

    def dismiss_install_prompt(self) -> None:
        self.local.set_item(PWA_PROMPT_DISMISSED_KEY, "true")

    @property
    def location_prompt_dismissed(self) -> bool:
        return self.session.get_item(LOCATION_PROMPT_DISMISSED_KEY) == "true"

    def dismiss_location_prompt(self) -> None:
        self.session.set_item(LOCATION_PROMPT_DISMISSED_KEY, "true")
