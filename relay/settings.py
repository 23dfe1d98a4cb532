import json
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_SETTINGS: Dict[str, Any] = {
    "server": {
        "host": "127.0.0.1",
        "port": 3004,
    },
    "inference": {
        "stream_url": "http://localhost:3005/stream",
        "health_url": "",
        "api_key": "",
        "connect_timeout": 10.0,
    },
    "chatbot_cards": [
        {
            "id": "general-assistant",
            "name": "General Assistant",
            "model": "gpt-3.5-turbo",
            "reasoning_effort": "minimal",
        },
        {
            "id": "deep-thinker",
            "name": "Deep Thinker",
            "model": "gpt-oss-20b",
            "reasoning_effort": "high",
        },
    ],
}


class SettingsManager:
    """
    Handles loading and persisting the editable configuration file.

    The file is stored as pretty-printed JSON so operators can edit it by hand.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    def _load_from_disk(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._write(DEFAULT_SETTINGS)
            return json.loads(json.dumps(DEFAULT_SETTINGS))
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        # Merge with defaults to backfill new keys without overwriting manual edits.
        merged = json.loads(json.dumps(DEFAULT_SETTINGS))
        _deep_update(merged, data)
        return merged

    def chatbot_cards(self) -> List[Dict[str, Any]]:
        return list(self.settings.get("chatbot_cards", []))

    def find_card(self, card_id: str) -> Optional[Dict[str, Any]]:
        for card in self.chatbot_cards():
            if card.get("id") == card_id:
                return card
        return None

    def _write(self, data: Dict[str, Any]) -> None:
        # Persist as stable, human-readable JSON.
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
