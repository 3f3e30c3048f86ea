"""Client-side persistent state: a namespaced key/value file."""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog

logger = structlog.get_logger()

NAMESPACE = "webai_"

THEMES = ("light", "dark")


class LocalStore:
    """JSON-file backed key/value store.

    Keys are stored under a stable namespace prefix. With no path the store
    lives in memory only. Reads happen once at construction; every write
    rewrites the file.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, prefix: str = NAMESPACE) -> None:
        self.path = Path(path).expanduser() if path else None
        self.prefix = prefix
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("local_store_unreadable", path=str(self.path), error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("local_store_unreadable", path=str(self.path), error="not a mapping")
            return {}
        return data

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(self.prefix + key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[self.prefix + key] = value
        self._save()

    def remove(self, key: str) -> None:
        if self._data.pop(self.prefix + key, None) is not None:
            self._save()


class Preferences:
    """Theme, selected model and the user's own inference key."""

    def __init__(self, store: LocalStore, default_model: str) -> None:
        self.store = store
        self.default_model = default_model

    @property
    def theme(self) -> str:
        theme = self.store.get("theme")
        return theme if theme in THEMES else "dark"

    @theme.setter
    def theme(self, value: str) -> None:
        if value not in THEMES:
            raise ValueError(f"Unknown theme {value!r}")
        self.store.set("theme", value)

    def toggle_theme(self) -> str:
        self.theme = "light" if self.theme == "dark" else "dark"
        return self.theme

    @property
    def model(self) -> str:
        return self.store.get("model") or self.default_model

    @model.setter
    def model(self, model_id: str) -> None:
        self.store.set("model", model_id)

    @property
    def api_key(self) -> Optional[str]:
        return self.store.get("api_key") or None

    @api_key.setter
    def api_key(self, value: Optional[str]) -> None:
        if value:
            self.store.set("api_key", value)
        else:
            self.store.remove("api_key")
