"""セッションとAPIキーの永続化."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from back2tab.logger import logger
from back2tab.model.session import Session

__all__ = [
    "CredentialStore",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "SessionRepository",
    "default_data_dir",
]

SESSION_KEY = "session"
API_KEY_KEY = "gemini_api_key"
API_KEY_ENV = "GEMINI_API_KEY"


def default_data_dir() -> Path:
    return Path(os.getenv("BACK2TAB_DATA_DIR", "./data"))


class KeyValueStorage(Protocol):
    """名前付きレコードの get/set/remove."""

    def get(self, key: str) -> Any: ...  # noqa: ANN401

    def set(self, key: str, value: Any) -> None: ...  # noqa: ANN401

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """プロセス内だけで保持するストレージ (テスト・一時利用向け)."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:  # noqa: ANN401
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:  # noqa: ANN401
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStorage:
    """1つのJSONファイルに全レコードを保存する.

    書き込みは一時ファイル経由の置き換えで行うので、途中でプロセスが落ちても
    ファイルが半端な状態にはならない。APIキーはOracleのワーカースレッドからも
    読まれるためロックで保護する。
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Storage file unreadable, starting empty: %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            Path(tmp).replace(self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Any:  # noqa: ANN401
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: Any) -> None:  # noqa: ANN401
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


class SessionRepository:
    """Session レコードの読み書き."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage

    def load(self) -> Session:
        raw = self._storage.get(SESSION_KEY)
        if not raw:
            return Session.inactive()
        try:
            session = Session.model_validate(raw)
        except ValidationError:
            logger.warning("Stored session is corrupt, falling back to inactive")
            return Session.inactive()
        # 非アクティブなら他のフィールドも初期値に揃える
        return session if session.active else Session.inactive()

    def save(self, session: Session) -> None:
        self._storage.set(SESSION_KEY, session.model_dump(mode="json"))

    def clear(self) -> None:
        self._storage.remove(SESSION_KEY)


class CredentialStore:
    """Gemini APIキーの保存先.

    キーは毎回ストレージから読み直す。未設定だったことはキャッシュしないので、
    後から保存されたキーは次の呼び出しから有効になる。
    """

    def __init__(self, storage: KeyValueStorage, env_var: str = API_KEY_ENV) -> None:
        self._storage = storage
        self._env_var = env_var

    def get_api_key(self) -> str | None:
        stored = self._storage.get(API_KEY_KEY)
        if isinstance(stored, str) and stored.strip():
            return stored.strip()
        env_value = os.getenv(self._env_var, "").strip()
        return env_value or None

    def has_api_key(self) -> bool:
        return self.get_api_key() is not None

    def set_api_key(self, api_key: str) -> None:
        key = api_key.strip()
        if not key:
            msg = "api key must not be empty"
            raise ValueError(msg)
        self._storage.set(API_KEY_KEY, key)

    def clear_api_key(self) -> None:
        self._storage.remove(API_KEY_KEY)
