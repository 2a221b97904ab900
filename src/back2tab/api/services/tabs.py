"""ブラウザのタブ操作プリミティブのインターフェース.

実体はブラウザ拡張機能側にあり、すべての操作は非同期かつ失敗しうる。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from back2tab.model.messages import OverlayMessage

__all__ = [
    "OverlayUnavailableError",
    "Tab",
    "TabOperationError",
    "TabHost",
    "TabHostUnavailableError",
    "TabNotFoundError",
]


class TabOperationError(Exception):
    """タブ操作の失敗."""


class TabNotFoundError(TabOperationError):
    """指定したタブが既に存在しない."""


class OverlayUnavailableError(TabOperationError):
    """タブにオーバーレイ (content script) がまだ入っていない."""


class TabHostUnavailableError(TabOperationError):
    """拡張機能が接続されていない."""


@dataclass(frozen=True)
class Tab:
    id: int
    url: str | None = None
    window_id: int | None = None
    active: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Tab:
        return cls(
            id=int(payload["id"]),
            url=payload.get("url"),
            window_id=payload.get("window_id"),
            active=bool(payload.get("active", False)),
        )


class TabHost(Protocol):
    async def query_tabs(self, *, current_window: bool = True) -> list[Tab]: ...

    async def active_tab(self) -> Tab | None: ...

    async def get_tab(self, tab_id: int) -> Tab: ...

    async def update_tab(
        self, tab_id: int, *, url: str | None = None, active: bool | None = None
    ) -> None: ...

    async def remove_tab(self, tab_id: int) -> None: ...

    async def create_tab(self, url: str, *, active: bool = False) -> Tab: ...

    async def capture_visible_tab(
        self, window_id: int | None, *, image_format: str = "jpeg", quality: int = 50
    ) -> str: ...

    async def send_message(self, tab_id: int, message: OverlayMessage) -> None: ...

    async def install_overlay(self, tab_id: int) -> None: ...
