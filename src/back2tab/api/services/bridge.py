"""拡張機能との WebSocket 上の JSON RPC で TabHost を実装する.

サービス → 拡張機能:
    {"type": "call", "id": 1, "method": "get_tab", "params": {"tab_id": 3}}
拡張機能 → サービス:
    {"type": "result", "id": 1, "result": {...}}
    {"type": "error", "id": 1, "error": {"kind": "tab_not_found", "message": "..."}}
    {"type": "event", "event": {"action": "TAB_UPDATED", "tab_id": 3, ...}}
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Protocol

from pydantic import ValidationError

from back2tab.api.services.tabs import (
    OverlayUnavailableError,
    Tab,
    TabHostUnavailableError,
    TabNotFoundError,
    TabOperationError,
)
from back2tab.logger import logger
from back2tab.model.messages import (
    ExtensionEvent,
    OverlayMessage,
    parse_extension_event,
)

__all__ = ["ExtensionBridge", "JsonSocket"]

DEFAULT_CALL_TIMEOUT = 10.0

_ERROR_KINDS: dict[str, type[TabOperationError]] = {
    "tab_not_found": TabNotFoundError,
    "no_overlay": OverlayUnavailableError,
}


def _error_from_payload(error: object) -> TabOperationError:
    """RPC のエラー応答を例外にする。形が崩れていても汎用のエラーにする."""
    if not isinstance(error, dict):
        return TabOperationError(str(error) if error else "tab operation failed")
    kind = error.get("kind")
    exc_type = TabOperationError
    if isinstance(kind, str):
        exc_type = _ERROR_KINDS.get(kind, TabOperationError)
    return exc_type(str(error.get("message") or "tab operation failed"))


class JsonSocket(Protocol):
    async def send_json(self, data: Any) -> None: ...  # noqa: ANN401


class ExtensionBridge:
    """接続中の拡張機能1つに対する RPC クライアント."""

    def __init__(self, call_timeout: float = DEFAULT_CALL_TIMEOUT) -> None:
        self.call_timeout = call_timeout
        self._socket: JsonSocket | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._socket is not None

    def attach(self, socket: JsonSocket) -> None:
        if self._socket is not None:
            logger.info("Extension reconnected, replacing previous socket")
            self._fail_pending("extension reconnected")
        self._socket = socket

    def detach(self, socket: JsonSocket) -> None:
        if self._socket is socket:
            self._socket = None
            self._fail_pending("extension disconnected")

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TabHostUnavailableError(reason))
        self._pending.clear()

    def dispatch(self, payload: dict[str, Any]) -> ExtensionEvent | None:
        """受信メッセージを処理する。イベントなら ExtensionEvent を返す."""
        kind = payload.get("type")
        if kind == "event":
            try:
                return parse_extension_event(payload.get("event"))
            except ValidationError as e:
                logger.warning("Malformed extension event: %s", e)
                return None

        if kind not in ("result", "error"):
            logger.warning("Unknown message from extension: %r", kind)
            return None

        call_id = payload.get("id")
        if not isinstance(call_id, int):
            logger.warning("Reply without a call id: %r", call_id)
            return None
        future = self._pending.pop(call_id, None)
        if future is None or future.done():
            logger.debug("Reply for unknown call: %r", call_id)
            return None

        if kind == "result":
            future.set_result(payload.get("result"))
        else:
            future.set_exception(_error_from_payload(payload.get("error")))
        return None

    async def _call(self, method: str, **params: Any) -> Any:  # noqa: ANN401
        socket = self._socket
        if socket is None:
            msg = "extension is not connected"
            raise TabHostUnavailableError(msg)

        call_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        try:
            await socket.send_json(
                {"type": "call", "id": call_id, "method": method, "params": params}
            )
            return await asyncio.wait_for(future, timeout=self.call_timeout)
        except TimeoutError as e:
            msg = f"{method} timed out"
            raise TabOperationError(msg) from e
        finally:
            self._pending.pop(call_id, None)

    # --- TabHost ---

    async def query_tabs(self, *, current_window: bool = True) -> list[Tab]:
        result = await self._call("query_tabs", current_window=current_window)
        return [Tab.from_payload(item) for item in result or []]

    async def active_tab(self) -> Tab | None:
        result = await self._call("active_tab")
        return Tab.from_payload(result) if result else None

    async def get_tab(self, tab_id: int) -> Tab:
        result = await self._call("get_tab", tab_id=tab_id)
        if not result:
            msg = f"tab {tab_id} not found"
            raise TabNotFoundError(msg)
        return Tab.from_payload(result)

    async def update_tab(
        self, tab_id: int, *, url: str | None = None, active: bool | None = None
    ) -> None:
        changes: dict[str, Any] = {}
        if url is not None:
            changes["url"] = url
        if active is not None:
            changes["active"] = active
        await self._call("update_tab", tab_id=tab_id, **changes)

    async def remove_tab(self, tab_id: int) -> None:
        await self._call("remove_tab", tab_id=tab_id)

    async def create_tab(self, url: str, *, active: bool = False) -> Tab:
        result = await self._call("create_tab", url=url, active=active)
        return Tab.from_payload(result)

    async def capture_visible_tab(
        self, window_id: int | None, *, image_format: str = "jpeg", quality: int = 50
    ) -> str:
        result = await self._call(
            "capture_visible_tab",
            window_id=window_id,
            format=image_format,
            quality=quality,
        )
        if not isinstance(result, str) or not result:
            msg = "empty screenshot"
            raise TabOperationError(msg)
        return result

    async def send_message(self, tab_id: int, message: OverlayMessage) -> None:
        await self._call("send_message", tab_id=tab_id, message=message.model_dump())

    async def install_overlay(self, tab_id: int) -> None:
        await self._call("install_overlay", tab_id=tab_id)
