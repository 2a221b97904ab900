"""コントローラ・オーバーレイ・ステータスパネル間のメッセージ定義.

各メッセージは `action` フィールドで判別されるタグ付きの型で、
受信側は Union 全体を網羅的に処理する。
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from back2tab.model.session import Session

__all__ = [
    "ActivityLog",
    "BlockMessage",
    "EndSessionMessage",
    "ExtensionEvent",
    "JustificationResultMessage",
    "JustifyTabMessage",
    "OverlayMessage",
    "ReturnToTaskMessage",
    "SessionStatsUpdate",
    "StartSessionMessage",
    "StatusMessage",
    "TabRemovedEvent",
    "TabUpdatedEvent",
    "TabsHiddenMessage",
    "UnblockMessage",
    "parse_extension_event",
]


# --- コントローラ → タブ (オーバーレイ) ---


class BlockMessage(BaseModel):
    action: Literal["BLOCK"] = "BLOCK"
    reason: str = ""


class UnblockMessage(BaseModel):
    action: Literal["UNBLOCK"] = "UNBLOCK"


class JustificationResultMessage(BaseModel):
    action: Literal["JUSTIFICATION_RESULT"] = "JUSTIFICATION_RESULT"
    accepted: bool
    reason: str = ""


OverlayMessage = BlockMessage | UnblockMessage | JustificationResultMessage


# --- 拡張機能 → コントローラ ---


class TabUpdatedEvent(BaseModel):
    """タブの読み込み状態の変化 (status == "complete" で評価する)."""

    action: Literal["TAB_UPDATED"] = "TAB_UPDATED"
    tab_id: int
    status: str = "complete"


class TabRemovedEvent(BaseModel):
    action: Literal["TAB_REMOVED"] = "TAB_REMOVED"
    tab_id: int


class JustifyTabMessage(BaseModel):
    """ブロック画面からの「このページが必要」申し立て."""

    action: Literal["JUSTIFY_TAB"] = "JUSTIFY_TAB"
    tab_id: int
    justification: str


class ReturnToTaskMessage(BaseModel):
    action: Literal["RETURN_TO_TASK"] = "RETURN_TO_TASK"


ExtensionEvent = Annotated[
    TabUpdatedEvent | TabRemovedEvent | JustifyTabMessage | ReturnToTaskMessage,
    Field(discriminator="action"),
]

_extension_event_adapter: TypeAdapter[ExtensionEvent] = TypeAdapter(ExtensionEvent)


def parse_extension_event(payload: object) -> ExtensionEvent:
    """受信したJSONを ExtensionEvent に変換する (不正なら ValidationError)."""
    return _extension_event_adapter.validate_python(payload)


# --- コントローラ → ステータスパネル ---


class StartSessionMessage(BaseModel):
    action: Literal["START_SESSION"] = "START_SESSION"
    session: Session


class EndSessionMessage(BaseModel):
    action: Literal["END_SESSION"] = "END_SESSION"


class SessionStatsUpdate(BaseModel):
    action: Literal["SESSION_STATS_UPDATE"] = "SESSION_STATS_UPDATE"
    blocked_count: int


def _clock() -> str:
    return datetime.now().astimezone().strftime("%H:%M")


class ActivityLog(BaseModel):
    action: Literal["ACTIVITY_LOG"] = "ACTIVITY_LOG"
    domain: str
    status: Literal["blocked", "allowed"]
    reason: str = ""
    time: str = Field(default_factory=_clock)


class TabsHiddenMessage(BaseModel):
    action: Literal["TABS_HIDDEN"] = "TABS_HIDDEN"
    count: int


StatusMessage = (
    StartSessionMessage
    | EndSessionMessage
    | SessionStatsUpdate
    | ActivityLog
    | TabsHiddenMessage
)
