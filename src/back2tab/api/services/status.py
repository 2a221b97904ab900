"""ステータスパネル向けの通知配信."""

from __future__ import annotations

import asyncio
from collections import deque

from back2tab.logger import logger
from back2tab.model.messages import ActivityLog, EndSessionMessage, StatusMessage

__all__ = ["StatusBroadcaster"]

ACTIVITY_LOG_LIMIT = 10
SUBSCRIBER_QUEUE_SIZE = 100


class StatusBroadcaster:
    """コントローラからの通知を購読者 (WebSocket) に配る.

    購読者がいなくても publish は失敗しない。直近のアクティビティログは
    パネルを開き直したときのために保持しておく。
    """

    def __init__(self, activity_limit: int = ACTIVITY_LOG_LIMIT) -> None:
        self._activity: deque[ActivityLog] = deque(maxlen=activity_limit)
        self._subscribers: set[asyncio.Queue[StatusMessage]] = set()

    def publish(self, message: StatusMessage) -> None:
        if isinstance(message, ActivityLog):
            self._activity.append(message)
        elif isinstance(message, EndSessionMessage):
            self._activity.clear()

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Status subscriber is lagging, dropping %s", message.action)

    def subscribe(self) -> asyncio.Queue[StatusMessage]:
        queue: asyncio.Queue[StatusMessage] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusMessage]) -> None:
        self._subscribers.discard(queue)

    def recent_activity(self) -> list[ActivityLog]:
        """新しい順のアクティビティログ."""
        return list(reversed(self._activity))
