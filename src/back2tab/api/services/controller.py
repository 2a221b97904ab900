"""タブの評価・ブロック・申し立て・タスク復帰を司るコントローラ.

イベント (タブ読み込み完了、申し立て、セッション開始/終了、タスク復帰) ごとに
ハンドラが最後まで走る。異なるタブのハンドラは並行して動きうるが、
同じタブIDの評価は EvaluationTicket により同時に1つまでに制限される。
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, assert_never

from back2tab.api.services.domains import extract_domain, is_internal_url, matches
from back2tab.api.services.oracle import (
    NO_API_KEY,
    ClassificationResult,
    JustificationResult,
)
from back2tab.api.services.storage import CredentialStore, SessionRepository
from back2tab.api.services.tabs import (
    Tab,
    TabHost,
    TabNotFoundError,
    TabOperationError,
)
from back2tab.logger import logger
from back2tab.model.messages import (
    ActivityLog,
    BlockMessage,
    EndSessionMessage,
    ExtensionEvent,
    JustificationResultMessage,
    JustifyTabMessage,
    OverlayMessage,
    ReturnToTaskMessage,
    SessionStatsUpdate,
    StartSessionMessage,
    StatusMessage,
    TabRemovedEvent,
    TabsHiddenMessage,
    TabUpdatedEvent,
    UnblockMessage,
)
from back2tab.model.session import Session

__all__ = [
    "EnforcementController",
    "EnforcementTimings",
    "EvaluationTicket",
    "Oracle",
    "TabState",
    "TicketRegistry",
]

LOAD_COMPLETE = "complete"


class TabState(Enum):
    """セッション中の各タブの状態."""

    UNBLOCKED = "unblocked"
    EVALUATING = "evaluating"
    BLOCKED = "blocked"
    APPEAL_PENDING = "appeal_pending"


@dataclass
class EnforcementTimings:
    """待ち時間とキャプチャ設定 (秒)."""

    settle_delay: float = 2.0
    capture_attempts: int = 3
    capture_backoff: float = 0.2
    block_retry_delay: float = 0.1
    image_format: str = "jpeg"
    image_quality: int = 50


class Oracle(Protocol):
    def classify_distraction(
        self, screenshot: str, goal: str, url: str
    ) -> ClassificationResult: ...

    def classify_justification(
        self, justification: str, goal: str, url: str
    ) -> JustificationResult: ...


@dataclass(frozen=True)
class EvaluationTicket:
    tab_id: int
    epoch: int


class TicketRegistry:
    """評価中のタブIDとチケットの対応表.

    チェックと登録の間に await を挟まないので、イベントループ上では
    同じタブIDのチケットが2つ存在することはない。
    """

    def __init__(self) -> None:
        self._tickets: dict[int, EvaluationTicket] = {}

    def holds(self, tab_id: int) -> bool:
        return tab_id in self._tickets

    def __len__(self) -> int:
        return len(self._tickets)

    @contextmanager
    def acquire(self, tab_id: int, epoch: int) -> Iterator[EvaluationTicket | None]:
        """チケットを取得する。既に評価中なら None を渡す.

        取得したチケットは with ブロックを抜けるときに必ず解放される。
        """
        if tab_id in self._tickets:
            yield None
            return
        ticket = EvaluationTicket(tab_id=tab_id, epoch=epoch)
        self._tickets[tab_id] = ticket
        try:
            yield ticket
        finally:
            self._tickets.pop(tab_id, None)


class EnforcementController:
    """セッション状態の唯一の書き手."""

    def __init__(
        self,
        host: TabHost,
        oracle: Oracle,
        credentials: CredentialStore,
        repository: SessionRepository,
        publish: Callable[[StatusMessage], None],
        timings: EnforcementTimings | None = None,
    ) -> None:
        self.host = host
        self.oracle = oracle
        self.credentials = credentials
        self.repository = repository
        self.timings = timings or EnforcementTimings()
        self._publish = publish
        self._session = Session.inactive()
        self._tickets = TicketRegistry()
        self._states: dict[int, TabState] = {}
        # セッションが切り替わるたびに進める。古いセッションの判定結果は捨てる
        self._epoch = 0
        # 書き込みはワーカースレッドで行い、順序はこのロックで保つ
        self._save_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Query helpers

    @property
    def session(self) -> Session:
        return self._session.model_copy(deep=True)

    def tab_state(self, tab_id: int) -> TabState:
        return self._states.get(tab_id, TabState.UNBLOCKED)

    def is_evaluating(self, tab_id: int) -> bool:
        return self._tickets.holds(tab_id)

    def load(self) -> Session:
        """保存済みのセッションを復元する (サービス起動時)."""
        self._session = self.repository.load()
        if self._session.active:
            logger.info("Resumed session: %s", self._session.goal)
        return self.session

    # ------------------------------------------------------------------
    # Event dispatch

    async def handle(self, event: ExtensionEvent) -> None:
        """拡張機能からのイベントを処理する."""
        if isinstance(event, TabUpdatedEvent):
            await self.on_tab_updated(event.tab_id, event.status)
        elif isinstance(event, TabRemovedEvent):
            self.forget_tab(event.tab_id)
        elif isinstance(event, JustifyTabMessage):
            await self.handle_justification(event.tab_id, event.justification)
        elif isinstance(event, ReturnToTaskMessage):
            await self.return_to_task()
        else:
            assert_never(event)

    def forget_tab(self, tab_id: int) -> None:
        self._states.pop(tab_id, None)

    async def on_tab_updated(self, tab_id: int, status: str) -> None:
        """読み込みが完了した前面タブだけを評価する."""
        if not self._session.active or status != LOAD_COMPLETE:
            return
        try:
            active = await self.host.active_tab()
        except TabOperationError as e:
            logger.warning("Could not query active tab: %s", e)
            return
        if active is None or active.id != tab_id:
            return
        await self.evaluate_tab(active)

    # ------------------------------------------------------------------
    # Evaluation

    async def evaluate_tab(self, tab: Tab) -> None:
        if not self._session.active:
            return
        if is_internal_url(tab.url):
            self._states[tab.id] = TabState.UNBLOCKED
            return

        domain = extract_domain(tab.url)
        allowed = matches(domain, self._session.allowed_domains)

        # 許可ドメインは strict モードでなければ判定せずに通す
        if allowed and not self._session.strict_mode:
            logger.info("Allowed domain (normal mode): %s", domain)
            self._mark_relevant(tab)
            await self._save()
            self._states[tab.id] = TabState.UNBLOCKED
            await self._unblock(tab.id)
            return

        epoch = self._epoch
        goal = self._session.goal
        with self._tickets.acquire(tab.id, epoch) as ticket:
            if ticket is None:
                logger.info("Already evaluating tab: %s", tab.id)
                return
            previous = self.tab_state(tab.id)
            self._states[tab.id] = TabState.EVALUATING
            try:
                mode = " [strict mode]" if allowed else ""
                logger.info("Evaluating%s: %s", mode, domain)
                result = await self._classify(tab, goal)
            finally:
                if epoch == self._epoch:
                    self._states[tab.id] = previous

        if result is not None:
            await self._apply_verdict(tab, domain, result, epoch)

    async def _classify(self, tab: Tab, goal: str) -> ClassificationResult | None:
        """スクリーンショットを撮って Oracle に問い合わせる。中止時は None."""
        # 描画が終わる前のページを判定しないように待つ
        await asyncio.sleep(self.timings.settle_delay)

        screenshot = await self._capture(tab)
        if screenshot is None:
            return None

        if not self.credentials.has_api_key():
            logger.info("No API key, skipping evaluation")
            return None

        return await asyncio.to_thread(
            self.oracle.classify_distraction, screenshot, goal, tab.url or ""
        )

    async def _capture(self, tab: Tab) -> str | None:
        last_error: TabOperationError | None = None
        for attempt in range(self.timings.capture_attempts):
            if attempt > 0:
                await asyncio.sleep(self.timings.capture_backoff)
            try:
                return await self.host.capture_visible_tab(
                    tab.window_id,
                    image_format=self.timings.image_format,
                    quality=self.timings.image_quality,
                )
            except TabOperationError as e:
                last_error = e
        logger.warning(
            "Screenshot failed after %d attempts: %s",
            self.timings.capture_attempts,
            last_error,
        )
        return None

    async def _apply_verdict(
        self, tab: Tab, domain: str, result: ClassificationResult, epoch: int
    ) -> None:
        if epoch != self._epoch or not self._session.active:
            logger.info("Session ended during evaluation, discarding: %s", domain)
            return
        if result.error is not None:
            logger.error("Evaluation error: %s", result.error)
            return

        if result.is_distraction:
            logger.info("Blocking distraction: %s - %s", domain, result.reason)
            self._session.blocked_count += 1
            await self._save()
            if epoch != self._epoch:
                return
            self._states[tab.id] = TabState.BLOCKED
            self._publish(SessionStatsUpdate(blocked_count=self._session.blocked_count))
            self._publish(
                ActivityLog(domain=domain, status="blocked", reason=result.reason)
            )
            await self._block(tab.id, result.reason)
        else:
            logger.info("Relevant to task: %s", domain)
            self._mark_relevant(tab)
            await self._save()
            if epoch != self._epoch:
                return
            self._states[tab.id] = TabState.UNBLOCKED
            self._publish(
                ActivityLog(domain=domain, status="allowed", reason=result.reason)
            )
            await self._unblock(tab.id)

    # ------------------------------------------------------------------
    # Overlay delivery

    async def _block(self, tab_id: int, reason: str) -> None:
        """BLOCK を送る。オーバーレイが無ければ入れてから1回だけ再送する."""
        message = BlockMessage(reason=reason)
        try:
            await self.host.send_message(tab_id, message)
        except TabNotFoundError:
            logger.warning("Tab %s closed before it could be blocked", tab_id)
            return
        except TabOperationError:
            pass
        else:
            return

        try:
            await self.host.install_overlay(tab_id)
            await asyncio.sleep(self.timings.block_retry_delay)
            await self.host.send_message(tab_id, message)
        except TabOperationError as e:
            logger.error("Could not block tab %s: %s", tab_id, e)

    async def _unblock(self, tab_id: int) -> None:
        """UNBLOCK は冪等。オーバーレイが無いタブでは何もしない."""
        await self._send_quietly(tab_id, UnblockMessage())

    async def _send_quietly(self, tab_id: int, message: OverlayMessage) -> None:
        try:
            await self.host.send_message(tab_id, message)
        except TabOperationError as e:
            logger.debug("Could not deliver %s to tab %s: %s", message.action, tab_id, e)

    # ------------------------------------------------------------------
    # Justification appeal

    async def handle_justification(self, tab_id: int, justification: str) -> None:
        """ブロック中のタブからの申し立てを Oracle に判定させる."""
        if not self._session.active:
            await self._unblock(tab_id)
            return
        try:
            tab = await self.host.get_tab(tab_id)
        except TabOperationError as e:
            logger.warning("Justification for unknown tab %s: %s", tab_id, e)
            return

        epoch = self._epoch
        goal = self._session.goal
        self._states[tab_id] = TabState.APPEAL_PENDING

        if self.credentials.has_api_key():
            result = await asyncio.to_thread(
                self.oracle.classify_justification, justification, goal, tab.url or ""
            )
        else:
            result = JustificationResult.failed(NO_API_KEY)

        if epoch != self._epoch or not self._session.active:
            logger.info("Session ended during appeal for tab %s", tab_id)
            return

        domain = extract_domain(tab.url)
        if result.accepted:
            logger.info("Justification accepted: %s - %s", domain, result.reason)
            self._mark_relevant(tab)
            await self._save()
            if epoch != self._epoch:
                return
            self._states[tab_id] = TabState.UNBLOCKED
            self._publish(
                ActivityLog(domain=domain, status="allowed", reason=result.reason)
            )
            await self._unblock(tab_id)
        else:
            if result.error is not None:
                logger.warning("Justification error: %s", result.error)
            logger.info("Justification rejected: %s - %s", domain, result.reason)
            self._states[tab_id] = TabState.BLOCKED

        await self._send_quietly(
            tab_id,
            JustificationResultMessage(accepted=result.accepted, reason=result.reason),
        )

    # ------------------------------------------------------------------
    # Return to task

    async def return_to_task(self) -> None:
        """最後に関連ありと判定された場所へ戻る."""
        target_url = self._session.last_relevant_url
        if not target_url:
            return
        target_id = self._session.last_relevant_tab_id

        try:
            current = await self.host.active_tab()
            if current is None:
                logger.warning("No active tab to return from")
                return

            same_domain = extract_domain(current.url) == extract_domain(target_url)
            if not same_domain and target_id is not None and target_id != current.id:
                try:
                    await self.host.get_tab(target_id)
                except TabNotFoundError:
                    logger.info("Last tab gone, navigating to URL: %s", target_url)
                else:
                    await self.host.update_tab(target_id, active=True)
                    await self.host.remove_tab(current.id)
                    self.forget_tab(current.id)
                    logger.info("Switched to last relevant tab and closed current")
                    return

            await self.host.update_tab(current.id, url=target_url)
            logger.info("Navigating to last relevant URL: %s", target_url)
        except TabOperationError as e:
            logger.warning("Failed to return to task: %s", e)

    # ------------------------------------------------------------------
    # Session lifecycle

    async def start_session(
        self,
        goal: str,
        allowed_domains: str | list[str] | None = None,
        *,
        strict_mode: bool = False,
    ) -> Session:
        """セッションを開始し、許可リスト外のタブを閉じる."""
        if self._session.active:
            logger.info("Replacing active session: %s", self._session.goal)
            await self.end_session()

        self._epoch += 1
        epoch = self._epoch
        self._states.clear()
        self._session = Session.begin(goal, allowed_domains, strict_mode=strict_mode)
        await self._save()
        logger.info("Session started: %s", goal)
        self._publish(StartSessionMessage(session=self.session))

        await self._hide_irrelevant_tabs(epoch)
        return self.session

    async def _hide_irrelevant_tabs(self, epoch: int) -> None:
        allowed = self._session.allowed_domains
        if not allowed:
            logger.info("No allowed domains specified, keeping all tabs visible")
            return

        try:
            tabs = await self.host.query_tabs(current_window=True)
        except TabOperationError as e:
            logger.error("Error listing tabs: %s", e)
            tabs = []

        hidden: list[str] = []
        candidate: Tab | None = None
        for tab in tabs:
            if epoch != self._epoch:
                break
            if is_internal_url(tab.url):
                continue
            if matches(extract_domain(tab.url), allowed):
                if candidate is None or (tab.active and not candidate.active):
                    candidate = tab
                continue
            try:
                await self.host.remove_tab(tab.id)
            except TabOperationError as e:
                logger.warning("Could not hide tab %s: %s", tab.id, e)
                continue
            logger.info("Hiding tab: %s", extract_domain(tab.url))
            hidden.append(tab.url or "")

        if epoch != self._epoch:
            # 途中でセッションが終わったので閉じたタブはすぐ戻す
            await self._restore_tabs(hidden)
            return

        if candidate is not None:
            self._mark_relevant(candidate)
        self._session.hidden_tab_urls = hidden
        await self._save()
        logger.info("Hidden %d tabs", len(hidden))
        self._publish(TabsHiddenMessage(count=len(hidden)))

    async def end_session(self) -> int:
        """全オーバーレイを消し、隠したタブを戻してセッションを初期化する.

        Returns:
            int: 復元できたタブの数

        """
        ending = self._session
        hidden = list(ending.hidden_tab_urls)
        self._epoch += 1
        self._session = Session.inactive()
        self._states.clear()
        await self._clear_saved()

        try:
            await self._close_all_overlays()
            restored = await self._restore_tabs(hidden)
        finally:
            logger.info("Session ended: %s", ending.goal)
            self._publish(EndSessionMessage())
        return restored

    async def _close_all_overlays(self) -> None:
        try:
            tabs = await self.host.query_tabs(current_window=False)
        except TabOperationError as e:
            logger.error("Error closing overlays: %s", e)
            return
        for tab in tabs:
            await self._unblock(tab.id)

    async def _restore_tabs(self, urls: list[str]) -> int:
        if urls:
            logger.info("Restoring %d tabs", len(urls))
        restored = 0
        for url in urls:
            try:
                await self.host.create_tab(url, active=False)
            except TabOperationError as e:
                logger.error("Error restoring tab %s: %s", url, e)
            else:
                restored += 1
        return restored

    # ------------------------------------------------------------------
    # Persistence

    def _mark_relevant(self, tab: Tab) -> None:
        self._session.last_relevant_tab_id = tab.id
        self._session.last_relevant_url = tab.url

    async def _save(self) -> None:
        """現在のセッションを保存する (ファイル書き込みはスレッドで)."""
        async with self._save_lock:
            snapshot = self._session.model_copy(deep=True)
            await asyncio.to_thread(self.repository.save, snapshot)

    async def _clear_saved(self) -> None:
        async with self._save_lock:
            await asyncio.to_thread(self.repository.clear)
