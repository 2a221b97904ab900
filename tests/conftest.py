import asyncio
import dataclasses

import pytest

from back2tab.api.services.controller import EnforcementController, EnforcementTimings
from back2tab.api.services.oracle import (
    ClassificationResult,
    JustificationResult,
    Verdict,
)
from back2tab.api.services.storage import (
    API_KEY_KEY,
    CredentialStore,
    MemoryStorage,
    SessionRepository,
)
from back2tab.api.services.tabs import (
    OverlayUnavailableError,
    Tab,
    TabNotFoundError,
    TabOperationError,
)

SCREENSHOT = "data:image/jpeg;base64,/9j/4AAQSkZJRg=="


class FakeTabHost:
    """メモリ上のブラウザ。呼び出しを記録する"""

    def __init__(self):
        self.tabs: dict[int, Tab] = {}
        self.active_id: int | None = None
        self.overlays: set[int] = set()
        self.messages: list[tuple[int, object]] = []
        self.installed: list[int] = []
        self.created: list[str] = []
        self.removed: list[int] = []
        self.navigations: list[tuple[int, str]] = []
        self.capture_calls = 0
        self.capture_failures = 0
        self.capture_gate: asyncio.Event | None = None
        self.remove_gate: asyncio.Event | None = None
        self.remove_calls = 0
        self.fail_create_urls: set[str] = set()
        self.fail_remove_ids: set[int] = set()
        self._next_id = 1

    def add_tab(self, url, *, active=False, overlay=True, window_id=1):
        tab = Tab(id=self._next_id, url=url, window_id=window_id)
        self._next_id += 1
        self.tabs[tab.id] = tab
        if overlay:
            self.overlays.add(tab.id)
        if active:
            self.active_id = tab.id
        return self._view(tab)

    def _view(self, tab):
        return dataclasses.replace(tab, active=tab.id == self.active_id)

    def messages_for(self, tab_id):
        return [m for tid, m in self.messages if tid == tab_id]

    async def query_tabs(self, *, current_window=True):
        return [self._view(t) for t in self.tabs.values()]

    async def active_tab(self):
        tab = self.tabs.get(self.active_id)
        return self._view(tab) if tab else None

    async def get_tab(self, tab_id):
        if tab_id not in self.tabs:
            raise TabNotFoundError(f"no tab {tab_id}")
        return self._view(self.tabs[tab_id])

    async def update_tab(self, tab_id, *, url=None, active=None):
        if tab_id not in self.tabs:
            raise TabNotFoundError(f"no tab {tab_id}")
        if url is not None:
            self.tabs[tab_id] = dataclasses.replace(self.tabs[tab_id], url=url)
            self.navigations.append((tab_id, url))
        if active:
            self.active_id = tab_id

    async def remove_tab(self, tab_id):
        self.remove_calls += 1
        if self.remove_gate is not None:
            await self.remove_gate.wait()
        if tab_id in self.fail_remove_ids:
            raise TabOperationError("cannot close pinned tab")
        if tab_id not in self.tabs:
            raise TabNotFoundError(f"no tab {tab_id}")
        del self.tabs[tab_id]
        self.overlays.discard(tab_id)
        self.removed.append(tab_id)
        if self.active_id == tab_id:
            self.active_id = None

    async def create_tab(self, url, *, active=False):
        if url in self.fail_create_urls:
            raise TabOperationError("create failed")
        self.created.append(url)
        return self.add_tab(url, active=active)

    async def capture_visible_tab(self, window_id, *, image_format="jpeg", quality=50):
        self.capture_calls += 1
        if self.capture_gate is not None:
            await self.capture_gate.wait()
        if self.capture_failures > 0:
            self.capture_failures -= 1
            raise TabOperationError("tab is being dragged")
        return SCREENSHOT

    async def send_message(self, tab_id, message):
        if tab_id not in self.tabs:
            raise TabNotFoundError(f"no tab {tab_id}")
        if tab_id not in self.overlays:
            raise OverlayUnavailableError("Could not establish connection")
        self.messages.append((tab_id, message))

    async def install_overlay(self, tab_id):
        self.installed.append(tab_id)
        self.overlays.add(tab_id)


class FakeOracle:
    """判定結果を差し替えられる Oracle"""

    def __init__(self):
        self.distraction_result = ClassificationResult(
            verdict=Verdict.RELEVANT, reason="Relevant to your task"
        )
        self.justification_results: dict[str, JustificationResult] = {}
        self.default_justification = JustificationResult(
            accepted=False, reason="Not convincing"
        )
        self.distraction_calls: list[tuple[str, str, str]] = []
        self.justification_calls: list[tuple[str, str, str]] = []
        self.raise_on_classify: Exception | None = None

    def classify_distraction(self, screenshot, goal, url):
        self.distraction_calls.append((screenshot, goal, url))
        if self.raise_on_classify is not None:
            raise self.raise_on_classify
        return self.distraction_result

    def classify_justification(self, justification, goal, url):
        self.justification_calls.append((justification, goal, url))
        return self.justification_results.get(
            justification, self.default_justification
        )

    def is_available(self):
        return True


@pytest.fixture
def zero_timings():
    """待ち時間なしの設定"""
    return EnforcementTimings(settle_delay=0, capture_backoff=0, block_retry_delay=0)


@pytest.fixture
def storage(monkeypatch):
    """APIキー設定済みのストレージ"""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    return MemoryStorage({API_KEY_KEY: "test-key"})


@pytest.fixture
def host():
    return FakeTabHost()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def published():
    return []


@pytest.fixture
def controller(host, oracle, storage, published, zero_timings):
    return EnforcementController(
        host=host,
        oracle=oracle,
        credentials=CredentialStore(storage),
        repository=SessionRepository(storage),
        publish=published.append,
        timings=zero_timings,
    )
