"""FastAPI app: ステータスパネル用のセッション操作APIと拡張機能の接続口."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, field_validator

from back2tab.api.services.bridge import ExtensionBridge
from back2tab.api.services.controller import (
    EnforcementController,
    EnforcementTimings,
    Oracle,
)
from back2tab.api.services.domains import extract_domain, is_internal_url, strip_www
from back2tab.api.services.oracle import create_oracle
from back2tab.api.services.status import StatusBroadcaster
from back2tab.api.services.storage import (
    CredentialStore,
    JsonFileStorage,
    KeyValueStorage,
    SessionRepository,
    default_data_dir,
)
from back2tab.api.services.tabs import TabOperationError
from back2tab.logger import LOG_FILE, logger
from back2tab.model.messages import ExtensionEvent

# --- ロギング ---


def _get_log_tail(max_lines: int = 200) -> list[str]:
    """ログファイルの末尾を取得する。読めなければ空リスト."""
    try:
        with LOG_FILE.open(encoding="utf-8", errors="ignore") as f:
            lines = f.read().splitlines()
    except OSError:
        return []
    return lines[-max_lines:]


# --- Pydanticモデル定義 ---


class StartSessionRequest(BaseModel):
    """セッション開始リクエストのモデル."""

    goal: str
    allowed_domains: list[str] | str = []
    strict_mode: bool = False

    @field_validator("goal")
    @classmethod
    def goal_must_not_be_empty(cls, v: str) -> str:
        """作業内容が入力されていること"""
        if not v or not v.strip():
            msg = "goal must not be empty"
            raise ValueError(msg)
        return v.strip()


class CredentialUpdate(BaseModel):
    """APIキー保存リクエストのモデル."""

    api_key: str

    @field_validator("api_key")
    @classmethod
    def api_key_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            msg = "api_key must not be empty"
            raise ValueError(msg)
        return v.strip()


# --- アプリケーションのライフサイクル ---


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """起動時に保存済みのセッションを復元する."""
    controller: EnforcementController = app.state.controller
    session = controller.load()
    logger.info(
        "Back2Tab started. Session active: %s | API key configured: %s",
        session.active,
        controller.credentials.has_api_key(),
    )
    yield
    for task in list(app.state.event_tasks):
        task.cancel()


async def _handle_event(controller: EnforcementController, event: ExtensionEvent) -> None:
    try:
        await controller.handle(event)
    except Exception:
        logger.exception("Unhandled error while processing %s", event.action)


def _controller(request: Request) -> EnforcementController:
    return request.app.state.controller


# --- App factory ---


def create_app(
    storage: KeyValueStorage | None = None,
    oracle: Oracle | None = None,
    timings: EnforcementTimings | None = None,
    bridge: ExtensionBridge | None = None,
) -> FastAPI:
    """アプリを組み立てる。依存はテストで差し替えられる."""
    app = FastAPI(
        title="Back2Tab",
        description="Goal-driven tab blocking for the Back2Tab browser extension",
        lifespan=lifespan,
    )

    storage = storage or JsonFileStorage(default_data_dir() / "storage.json")
    credentials = CredentialStore(storage)
    broadcaster = StatusBroadcaster()
    bridge = bridge or ExtensionBridge()
    app.state.broadcaster = broadcaster
    app.state.bridge = bridge
    app.state.event_tasks = set()
    app.state.controller = EnforcementController(
        host=bridge,
        oracle=oracle or create_oracle(credentials),
        credentials=credentials,
        repository=SessionRepository(storage),
        publish=broadcaster.publish,
        timings=timings,
    )

    # --- セッション操作 ---

    @app.post("/session/start")
    async def start_session(req: StartSessionRequest, request: Request) -> dict[str, Any]:
        """フォーカスセッションを開始する."""
        controller = _controller(request)
        if not controller.credentials.has_api_key():
            raise HTTPException(status_code=400, detail="API key not configured")
        session = await controller.start_session(
            req.goal, req.allowed_domains, strict_mode=req.strict_mode
        )
        return {"ok": True, "session": session.model_dump(mode="json")}

    @app.post("/session/end")
    async def end_session(request: Request) -> dict[str, Any]:
        """セッションを終了し、隠したタブを戻す."""
        restored = await _controller(request).end_session()
        return {"ok": True, "restored": restored}

    @app.get("/session")
    async def get_session(request: Request) -> dict[str, Any]:
        return {"session": _controller(request).session.model_dump(mode="json")}

    @app.get("/session/suggested-domain")
    async def suggested_domain(request: Request) -> dict[str, Any]:
        """許可リストの初期値として、前面タブのドメインを返す."""
        try:
            tab = await request.app.state.bridge.active_tab()
        except TabOperationError as e:
            logger.info("Could not get current tab domain: %s", e)
            return {"domain": None}
        if tab is None or is_internal_url(tab.url):
            return {"domain": None}
        return {"domain": strip_www(extract_domain(tab.url)) or None}

    @app.get("/status")
    async def get_status(request: Request) -> dict[str, Any]:
        """現在のセッション状態の要約."""
        session = _controller(request).session
        return {
            "active": session.active,
            "goal": session.goal,
            "blocked_count": session.blocked_count,
            "elapsed": session.elapsed_label(),
            "extension_connected": request.app.state.bridge.connected,
        }

    # --- APIキー ---

    @app.post("/credential")
    async def save_credential(req: CredentialUpdate, request: Request) -> dict[str, Any]:
        _controller(request).credentials.set_api_key(req.api_key)
        logger.info("API key saved")
        return {"ok": True}

    @app.get("/credential")
    async def credential_status(request: Request) -> dict[str, Any]:
        return {"configured": _controller(request).credentials.has_api_key()}

    @app.delete("/credential")
    async def clear_credential(request: Request) -> dict[str, Any]:
        _controller(request).credentials.clear_api_key()
        return {"ok": True}

    # --- モニタリング用 ---

    @app.get("/activity")
    async def get_activity(request: Request) -> dict[str, Any]:
        logs = request.app.state.broadcaster.recent_activity()
        return {"logs": [log.model_dump(mode="json") for log in logs]}

    @app.get("/api/logs")
    async def get_logs() -> dict[str, Any]:
        return {"logs": _get_log_tail()}

    @app.websocket("/status/ws")
    async def status_socket(websocket: WebSocket) -> None:
        """ステータスパネルへ通知をそのまま流す."""
        await websocket.accept()
        status: StatusBroadcaster = websocket.app.state.broadcaster
        queue = status.subscribe()
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message.model_dump(mode="json"))
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            status.unsubscribe(queue)

    # --- 拡張機能 ---

    @app.websocket("/extension/ws")
    async def extension_socket(websocket: WebSocket) -> None:
        """拡張機能との RPC とイベント受信.

        イベントは別タスクで処理し、その間もこのループは RPC の応答を受け取り続ける。
        """
        await websocket.accept()
        ext: ExtensionBridge = websocket.app.state.bridge
        controller: EnforcementController = websocket.app.state.controller
        tasks: set[asyncio.Task[None]] = websocket.app.state.event_tasks
        ext.attach(websocket)
        logger.info("Extension connected")
        try:
            while True:
                try:
                    payload = await websocket.receive_json()
                except ValueError as e:
                    logger.warning("Malformed frame from extension: %s", e)
                    continue
                if not isinstance(payload, dict):
                    logger.warning("Unexpected frame from extension: %r", payload)
                    continue
                event = ext.dispatch(payload)
                if event is not None:
                    task = asyncio.create_task(_handle_event(controller, event))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
        except WebSocketDisconnect:
            logger.info("Extension disconnected")
        finally:
            ext.detach(websocket)

    return app


app = create_app()
