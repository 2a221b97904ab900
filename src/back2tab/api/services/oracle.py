"""Gemini API による「脱線判定」と「申し立て判定」."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import requests

from back2tab.api.services.storage import CredentialStore
from back2tab.logger import logger

__all__ = [
    "ClassificationOracle",
    "ClassificationResult",
    "JustificationResult",
    "Verdict",
    "create_oracle",
    "parse_oracle_json",
]

HTTP_OK = 200
DEFAULT_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-2.5-flash"
NO_API_KEY = "No API key configured"

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-z+.-]+;base64,", re.IGNORECASE)
_CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class Verdict(Enum):
    """タブの判定結果."""

    DISTRACTION = "distraction"
    RELEVANT = "relevant"


@dataclass(frozen=True)
class ClassificationResult:
    """脱線判定の結果。verdict と error はどちらか一方だけが入る."""

    verdict: Verdict | None = None
    reason: str = ""
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> ClassificationResult:
        return cls(error=error)

    @property
    def is_distraction(self) -> bool:
        return self.verdict is Verdict.DISTRACTION


@dataclass(frozen=True)
class JustificationResult:
    """申し立て判定の結果."""

    accepted: bool = False
    reason: str = ""
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> JustificationResult:
        return cls(accepted=False, reason=error, error=error)


class _OracleError(Exception):
    """通信やレスポンス形式の問題。モジュール外には出さない."""


def _first_balanced_object(text: str) -> str | None:
    """テキスト中の最初の対応の取れた {...} を返す (文字列中の括弧は無視)."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def parse_oracle_json(text: str | None) -> dict[str, Any] | None:
    """LLM の応答テキストから JSON オブジェクトを取り出す.

    1. そのまま JSON として読む
    2. ```json ... ``` のようなコードフェンスを取り除く
    3. 最初に見つかった {...} を読む
    どれも失敗した場合は None を返し、例外は投げない。
    """
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    cleaned = _CODE_FENCE.sub("", text).strip()
    candidate = cleaned
    while candidate:
        obj = _first_balanced_object(candidate)
        if obj is None:
            return None
        try:
            parsed = json.loads(obj)
        except json.JSONDecodeError:
            # 次の { から探し直す
            candidate = candidate[candidate.find(obj) + 1 :]
            continue
        if isinstance(parsed, dict):
            return parsed
        return None
    return None


class ClassificationOracle:
    """Gemini generateContent API クライアント.

    リトライはしない (リトライ方針はコントローラ側の責務)。
    通信エラー・APIキー未設定・解析不能な応答はすべてエラー結果として返す。
    """

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str = DEFAULT_API_URL,
        model_name: str = DEFAULT_MODEL,
        timeout: float = 20.0,
    ) -> None:
        """初期化

        Args:
        credentials: APIキーの取得元 (呼び出しのたびに読む)
        base_url: Gemini API のモデル一覧URL
        model_name: 使用するモデル名 (例: gemini-2.5-flash)
        timeout: APIタイムアウト(秒)

        """
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout
        self.generate_url = f"{self.base_url}/{self.model_name}:generateContent"

    def is_available(self) -> bool:
        """APIキーが設定済みでモデル情報が取得できるか."""
        api_key = self.credentials.get_api_key()
        if not api_key:
            return False
        try:
            response = requests.get(
                f"{self.base_url}/{self.model_name}",
                params={"key": api_key},
                timeout=5,
            )
        except requests.RequestException:
            return False
        else:
            status_code: int = response.status_code
            return status_code == HTTP_OK

    def _build_distraction_prompt(self, goal: str, url: str) -> str:
        return f"""
User task: "{goal}"
URL: {url}

Is this screenshot a distraction from their task?
RELEVANT means it helps their work (research, tools, reference).
A DISTRACTION is social media, entertainment, news, shopping, etc.
Be reasonable - if it could help their work, it's not a distraction.

Reply with JSON only:
{{"isDistraction": true, "reason": "why"}}
or
{{"isDistraction": false, "reason": "why"}}
""".strip()

    def _build_justification_prompt(
        self, justification: str, goal: str, url: str
    ) -> str:
        return f"""
A page was blocked as a distraction, but the user says they need it.

User's Work Task: {goal}
Blocked URL: {url}
User's Justification: "{justification}"

Evaluate if their justification is reasonable and the page could actually
help their work. Be fair - if they make a reasonable case, accept it.
Reject if the justification is a weak excuse or clearly just wanting
entertainment.

Respond ONLY with valid JSON (no markdown):
{{"accepted": true/false, "reason": "Brief explanation to show user"}}
""".strip()

    def _generate(self, api_key: str, payload: dict[str, Any]) -> str:
        """generateContent を呼び出し、最初の候補のテキストを返す."""
        try:
            response = requests.post(
                self.generate_url,
                params={"key": api_key},
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        except requests.exceptions.Timeout as e:
            msg = "LLM timeout"
            raise _OracleError(msg) from e
        except requests.RequestException as e:
            msg = f"LLM request failed: {e}"
            raise _OracleError(msg) from e

        if response.status_code != HTTP_OK:
            message = "API error"
            try:
                body = response.json()
            except ValueError:
                body = None
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                message = error.get("message") or message
            raise _OracleError(message)

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            msg = "No response from AI"
            raise _OracleError(msg) from e
        if not isinstance(text, str) or not text.strip():
            msg = "No response from AI"
            raise _OracleError(msg)
        return text

    def classify_distraction(
        self, screenshot: str, goal: str, url: str
    ) -> ClassificationResult:
        """スクリーンショットがゴールに対して脱線かどうかを判定する.

        Args:
            screenshot: base64 の JPEG (data URL 形式でも可)
            goal: ユーザーの作業内容
            url: 判定対象タブのURL

        Returns:
            ClassificationResult: 判定 (失敗時は error 付き)

        """
        api_key = self.credentials.get_api_key()
        if not api_key:
            return ClassificationResult.failed(NO_API_KEY)

        image_data = _DATA_URL_PREFIX.sub("", screenshot)
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": self._build_distraction_prompt(goal, url)},
                        {
                            "inline_data": {
                                "mime_type": "image/jpeg",
                                "data": image_data,
                            },
                        },
                    ],
                },
            ],
            "generationConfig": {"temperature": 0.1},
        }

        try:
            text = self._generate(api_key, payload)
        except _OracleError as e:
            return ClassificationResult.failed(str(e))

        data = parse_oracle_json(text)
        if data is None:
            logger.warning("Could not parse distraction response: %r", text)
            return ClassificationResult.failed("Could not parse response")

        is_distraction = data.get("isDistraction")
        if not isinstance(is_distraction, bool):
            logger.warning("Distraction response lacks a verdict: %r", text)
            return ClassificationResult.failed("Response missing isDistraction")

        reason = str(data.get("reason") or "LLM decision")
        verdict = Verdict.DISTRACTION if is_distraction else Verdict.RELEVANT
        return ClassificationResult(verdict=verdict, reason=reason)

    def classify_justification(
        self, justification: str, goal: str, url: str
    ) -> JustificationResult:
        """ブロックされたページへの申し立てが妥当か判定する."""
        api_key = self.credentials.get_api_key()
        if not api_key:
            return JustificationResult.failed(NO_API_KEY)

        payload = {
            "contents": [
                {
                    "parts": [
                        {
                            "text": self._build_justification_prompt(
                                justification, goal, url
                            ),
                        },
                    ],
                },
            ],
            "generationConfig": {"temperature": 0.3},
        }

        try:
            text = self._generate(api_key, payload)
        except _OracleError as e:
            return JustificationResult.failed(str(e))

        data = parse_oracle_json(text)
        if data is None:
            logger.warning("Could not parse justification response: %r", text)
            return JustificationResult.failed("Could not parse response")

        accepted = data.get("accepted")
        if not isinstance(accepted, bool):
            logger.warning("Justification response lacks a verdict: %r", text)
            return JustificationResult.failed("Response missing accepted")

        reason = str(data.get("reason") or ("Accepted" if accepted else "Rejected"))
        return JustificationResult(accepted=accepted, reason=reason)


# 便利関数
def create_oracle(
    credentials: CredentialStore,
    base_url: str | None = None,
    model_name: str | None = None,
) -> ClassificationOracle:
    """Oracle クライアントのファクトリ関数.

    環境変数で上書き可能:
    - GEMINI_API_URL: モデル一覧のベースURL
    - GEMINI_MODEL: 使用するモデル名 (既定: gemini-2.5-flash)
    """
    resolved_base = base_url or os.getenv("GEMINI_API_URL") or DEFAULT_API_URL
    resolved_model = model_name or os.getenv("GEMINI_MODEL") or DEFAULT_MODEL
    return ClassificationOracle(
        credentials=credentials,
        base_url=resolved_base,
        model_name=resolved_model,
    )
