"""フォーカスセッションの永続レコード."""

from __future__ import annotations

import time

from pydantic import BaseModel, Field, field_validator

__all__ = ["Session", "format_elapsed", "parse_allowed_domains"]

SECONDS_PER_MINUTE = 60
MINUTES_PER_HOUR = 60


def parse_allowed_domains(raw: str | list[str] | None) -> list[str]:
    """許可ドメインを正規化する.

    カンマ区切りの文字列でもリストでも受け付け、前後の空白を除いて小文字化する。
    空要素と重複は取り除き、順序は保持する。
    """
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else raw
    domains: list[str] = []
    for item in items:
        domain = item.strip().lower()
        if domain and domain not in domains:
            domains.append(domain)
    return domains


def format_elapsed(seconds: float) -> str:
    """経過時間を "25m" / "1h 5m" 形式で返す."""
    minutes = int(max(seconds, 0) // SECONDS_PER_MINUTE)
    if minutes < MINUTES_PER_HOUR:
        return f"{minutes}m"
    hours, mins = divmod(minutes, MINUTES_PER_HOUR)
    return f"{hours}h {mins}m"


class Session(BaseModel):
    """システム全体で1つだけ存在するフォーカスセッション.

    書き込むのは EnforcementController のみ。`active` が False のときは
    他のフィールドもすべて初期値に戻っている。
    """

    active: bool = False
    goal: str = ""
    allowed_domains: list[str] = Field(default_factory=list)
    strict_mode: bool = False
    blocked_count: int = Field(default=0, ge=0)
    last_relevant_tab_id: int | None = None
    last_relevant_url: str | None = None
    hidden_tab_urls: list[str] = Field(default_factory=list)
    start_time: float | None = None

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def normalize_domains(cls, v: str | list[str] | None) -> list[str]:
        """許可ドメインは常に小文字・重複なしで保持する."""
        return parse_allowed_domains(v)

    @classmethod
    def inactive(cls) -> Session:
        """終了後の空セッション."""
        return cls()

    @classmethod
    def begin(
        cls,
        goal: str,
        allowed_domains: str | list[str] | None = None,
        *,
        strict_mode: bool = False,
    ) -> Session:
        """新しいアクティブセッションを作る."""
        return cls(
            active=True,
            goal=goal,
            allowed_domains=parse_allowed_domains(allowed_domains),
            strict_mode=strict_mode,
            start_time=time.time(),
        )

    def elapsed_seconds(self, now: float | None = None) -> float:
        if not self.active or self.start_time is None:
            return 0.0
        return (now if now is not None else time.time()) - self.start_time

    def elapsed_label(self, now: float | None = None) -> str:
        return format_elapsed(self.elapsed_seconds(now))
