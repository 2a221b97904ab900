"""URL のドメイン抽出と許可リスト照合."""

from collections.abc import Iterable
from urllib.parse import urlsplit

__all__ = ["extract_domain", "is_internal_url", "matches", "strip_www"]

# ブラウザ内部ページは評価対象外 (常に許可扱い)
INTERNAL_SCHEMES = (
    "chrome://",
    "chrome-extension://",
    "chrome-search://",
    "devtools://",
    "edge://",
    "about:",
    "moz-extension://",
)


def is_internal_url(url: str | None) -> bool:
    """URLが無い、またはブラウザ内部ページかどうか."""
    if not url:
        return True
    return url.lower().startswith(INTERNAL_SCHEMES)


def extract_domain(url: str | None) -> str:
    """URLから小文字のホスト名を返す。絶対URLでなければ空文字 (例外は投げない)."""
    if not url:
        return ""
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return ""
    if not parts.scheme or not host:
        return ""
    return host.lower()


def matches(domain: str, allow_list: Iterable[str]) -> bool:
    """ドット境界でのサフィックス一致.

    "docs.google.com" は "google.com" に一致するが、"evilgoogle.com" は一致しない。
    """
    if not domain:
        return False
    domain = domain.lower()
    for allowed in allow_list:
        entry = allowed.lower()
        if not entry:
            continue
        if domain == entry or domain.endswith("." + entry):
            return True
    return False


def strip_www(domain: str) -> str:
    return domain.removeprefix("www.")
