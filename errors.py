from __future__ import annotations
import re
from typing import List, Optional, Tuple
from urllib.parse import urlparse

DEFAULT_FALLBACK = "未知错误"


class AiError(Exception):
    """Base for every failure raised by the AI study features."""


class NetworkError(AiError):
    """Connection or timeout failure talking to the completions endpoint."""


class ApiError(AiError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"API error: {status_code}")
        self.status_code = status_code
        self.body = body


class GenerationError(AiError):
    pass


class MalformedResponseError(GenerationError):
    pass


class EmptyResultError(MalformedResponseError):
    pass


class StreamCancelled(AiError):
    """Raised when a stream handle is executed after it was cancelled."""


def host_of(url: str) -> str:
    if not url:
        return ""
    parsed = urlparse(url if "://" in url else f"//{url}")
    return parsed.netloc


class ErrorFormatter:
    """
    Redacts the configured API host from error text before it reaches a user.
    Every spelling of the host (with/without scheme, trailing slash) becomes "API".
    """
    def __init__(self, filter_domain: Optional[str] = None):
        self._patterns = self._build_patterns(filter_domain or "")

    @staticmethod
    def _build_patterns(raw: str) -> List[Tuple[re.Pattern, str]]:
        normalized = raw.strip()
        for prefix in ("https://", "http://", "//"):
            if normalized.lower().startswith(prefix):
                normalized = normalized[len(prefix):]
                break
        normalized = normalized.strip("/")
        if not normalized:
            return []
        pairs = [
            (f"https://{normalized}/", "API/"),
            (f"http://{normalized}/", "API/"),
            (f"https://{normalized}", "API"),
            (f"http://{normalized}", "API"),
            (f"{normalized}/", "API/"),
            (normalized, "API"),
        ]
        return [(re.compile(re.escape(old), re.IGNORECASE), new) for old, new in pairs]

    def sanitize(self, message: Optional[str], fallback: str = DEFAULT_FALLBACK) -> str:
        base = message if message and message.strip() else fallback
        result = base
        for pattern, new in self._patterns:
            result = pattern.sub(new, result)
        return result.strip() or fallback
