"""Structured provider error taxonomy and HTTP failure classification."""

from __future__ import annotations

import enum
import json
import time
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

from .errors import RuntimeFailure


class ErrorType(str, enum.Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    PROVIDER_DOWN = "provider_down"
    AUTH = "auth"
    MODERATION = "moderation"
    UNKNOWN = "unknown"


RATE_LIMIT_DEFAULT_RETRY_S = 30.0
PROVIDER_DOWN_DEFAULT_RETRY_S = 10.0
MAX_AUTO_RETRY_WAIT_S = 5 * 60.0


class ProviderError(RuntimeFailure):
    """A provider failure classified by kind, with retry guidance."""

    def __init__(
        self,
        message: str,
        *,
        type: ErrorType = ErrorType.UNKNOWN,
        provider: str = "provider",
        code: str = "",
        retryable: bool = False,
        retry_after: Optional[float] = None,
        reset_at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.type = ErrorType(type)
        self.provider = provider
        self.code = code
        self.message = message
        self.retryable = retryable
        self.retry_after = retry_after
        self.reset_at = reset_at
        super().__init__(self._render(), details=details)

    def _render(self) -> str:
        if self.reset_at is not None:
            return f"{self.provider}: {self.message} (resets at {self.reset_at.strftime('%H:%M:%S')})"
        return f"{self.provider}: {self.message}"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type.value,
            "provider": self.provider,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.reset_at is not None:
            payload["reset_at"] = self.reset_at.strftime("%H:%M:%S")
            payload["reset_at_full"] = self.reset_at.isoformat()
        return payload


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered:
            return str(value)
    return None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After value (delta-seconds or HTTP-date)."""
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, moment.timestamp() - time.time())


def _parse_reset_epoch_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None
    if millis < 10_000_000_000:
        millis *= 1000
    return datetime.fromtimestamp(millis / 1000.0).astimezone()


def _decode_body(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str) and body.strip():
        try:
            decoded = json.loads(body)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def classify_http_error(
    provider: str,
    status: int,
    body: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> ProviderError:
    """Map an HTTP failure from an OpenAI-compatible endpoint onto the taxonomy.

    Understands the OpenRouter envelope
    ``{"error": {"code", "message", "metadata": {"headers": {"X-RateLimit-Reset"}}}}``
    and plain ``Retry-After`` / ``X-RateLimit-Reset`` response headers.
    """
    code = str(status)
    message = ""
    reset_at: Optional[datetime] = None
    retry_after: Optional[float] = None

    decoded = _decode_body(body)
    error_obj = decoded.get("error") if isinstance(decoded.get("error"), dict) else decoded
    if isinstance(error_obj, dict) and error_obj.get("message"):
        message = str(error_obj["message"])
        if error_obj.get("code") not in (None, "", 0):
            code = str(error_obj["code"])
        metadata = error_obj.get("metadata") or {}
        meta_headers = metadata.get("headers") if isinstance(metadata, dict) else None
        if isinstance(meta_headers, dict):
            reset_at = _parse_reset_epoch_ms(meta_headers.get("X-RateLimit-Reset"))
    elif isinstance(body, (str, bytes, bytearray)):
        text = body.decode("utf-8", errors="replace") if isinstance(body, (bytes, bytearray)) else body
        message = text.strip()

    if reset_at is None:
        reset_at = _parse_reset_epoch_ms(_header(headers, "X-RateLimit-Reset"))
    if reset_at is not None:
        wait = reset_at.timestamp() - time.time()
        if wait > 0:
            retry_after = wait
    header_retry = parse_retry_after(_header(headers, "Retry-After"))
    if retry_after is None and header_retry is not None:
        retry_after = header_retry

    if status == 402:
        return ProviderError(
            message or "Insufficient credits. Please add balance to your account.",
            type=ErrorType.INSUFFICIENT_CREDIT,
            provider=provider,
            code=code,
            retryable=False,
            reset_at=reset_at,
        )
    if status == 429:
        if retry_after is None:
            retryable = True
            retry_after = RATE_LIMIT_DEFAULT_RETRY_S
        else:
            retryable = retry_after < MAX_AUTO_RETRY_WAIT_S
        return ProviderError(
            message or "Rate limit exceeded.",
            type=ErrorType.RATE_LIMIT,
            provider=provider,
            code=code,
            retryable=retryable,
            retry_after=retry_after,
            reset_at=reset_at,
        )
    if status == 401:
        return ProviderError(
            message or "Invalid API key. Please check your credentials.",
            type=ErrorType.AUTH,
            provider=provider,
            code=code,
            retryable=False,
        )
    if status == 403:
        return ProviderError(
            message or "Request was rejected by moderation.",
            type=ErrorType.MODERATION,
            provider=provider,
            code=code,
            retryable=False,
        )
    if status in (502, 503):
        return ProviderError(
            message or "Upstream provider is unavailable.",
            type=ErrorType.PROVIDER_DOWN,
            provider=provider,
            code=code,
            retryable=True,
            retry_after=retry_after if retry_after is not None else PROVIDER_DOWN_DEFAULT_RETRY_S,
        )
    return ProviderError(
        message or f"HTTP {status}",
        type=ErrorType.UNKNOWN,
        provider=provider,
        code=code,
        retryable=status >= 500,
        retry_after=retry_after,
    )
