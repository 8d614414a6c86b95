import re
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    ENCODING_ERROR = "encoding_error"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    MODEL_OVERLOADED = "model_overloaded"
    NETWORK_ERROR = "network_error"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    DECODING_ERROR = "decoding_error"
    UNKNOWN_MODEL = "unknown_model"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"
    UNKNOWN = "unknown"


RETRIABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.MODEL_OVERLOADED, ErrorKind.NETWORK_ERROR}
)


class LLMError(Exception):
    """Base class for every failure surfaced by the completion layer."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        raw: Optional[str] = None,
        token_expired: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.raw = raw
        # Set when the backend says the bearer token expired and a refresh may help
        self.token_expired = token_expired

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, "
            f"status_code={self.status_code!r}, retry_after={self.retry_after!r})"
        )


class EncodingError(LLMError):
    kind = ErrorKind.ENCODING_ERROR


class AuthFailed(LLMError):
    kind = ErrorKind.AUTH_FAILED


class RateLimited(LLMError):
    kind = ErrorKind.RATE_LIMITED


class ModelOverloaded(LLMError):
    kind = ErrorKind.MODEL_OVERLOADED


class NetworkError(LLMError):
    kind = ErrorKind.NETWORK_ERROR


class ContextLengthExceeded(LLMError):
    kind = ErrorKind.CONTEXT_LENGTH_EXCEEDED


class DecodingError(LLMError):
    kind = ErrorKind.DECODING_ERROR


class UnknownModel(LLMError):
    kind = ErrorKind.UNKNOWN_MODEL


class UnsupportedCapability(LLMError):
    kind = ErrorKind.UNSUPPORTED_CAPABILITY


class UnknownError(LLMError):
    kind = ErrorKind.UNKNOWN


ERROR_CLASSES = {
    cls.kind: cls
    for cls in (
        EncodingError,
        AuthFailed,
        RateLimited,
        ModelOverloaded,
        NetworkError,
        ContextLengthExceeded,
        DecodingError,
        UnknownModel,
        UnsupportedCapability,
        UnknownError,
    )
}


def error_for_kind(kind: ErrorKind, message: str, **kwargs: Any) -> LLMError:
    return ERROR_CLASSES[kind](message, **kwargs)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """
    Read a retry hint in seconds from response headers.

    Handles `retry-after-ms`, `Retry-After: 60` and `Retry-After: <HTTP date>`.
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    millis = lowered.get("retry-after-ms")
    if millis is not None:
        try:
            return max(0.0, float(millis) / 1000.0)
        except ValueError:
            pass

    value = lowered.get("retry-after")
    if value is None:
        return None
    value = str(value).strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at.timestamp() - time.time())


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


def parse_duration(value: Any) -> Optional[float]:
    """Parse a protobuf-style duration such as "2s" or "0.5s"."""
    if not isinstance(value, str):
        return None
    match = _DURATION_RE.match(value)
    if not match:
        return None
    return float(match.group(1))
