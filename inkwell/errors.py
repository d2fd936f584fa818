"""Error taxonomy: classify provider and runtime failures into user-facing records.

Every terminal turn failure is turned into an ErrorRecord with a title, an
explanation and a short list of suggestions. Raw technical detail stays in
``debug`` and is never rendered inline.
"""

import errno
from dataclasses import dataclass, field
from enum import Enum

from .report import AgentError


class ErrorCategory(str, Enum):
    NETWORK = "network"
    API = "api"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    PARSE = "parse"
    CONTENT = "content"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ErrorRecord:
    category: ErrorCategory
    severity: Severity
    title: str
    message: str
    suggestions: list[str]
    recoverable: bool = True
    debug: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "suggestions": list(self.suggestions),
            "recoverable": self.recoverable,
            "debug": self.debug,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorRecord":
        return cls(
            category=ErrorCategory(data["category"]),
            severity=Severity(data["severity"]),
            title=data["title"],
            message=data["message"],
            suggestions=list(data.get("suggestions", [])),
            recoverable=data.get("recoverable", True),
            debug=data.get("debug", {}),
        )


class LLMCallError(AgentError):
    """A provider call failed; carries the classified record."""

    def __init__(self, record: ErrorRecord, status: int | None = None):
        super().__init__(f"{record.title}: {record.message}")
        self.record = record
        self.status = status


class ContextOverflowError(AgentError):
    """Raised when the LLM call fails due to context window overflow."""


class TurnCancelled(Exception):
    """The turn's cancellation token was signaled."""


# -- Detection helpers ---------------------------------------------------------

_NETWORK_CODES = {
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "ENETUNREACH",
    "EHOSTUNREACH",
}

_NETWORK_KEYWORDS = (
    "network",
    "fetch failed",
    "connection refused",
    "connection reset",
    "connection error",
    "timeout",
    "timed out",
    "dns",
    "name resolution",
    "socket hang up",
)

_AUTH_KEYWORDS = ("unauthorized", "invalid api key", "forbidden", "authentication")


def error_status(exc: BaseException) -> int | None:
    """Best-effort HTTP status extraction from provider and httpx exceptions."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    code = getattr(exc, "code", None)
    if isinstance(code, int) and 100 <= code < 600:
        return code
    return None


def _error_code(exc: BaseException) -> str | None:
    for candidate in (exc, exc.__cause__):
        if candidate is None:
            continue
        code = getattr(candidate, "errno", None)
        if isinstance(code, int) and code in errno.errorcode:
            return errno.errorcode[code]
        code = getattr(candidate, "code", None)
        if isinstance(code, str):
            return code.upper()
    return None


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    code = _error_code(exc)
    if code in _NETWORK_CODES:
        return True
    if type(exc).__name__ in ("APIConnectionError", "Timeout", "ConnectError"):
        return True
    lower = str(exc).lower()
    return any(keyword in lower for keyword in _NETWORK_KEYWORDS)


def is_rate_limit_error(exc: BaseException) -> bool:
    if type(exc).__name__ == "RateLimitError":
        return True
    if error_status(exc) == 429:
        return True
    text = str(exc)
    lower = text.lower()
    return (
        "429" in text
        or "resource_exhausted" in lower
        or "rate limit" in lower
        or "too many requests" in lower
    )


def is_auth_error(exc: BaseException) -> bool:
    if type(exc).__name__ in ("AuthenticationError", "PermissionDeniedError"):
        return True
    if error_status(exc) in (401, 403):
        return True
    lower = str(exc).lower()
    return any(keyword in lower for keyword in _AUTH_KEYWORDS)


def is_retryable(exc: BaseException) -> bool:
    """Only rate limits and 5xx server errors are worth another attempt."""
    if isinstance(exc, (TurnCancelled, ContextOverflowError)):
        return False
    if is_rate_limit_error(exc):
        return True
    status = error_status(exc)
    return status is not None and 500 <= status < 600


# -- Record factories ----------------------------------------------------------


def _debug(exc: BaseException | None, request: dict | None = None, response=None) -> dict:
    debug: dict = {}
    if exc is not None:
        debug["raw_error"] = f"{type(exc).__name__}: {exc}"
        status = error_status(exc)
        if status is not None:
            debug["status"] = status
    if request is not None:
        debug["request"] = request
    if response is not None:
        debug["response"] = response
    return debug


def network_error(exc: BaseException, request: dict | None = None) -> ErrorRecord:
    code = _error_code(exc)
    message = "Could not reach the AI service."
    if code:
        message += f" Error code: {code}"
    return ErrorRecord(
        category=ErrorCategory.NETWORK,
        severity=Severity.MEDIUM,
        title="Network connection failed",
        message=message,
        suggestions=[
            "Check that your network connection is working",
            "If you use a proxy, make sure it is configured correctly",
            "Check that the API base URL is correct",
            "Try again later, the service may be temporarily unavailable",
        ],
        recoverable=True,
        debug=_debug(exc, request),
    )


def api_error(
    exc: BaseException, request: dict | None = None, response=None
) -> ErrorRecord:
    status = error_status(exc)
    title = "API request failed"
    message = str(exc)
    if status == 400:
        title = "Invalid request"
        message = "The API rejected the request parameters."
        suggestions = [
            "Check that the request format is correct",
            "If the problem persists, start a new conversation",
        ]
    elif status == 404:
        title = "API endpoint not found"
        message = "The requested endpoint does not exist. Check the base URL."
        suggestions = [
            "Check that the API base URL is correct",
            "Check that the model name is correct",
        ]
    elif status is not None and 500 <= status < 600:
        title = "Server error"
        message = f"The AI service returned a server error ({status})."
        suggestions = [
            "This is a provider-side problem, try again later",
            "If the problem persists, contact the provider",
        ]
    else:
        suggestions = [
            "Check the error details in the debug payload",
            "If the problem persists, start a new conversation",
        ]
    server_side = status is not None and status >= 500
    return ErrorRecord(
        category=ErrorCategory.API,
        severity=Severity.MEDIUM if server_side else Severity.HIGH,
        title=title,
        message=message,
        suggestions=suggestions,
        recoverable=server_side or status == 400,
        debug=_debug(exc, request, response),
    )


def rate_limit_error(exc: BaseException, request: dict | None = None) -> ErrorRecord:
    message = "Requests are being sent too quickly."
    headers = getattr(getattr(exc, "response", None), "headers", None) or {}
    retry_after = headers.get("retry-after") if hasattr(headers, "get") else None
    if retry_after:
        message += f" (wait {retry_after} seconds before retrying)"
    return ErrorRecord(
        category=ErrorCategory.RATE_LIMIT,
        severity=Severity.LOW,
        title="Rate limit reached",
        message=message,
        suggestions=[
            "Wait a few seconds and try again",
            "Free API tiers may require a lower request rate",
            "Consider a plan with a higher quota",
        ],
        recoverable=True,
        debug=_debug(exc, request),
    )


def auth_error(exc: BaseException, request: dict | None = None) -> ErrorRecord:
    return ErrorRecord(
        category=ErrorCategory.AUTH,
        severity=Severity.HIGH,
        title="API authentication failed",
        message="The API key is invalid or has expired. Check your configuration.",
        suggestions=[
            "Check that the API key is correct",
            "Check that the API key has not expired",
            "If you use a third-party proxy, make sure it accepts your key",
            "Update api_key in inkwell.toml or the provider's environment variable",
        ],
        recoverable=True,
        debug=_debug(exc, request),
    )


def parse_error(
    exc: BaseException | None, response=None, request: dict | None = None
) -> ErrorRecord:
    return ErrorRecord(
        category=ErrorCategory.PARSE,
        severity=Severity.MEDIUM,
        title="Could not parse the response",
        message="The AI service returned a response in an unexpected format.",
        suggestions=[
            "This may be temporary, try again",
            "If the problem persists, check that the API is OpenAI-compatible",
            "Inspect the raw response in the debug payload",
        ],
        recoverable=True,
        debug=_debug(exc, request, response),
    )


_CONTENT_REASONS = {
    "truncated": (
        "Response truncated",
        "The response exceeded the maximum output length and may be incomplete.",
        [
            "Ask the assistant to continue",
            "Reduce the context or simplify the request",
            "Increase max_output_tokens in the configuration",
        ],
        Severity.LOW,
    ),
    "empty": (
        "Empty response",
        "The AI service returned an empty response. It may be rate limited or unavailable.",
        [
            "Try again later",
            "Check whether an API rate limit was hit",
            "Inspect the response details in the debug payload",
        ],
        Severity.MEDIUM,
    ),
    "filtered": (
        "Response filtered",
        "The provider's safety filter blocked the response.",
        [
            "Try rephrasing the request",
            "For Gemini models, adjust safety_threshold in the configuration",
            "Some sensitive topics may not get a complete answer",
        ],
        Severity.MEDIUM,
    ),
    "unknown": (
        "Unexpected response",
        "The AI service returned an unexpected response.",
        [
            "Try the request again",
            "Inspect the response details in the debug payload",
            "If the problem persists, try another model",
        ],
        Severity.MEDIUM,
    ),
}


def content_error(reason: str, metadata: dict | None = None, response=None) -> ErrorRecord:
    title, message, suggestions, severity = _CONTENT_REASONS.get(
        reason, _CONTENT_REASONS["unknown"]
    )
    debug = {"reason": reason}
    if metadata:
        debug["metadata"] = metadata
    if response is not None:
        debug["response"] = response
    return ErrorRecord(
        category=ErrorCategory.CONTENT,
        severity=severity,
        title=title,
        message=message,
        suggestions=list(suggestions),
        recoverable=reason != "filtered",
        debug=debug,
    )


def from_exception(
    exc: BaseException, request: dict | None = None, response=None
) -> ErrorRecord:
    """Classify an arbitrary exception. Cancellation is not an error and is re-raised."""
    if isinstance(exc, TurnCancelled):
        raise exc
    if isinstance(exc, LLMCallError):
        return exc.record
    if is_network_error(exc):
        return network_error(exc, request)
    if is_rate_limit_error(exc):
        return rate_limit_error(exc, request)
    if is_auth_error(exc):
        return auth_error(exc, request)
    record = api_error(exc, request, response)
    if error_status(exc) is None:
        # Unknown failures still allow the user to retry.
        record.recoverable = True
    return record


def check_finish_reason(
    finish_reason: str | None, metadata: dict | None = None, response=None
) -> ErrorRecord | None:
    if not finish_reason or finish_reason in ("stop", "tool_calls"):
        return None
    if finish_reason == "length":
        return content_error("truncated", metadata, response)
    if finish_reason in ("content_filter", "safety"):
        return content_error("filtered", metadata, response)
    return content_error("unknown", metadata, response)


def format_error_for_display(record: ErrorRecord) -> str:
    lines = [record.title, "", record.message]
    if record.suggestions:
        lines.append("")
        lines.append("Suggestions:")
        for i, suggestion in enumerate(record.suggestions, 1):
            lines.append(f"{i}. {suggestion}")
    return "\n".join(lines)
