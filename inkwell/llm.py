"""LLM client adapter: wire translation, provider routing and retry through LiteLLM."""

import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field, replace

from .cancel import CancelToken
from .errors import (
    ContextOverflowError,
    LLMCallError,
    TurnCancelled,
    error_status,
    from_exception,
    is_retryable,
    parse_error,
)
from .messages import (
    ModelMessage,
    SystemMessage,
    ToolCall,
    ToolResultsMessage,
    UserMessage,
)
from .report import ConfigError

logger = logging.getLogger(__name__)

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

# provider -> (default base URL, default model, API key env var)
PROVIDERS: dict[str, tuple[str | None, str | None, str | None]] = {
    "gemini": (
        "https://generativelanguage.googleapis.com/v1beta/openai/",
        "gemini-2.5-flash",
        "GEMINI_API_KEY",
    ),
    "deepseek": ("https://api.deepseek.com", "deepseek-chat", "DEEPSEEK_API_KEY"),
    "moonshot": ("https://api.moonshot.cn/v1", "moonshot-v1-8k", "MOONSHOT_API_KEY"),
    "openai": ("https://api.openai.com/v1", "gpt-4o", "OPENAI_API_KEY"),
    "openrouter": (None, None, "OPENROUTER_API_KEY"),
    "lmstudio": ("http://127.0.0.1:1234/v1", None, None),
}

GEMINI_HOST = "generativelanguage.googleapis.com"
SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)

GEMINI_CONTEXT_LIMIT = 1_000_000
DEFAULT_CONTEXT_LIMIT = 128_000


@dataclass
class Candidate:
    text: str
    tool_calls: list[ToolCall]
    finish_reason: str | None


@dataclass
class ResponseMetadata:
    model: str
    finish_reason: str | None = None
    usage: dict = field(default_factory=dict)
    duration: float = 0.0
    attempts: int = 1
    response_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "finish_reason": self.finish_reason,
            "usage": self.usage,
            "duration_s": round(self.duration, 3),
            "attempts": self.attempts,
            "response_id": self.response_id,
        }


@dataclass
class LLMResponse:
    candidates: list[Candidate]
    metadata: ResponseMetadata


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def ensure_call_ids(messages: list) -> int:
    """Assign ids to stored tool calls that lack one. Returns how many were set."""
    assigned = 0
    for msg in messages:
        if isinstance(msg, ModelMessage):
            for tc in msg.tool_calls:
                if not tc.call_id:
                    tc.call_id = new_call_id()
                    assigned += 1
    return assigned


# -- Wire translation ----------------------------------------------------------


def wrap_tools(declarations: list[dict]) -> list[dict]:
    """Re-wrap internal declarations in the chat-completions function envelope."""
    return [
        {
            "type": "function",
            "function": {
                "name": d["name"],
                "description": d["description"],
                "parameters": d["parameters"],
            },
        }
        for d in declarations
    ]


def to_wire(history: list, system_instruction: str | None) -> list[dict]:
    """Translate internal messages into chat-completions messages.

    Tool responses are emitted as ``role: tool`` entries only when the
    preceding assistant message carried the matching call id. Responses whose
    call fell outside the window are folded into a plain user message.
    """
    wire: list[dict] = []
    if system_instruction:
        wire.append({"role": "system", "content": system_instruction})

    open_ids: set[str] = set()
    for i, msg in enumerate(history):
        if isinstance(msg, ModelMessage):
            following = history[i + 1] if i + 1 < len(history) else None
            answered = (
                {r.call_id for r in following.responses}
                if isinstance(following, ToolResultsMessage)
                else set()
            )
            calls = [tc for tc in msg.tool_calls if tc.call_id in answered]
            if not calls and not msg.text:
                open_ids = set()
                continue
            entry: dict = {"role": "assistant", "content": msg.text or None}
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.call_id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.args, ensure_ascii=False),
                        },
                    }
                    for tc in calls
                ]
            wire.append(entry)
            open_ids = {tc.call_id for tc in calls}
        elif isinstance(msg, ToolResultsMessage):
            orphans = []
            for r in msg.responses:
                if r.call_id in open_ids:
                    wire.append(
                        {"role": "tool", "tool_call_id": r.call_id, "content": r.result}
                    )
                else:
                    orphans.append(f"[Tool result: {r.name}]\n{r.result}")
            if orphans:
                wire.append({"role": "user", "content": "\n\n".join(orphans)})
            open_ids = set()
        elif isinstance(msg, (UserMessage, SystemMessage)):
            # System notices are ordinary instructions here; the real system
            # prompt travels separately.
            wire.append({"role": "user", "content": msg.text})
            open_ids = set()
        else:
            raise TypeError(f"cannot translate {type(msg).__name__}")
    return wire


def _parse_arguments(raw) -> tuple[dict, str | None]:
    if isinstance(raw, dict):
        return raw, None
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}, None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        return {}, f"invalid JSON in tool arguments: {e}"
    if not isinstance(parsed, dict):
        return {}, "tool arguments must be a JSON object"
    return parsed, None


def _usage_dict(usage) -> dict:
    out = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            out[key] = value
    return out


def from_wire(response, model: str, duration: float = 0.0, attempts: int = 1) -> LLMResponse:
    """Translate a chat-completions response into candidates and metadata."""
    choices = getattr(response, "choices", None)
    if choices is None:
        raise LLMCallError(parse_error(None, response=repr(response)[:2000]))

    candidates = []
    try:
        for choice in choices:
            msg = choice.message
            calls = []
            for tc in getattr(msg, "tool_calls", None) or []:
                args, err = _parse_arguments(tc.function.arguments)
                calls.append(
                    ToolCall(
                        name=tc.function.name,
                        args=args,
                        call_id=getattr(tc, "id", None) or new_call_id(),
                        arguments_error=err,
                    )
                )
            text = msg.content if isinstance(msg.content, str) else ""
            candidates.append(Candidate(text, calls, choice.finish_reason))
    except AttributeError as e:
        raise LLMCallError(parse_error(e, response=repr(response)[:2000])) from e

    finish_reason = candidates[0].finish_reason if candidates else None
    response_id = getattr(response, "id", None)
    metadata = ResponseMetadata(
        model=model,
        finish_reason=finish_reason,
        usage=_usage_dict(getattr(response, "usage", None)),
        duration=duration,
        attempts=attempts,
        response_id=response_id if isinstance(response_id, str) else None,
    )
    return LLMResponse(candidates=candidates, metadata=metadata)


# -- Retry ---------------------------------------------------------------------


def with_retry(
    operation,
    *,
    retries: int = 3,
    initial_delay: float = 2.0,
    cancel: CancelToken | None = None,
):
    """Run operation with exponential backoff. Returns (result, attempts).

    Only rate-limit and 5xx failures are retried; anything else, and
    cancellation, propagates immediately.
    """
    delay = initial_delay
    for attempt in range(1, retries + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return operation(), attempt
        except (TurnCancelled, ContextOverflowError):
            raise
        except Exception as e:
            if attempt >= retries or not is_retryable(e):
                raise
            logger.warning(
                "LLM call failed (%s), retrying in %.1fs (attempt %d/%d)",
                error_status(e) or type(e).__name__,
                delay,
                attempt,
                retries,
            )
            if cancel is not None:
                if cancel.wait(delay):
                    raise TurnCancelled() from e
            elif delay > 0:
                time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


# -- Client --------------------------------------------------------------------


class LLMClient:
    """An immutable provider configuration plus the send operation.

    Reconfigure by building a new client (see ``with_options``) and handing it
    to the engine.
    """

    def __init__(
        self,
        *,
        provider: str = "deepseek",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
        retries: int = 3,
        retry_delay: float = 2.0,
        safety_threshold: str = "BLOCK_NONE",
    ):
        if provider not in PROVIDERS:
            raise ConfigError(
                f"unknown provider {provider!r}, expected one of: {', '.join(PROVIDERS)}"
            )
        if safety_threshold not in SAFETY_THRESHOLDS:
            raise ConfigError(f"unknown safety threshold {safety_threshold!r}")
        if retries < 1:
            raise ConfigError("retries must be at least 1")
        default_base, default_model, key_env = PROVIDERS[provider]
        self.provider = provider
        self.model = model or default_model
        if not self.model:
            raise ConfigError(f"provider {provider!r} requires a model name")
        self.api_key = api_key or (os.environ.get(key_env) if key_env else None)
        self.base_url = base_url or default_base
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.retries = retries
        self.retry_delay = retry_delay
        self.safety_threshold = safety_threshold

    def with_options(self, **changes) -> "LLMClient":
        options = {
            "provider": self.provider,
            "model": self.model,
            "api_key": self.api_key,
            "base_url": self.base_url,
            "max_output_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
            "safety_threshold": self.safety_threshold,
        }
        if "provider" in changes and changes["provider"] != self.provider:
            # Provider defaults must not leak across providers.
            options.update(model=None, api_key=None, base_url=None)
        options.update(changes)
        return LLMClient(**options)

    @property
    def is_gemini_family(self) -> bool:
        return "gemini" in self.model.lower() or GEMINI_HOST in (self.base_url or "")

    @property
    def context_limit(self) -> int:
        return GEMINI_CONTEXT_LIMIT if self.is_gemini_family else DEFAULT_CONTEXT_LIMIT

    def safety_settings(self) -> list[dict]:
        return [
            {"category": category, "threshold": self.safety_threshold}
            for category in SAFETY_CATEGORIES
        ]

    def _route(self) -> tuple[str, dict]:
        if self.provider == "openrouter":
            bare_id = (
                self.model[len("openrouter/") :]
                if self.model.startswith("openrouter/openrouter/")
                else self.model
            )
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["api_base"] = self.base_url
            return f"openrouter/{bare_id}", kwargs
        api_key = self.api_key or ("lm-studio" if self.provider == "lmstudio" else None)
        return f"openai/{self.model}", {"api_base": self.base_url, "api_key": api_key}

    def build_request(self, history: list, system_instruction: str | None, tools: list[dict]) -> dict:
        model_str, kwargs = self._route()
        request = dict(
            model=model_str,
            messages=to_wire(history, system_instruction),
            max_tokens=self.max_output_tokens,
            **kwargs,
        )
        if tools:
            request["tools"] = wrap_tools(tools)
            request["tool_choice"] = "auto"
        if self.temperature is not None:
            request["temperature"] = self.temperature
        if self.is_gemini_family:
            request["extra_body"] = {"safety_settings": self.safety_settings()}
        return request

    def _complete(self, request: dict):
        import litellm

        litellm.suppress_debug_info = True
        try:
            return litellm.completion(**request)
        except litellm.ContextWindowExceededError as e:
            raise ContextOverflowError("context window exceeded (typed)") from e
        except litellm.BadRequestError as e:
            if _CONTEXT_OVERFLOW_RE.search(str(e)):
                raise ContextOverflowError(
                    f"context window exceeded (inferred): {e}"
                ) from e
            raise

    def send(
        self,
        history: list,
        system_instruction: str | None,
        tools: list[dict],
        cancel: CancelToken | None = None,
    ) -> LLMResponse:
        request = self.build_request(history, system_instruction, tools)
        snapshot = {
            "model": request["model"],
            "messages": len(request["messages"]),
            "tools": len(request.get("tools", [])),
        }
        t0 = time.monotonic()
        try:
            response, attempts = with_retry(
                lambda: self._complete(request),
                retries=self.retries,
                initial_delay=self.retry_delay,
                cancel=cancel,
            )
        except (TurnCancelled, ContextOverflowError):
            raise
        except Exception as e:
            raise LLMCallError(
                from_exception(e, request=snapshot), status=error_status(e)
            ) from e
        duration = time.monotonic() - t0
        if cancel is not None:
            cancel.raise_if_cancelled()
        return from_wire(response, self.model, duration, attempts)


def candidate_message(candidate: Candidate, metadata: ResponseMetadata) -> ModelMessage | None:
    """Build the model message for a candidate, or None when it is empty."""
    if not candidate.text and not candidate.tool_calls:
        return None
    calls = [tc if tc.call_id else replace(tc, call_id=new_call_id()) for tc in candidate.tool_calls]
    return ModelMessage(
        text=candidate.text,
        tool_calls=calls,
        metadata={"response": metadata.to_dict()},
    )
