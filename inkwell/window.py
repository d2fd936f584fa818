"""Bounded, protocol-valid conversation window sent to the provider each iteration."""

import json
from dataclasses import dataclass, replace

import tiktoken

from .messages import (
    Message,
    ModelMessage,
    ToolResponse,
    ToolResultsMessage,
    has_tool_calls,
)

DEFAULT_WINDOW_SIZE = 30
COMPACT_THRESHOLD = 1000
KEEP_RECENT_EXCHANGES = 2

_encoder = tiktoken.get_encoding("cl100k_base")


@dataclass
class Window:
    messages: list
    in_context: int
    dropped: int
    window_size: int

    def info(self, total: int) -> dict:
        return {
            "total": total,
            "in_context": self.in_context,
            "dropped": self.dropped,
            "window_size": self.window_size,
        }


def repair_window(messages: list) -> list:
    """Drop orphaned tool calls so the slice is valid for the provider.

    The front is trimmed of tool-call messages that have no context before
    them, then any tool-call message not immediately followed by a tool
    response message is removed. Repairing a valid slice returns it unchanged.
    """
    start = 0
    while start < len(messages) and has_tool_calls(messages[start]):
        start += 1
    sliced = messages[start:]

    repaired = []
    for i, msg in enumerate(sliced):
        if has_tool_calls(msg):
            following = sliced[i + 1] if i + 1 < len(sliced) else None
            if not isinstance(following, ToolResultsMessage):
                continue
        repaired.append(msg)
    return repaired


def build_window(messages: list, size: int = DEFAULT_WINDOW_SIZE) -> Window:
    if size < 1:
        raise ValueError("window size must be at least 1")
    tail = list(messages[-size:])
    repaired = repair_window(tail)
    return Window(
        messages=repaired,
        in_context=len(repaired),
        dropped=len(tail) - len(repaired),
        window_size=size,
    )


def compact_window(messages: list) -> list:
    """Return a copy with large tool results in older exchanges truncated.

    An exchange starts at each model message; the most recent ones are kept
    intact. Stored messages are never modified.
    """
    starts = [i for i, m in enumerate(messages) if isinstance(m, ModelMessage)]
    if len(starts) <= KEEP_RECENT_EXCHANGES:
        return list(messages)
    cutoff = starts[-KEEP_RECENT_EXCHANGES]
    out = []
    for i, msg in enumerate(messages):
        if i < cutoff and isinstance(msg, ToolResultsMessage):
            responses = [
                ToolResponse(
                    r.name,
                    r.call_id,
                    f"[compacted, originally {len(r.result)} chars]",
                )
                if len(r.result) > COMPACT_THRESHOLD
                else r
                for r in msg.responses
            ]
            msg = replace(msg, responses=responses)
        out.append(msg)
    return out


def _message_text(msg: Message) -> str:
    parts = [msg.text or ""]
    if isinstance(msg, ModelMessage):
        for tc in msg.tool_calls:
            parts.append(tc.name + json.dumps(tc.args, ensure_ascii=False))
    elif isinstance(msg, ToolResultsMessage):
        # The streamed log text is display-only; only results reach the model.
        parts = [r.result for r in msg.responses]
    return "".join(parts)


def estimate_tokens(
    messages: list, system_prompt: str = "", tools: list | None = None
) -> int:
    """Count tokens across the system prompt, messages and tool schemas."""
    total = len(_encoder.encode(system_prompt)) if system_prompt else 0
    for msg in messages:
        total += len(_encoder.encode(_message_text(msg)))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total
