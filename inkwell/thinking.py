"""Structured reasoning tool (``think``) and its per-turn history."""

import json
from dataclasses import dataclass

from . import fmt

VALID_MODES = ("intent", "analyze", "reflect", "plan", "reflect_creative")
VALID_NEXT_ACTIONS = ("proceed", "think_again", "ask_user")
MAX_CONTENT_LENGTH = 10000
MAX_HISTORY = 200

# Confidence bands: >= 80 act, 60-79 think again, below 60 ask the user.
CONFIDENT = 80
UNSURE = 60


@dataclass
class ThoughtEntry:
    mode: str
    thinking: str
    content: str
    confidence: int
    next_action: str


class ThinkingState:
    def __init__(self, verbose: bool = False):
        self.history: list[ThoughtEntry] = []
        self.verbose = verbose
        self.think_calls = 0

    def reset(self) -> None:
        self.history.clear()
        self.think_calls = 0

    @property
    def used(self) -> bool:
        return self.think_calls > 0

    def process(self, args: dict) -> str:
        """Validate and record a thinking step. Returns a JSON summary or error string."""
        if len(self.history) >= MAX_HISTORY:
            return f"error: thinking history full ({MAX_HISTORY} steps max)"

        thinking = args.get("thinking")
        if not isinstance(thinking, str) or not thinking.strip():
            return "error: 'thinking' is required and must be a non-empty string"

        mode = args.get("mode", "analyze")
        if mode not in VALID_MODES:
            return f"error: invalid mode {mode!r}, expected one of: {', '.join(VALID_MODES)}"

        content = args.get("content", "")
        if not isinstance(content, str):
            return "error: 'content' must be a string"
        if len(content) > MAX_CONTENT_LENGTH:
            return f"error: content exceeds {MAX_CONTENT_LENGTH} character limit"

        confidence = args.get("confidence", CONFIDENT)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            return "error: 'confidence' must be a number between 0 and 100"
        if not 0 <= confidence <= 100:
            return f"error: confidence must be between 0 and 100, got {confidence}"
        confidence = int(confidence)

        next_action = args.get("next_action", "proceed")
        if next_action not in VALID_NEXT_ACTIONS:
            return (
                f"error: invalid next_action {next_action!r}, "
                f"expected one of: {', '.join(VALID_NEXT_ACTIONS)}"
            )

        entry = ThoughtEntry(mode, thinking.strip(), content, confidence, next_action)
        self.history.append(entry)
        self.think_calls += 1

        if self.verbose:
            fmt.think_step(len(self.history), mode, confidence, next_action, thinking)

        result: dict = {
            "mode": mode,
            "step": len(self.history),
            "confidence": confidence,
            "next_action": next_action,
            "history_length": len(self.history),
        }
        hint = self._hint(entry)
        if hint:
            result["hint"] = hint
        return json.dumps(result, ensure_ascii=False)

    @staticmethod
    def _hint(entry: ThoughtEntry) -> str | None:
        if entry.next_action == "ask_user" or entry.confidence < UNSURE:
            return "Confidence is low: ask the user to confirm before changing files."
        if entry.next_action == "think_again" or entry.confidence < CONFIDENT:
            return "Think once more before acting."
        if entry.mode == "reflect_creative":
            return (
                "Check tone, style guide, setting consistency, character voice "
                "and outline fit before moving on."
            )
        return None

    def summary_line(self) -> str | None:
        """One-line usage summary, or None if think was never called."""
        if not self.history:
            return None
        modes = sorted({e.mode for e in self.history})
        return (
            f"think: {len(self.history)} steps ({', '.join(modes)}), "
            f"last confidence {self.history[-1].confidence}%"
        )
