"""Per-turn event collection for observability and the JSON turn report."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad config value, etc.)."""


class ReportCollector:
    """Accumulates events during one turn of the loop controller."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.guardrail_interventions = 0
        self.gate_rejections = 0
        self.truncated_responses = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.window_drops = 0
        self.max_loop_seen = 0
        self.usage: dict[str, int] = {}

    def record_llm_call(
        self,
        loop: int,
        duration: float,
        token_est: int,
        finish_reason: str | None,
        *,
        attempts: int = 1,
        usage: dict | None = None,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if loop > self.max_loop_seen:
            self.max_loop_seen = loop
        for key, value in (usage or {}).items():
            if isinstance(value, int):
                self.usage[key] = self.usage.get(key, 0) + value
        event = {
            "loop": loop,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
            "attempts": attempts,
        }
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_tool_call(
        self,
        loop: int,
        name: str,
        arguments: dict | None,
        outcome: str,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"executed": 0, "queued": 0, "failed": 0}
        )
        stats[outcome] = stats.get(outcome, 0) + 1
        event: dict = {
            "loop": loop,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "outcome": outcome,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_window(self, loop: int, in_context: int, dropped: int):
        if dropped:
            self.window_drops += dropped
        self.events.append(
            {"loop": loop, "type": "window", "in_context": in_context, "dropped": dropped}
        )

    def record_compaction(
        self, loop: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        self.compactions += 1
        self.events.append(
            {
                "loop": loop,
                "type": "compaction",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_guardrail(self, loop: int, tool: str, count: int):
        self.guardrail_interventions += 1
        self.events.append(
            {"loop": loop, "type": "guardrail", "tool": tool, "count": count}
        )

    def record_gate_rejection(self, loop: int, tool: str):
        self.gate_rejections += 1
        self.events.append({"loop": loop, "type": "gate_rejection", "tool": tool})

    def record_truncated_response(self, loop: int):
        self.truncated_responses += 1
        self.events.append({"loop": loop, "type": "truncated_response"})

    def build_report(
        self,
        *,
        model: str,
        provider: str,
        outcome: str,
        answer: str | None,
        loops: int,
        error: dict | None = None,
    ) -> dict:
        tool_calls_total = sum(sum(s.values()) for s in self.tool_stats.values())
        result: dict = {
            "outcome": outcome,
            "answer": answer,
        }
        if error is not None:
            result["error"] = error

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "provider": provider,
            "result": result,
            "stats": {
                "loops": loops,
                "llm_calls": self.llm_calls,
                "tool_calls_total": tool_calls_total,
                "tool_calls_by_name": self.tool_stats,
                "compactions": self.compactions,
                "window_drops": self.window_drops,
                "guardrail_interventions": self.guardrail_interventions,
                "gate_rejections": self.gate_rejections,
                "truncated_responses": self.truncated_responses,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "usage": self.usage,
            },
            "timeline": self.events,
        }


def write_report(path: str, report: dict) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False)
        f.write("\n")
