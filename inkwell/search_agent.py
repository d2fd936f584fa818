"""Read-only research sub-agent behind the ``call_search_agent`` tool."""

import logging

from . import fmt
from .approval import ApprovalQueue
from .cancel import CancelToken
from .dispatch import run_read_tool
from .llm import LLMClient, candidate_message
from .messages import ToolResponse, ToolResultsMessage, UserMessage
from .tools import READ_TOOLS
from .workspace import Workspace

logger = logging.getLogger(__name__)

MAX_LOOPS = 8
REPORT_TOOL_NAME = "submit_report"

SUBMIT_REPORT_TOOL = {
    "name": REPORT_TOOL_NAME,
    "description": (
        "Finish the search and hand your findings back. Call this exactly once, "
        "when you have enough evidence or have exhausted the likely places."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "Direct answer to the request in a few sentences.",
            },
            "findings": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "relevance": {"type": "string"},
                        "snippet": {"type": "string"},
                    },
                    "required": ["path", "relevance"],
                },
            },
            "reasoning": {
                "type": "string",
                "description": "How you searched and what you ruled out.",
            },
        },
        "required": ["summary", "findings"],
    },
}

SYSTEM_PROMPT = """\
You are a research assistant inside a writing project. You cannot modify files.
Use list_files, read_file and search_files to find the passages that answer the
request, then call submit_report once. Quote short snippets, cite paths, and
prefer depth over breadth: open the most promising files instead of listing
everything. You have at most {max_loops} steps."""


def render_report(args: dict) -> str:
    lines = ["## Search report", "", str(args.get("summary", "")).strip()]
    findings = args.get("findings") or []
    if findings:
        lines += ["", "### Findings"]
        for i, finding in enumerate(findings, 1):
            if not isinstance(finding, dict):
                continue
            lines.append(
                f"{i}. **{finding.get('path', '?')}**: {finding.get('relevance', '')}"
            )
            snippet = str(finding.get("snippet") or "").strip()
            if snippet:
                lines.extend(f"   > {line}" for line in snippet.splitlines())
    else:
        lines += ["", "(No relevant passages found)"]
    reasoning = str(args.get("reasoning") or "").strip()
    if reasoning:
        lines += ["", "### Reasoning", reasoning]
    return "\n".join(lines)


class SearchAgent:
    def __init__(
        self,
        client: LLMClient,
        workspace: Workspace,
        queue: ApprovalQueue | None = None,
        *,
        max_loops: int = MAX_LOOPS,
        verbose: bool = False,
    ):
        self.client = client
        self.workspace = workspace
        self.queue = queue
        self.max_loops = max_loops
        self.verbose = verbose

    def run(
        self,
        request: str,
        focus_paths: list | None = None,
        cancel: CancelToken | None = None,
    ) -> str:
        """Run the sub-agent loop. Returns a markdown report or an ``error:`` string."""
        prompt = request.strip()
        if focus_paths:
            prompt += "\n\nStart with: " + ", ".join(str(p) for p in focus_paths)
        history: list = [UserMessage(text=prompt)]
        tools = [*READ_TOOLS, SUBMIT_REPORT_TOOL]
        system = SYSTEM_PROMPT.format(max_loops=self.max_loops)

        for loop in range(1, self.max_loops + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            response = self.client.send(history, system, tools, cancel)
            if not response.candidates:
                return "error: search agent received an empty response"
            message = candidate_message(response.candidates[0], response.metadata)
            if message is None:
                return "error: search agent received an empty response"
            history.append(message)
            if not message.tool_calls:
                return (
                    "error: search agent stopped without submitting a report. "
                    f"Last message: {message.text[:500]}"
                )

            results = ToolResultsMessage()
            for call in message.tool_calls:
                if call.name == REPORT_TOOL_NAME and not call.arguments_error:
                    if self.verbose:
                        fmt.info(f"search agent reported after {loop} steps")
                    return render_report(call.args)
                results.responses.append(
                    ToolResponse(call.name, call.call_id, self._run_tool(call))
                )
                if cancel is not None:
                    cancel.raise_if_cancelled()
            history.append(results)

        logger.warning("search agent hit its %d-step limit", self.max_loops)
        return f"error: search agent reached its {self.max_loops}-step limit without a report"

    def _run_tool(self, call) -> str:
        if call.arguments_error:
            return f"error: {call.arguments_error}"
        try:
            return run_read_tool(self.workspace, self.queue, call.name, call.args)
        except KeyError as e:
            if call.name in {t["name"] for t in READ_TOOLS}:
                return f"error: missing required argument {e}"
            return f"error: unknown tool {call.name!r}"
        except Exception as e:
            return f"error: {e}"
