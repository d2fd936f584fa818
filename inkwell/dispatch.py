"""Tool dispatcher: run one tool call and classify the outcome.

Every call resolves to exactly one of ``Executed``, ``ApprovalRequired`` or
``Error``. Write tools never touch the files directly in ``ask`` mode; they
build a PendingChange against the shadowed content and queue it.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from . import fmt
from .approval import ApprovalQueue, PendingChange, commit_change
from .cancel import CancelToken
from .errors import TurnCancelled
from .messages import PROJECT_FIELDS, ToolCall
from .tools import REASONING_TOOL, get_tools
from .workspace import Workspace, apply_line_edits, format_numbered

logger = logging.getLogger(__name__)

APPROVAL_MODES = ("ask", "auto")
MAX_ARG_LOG = 1000
MAX_LOG_PREVIEW = 120


@dataclass
class Executed:
    result: str

    @property
    def text(self) -> str:
        return self.result


@dataclass
class ApprovalRequired:
    change: PendingChange

    @property
    def text(self) -> str:
        return self.change.queued_message


@dataclass
class Error:
    message: str

    @property
    def text(self) -> str:
        if self.message.startswith("error:"):
            return self.message
        return f"error: {self.message}"


ToolExecutionResult = Executed | ApprovalRequired | Error


class ToolLog:
    """Streaming log channel for tool executions. The dispatcher is the only producer."""

    def __init__(self):
        self._subscribers: list[Callable[[str], None]] = []

    def subscribe(self, fn: Callable[[str], None]) -> Callable:
        self._subscribers.append(fn)
        return lambda: self._subscribers.remove(fn)

    def emit(self, line: str) -> None:
        for fn in list(self._subscribers):
            fn(line)


def _preview(text: str) -> str:
    first = text.strip().split("\n", 1)[0]
    if len(first) > MAX_LOG_PREVIEW:
        first = first[:MAX_LOG_PREVIEW] + "..."
    return first


def _int_arg(args: dict, key: str, default: int | None) -> int | None:
    value = args.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be an integer, got {value!r}") from None


def run_read_tool(
    workspace: Workspace, queue: ApprovalQueue | None, name: str, args: dict
) -> str:
    """Execute list_files, read_file or search_files. Shared with the search agent."""
    if name == "list_files":
        return workspace.list_files(args.get("path") or ".")
    if name == "read_file":
        path = args["path"]
        try:
            start = _int_arg(args, "start_line", 1)
            end = _int_arg(args, "end_line", None)
        except ValueError as e:
            return f"error: {e}"
        shadow = queue.shadow_content(path) if queue is not None else None
        if shadow is not None:
            return format_numbered(queue.normalize(path), shadow, start, end, shadow=True)
        return workspace.read_file(path, start, end)
    if name == "search_files":
        return workspace.search(str(args["query"]))
    raise KeyError(name)


class ToolDispatcher:
    def __init__(
        self,
        workspace: Workspace,
        queue: ApprovalQueue,
        sessions,
        *,
        thinking=None,
        todos=None,
        plan=None,
        search_agent=None,
        approval: str = "ask",
        plan_mode: bool = False,
        log: ToolLog | None = None,
        verbose: bool = False,
    ):
        if approval not in APPROVAL_MODES:
            raise ValueError(f"unknown approval mode {approval!r}")
        self.workspace = workspace
        self.queue = queue
        self.sessions = sessions
        self.thinking = thinking
        self.todos = todos
        self.plan = plan
        self.search_agent = search_agent
        self.approval = approval
        self.plan_mode = plan_mode
        self.log = log or ToolLog()
        self.verbose = verbose

    def declarations(self) -> list[dict]:
        return get_tools(self.plan_mode, search_agent=self.search_agent is not None)

    # -- Entry point -----------------------------------------------------------

    def dispatch(
        self, call: ToolCall, cancel: CancelToken | None = None
    ) -> ToolExecutionResult:
        name = call.name
        self.log.emit(f"▶ {name}")
        if self.verbose and name != REASONING_TOOL:
            pretty = json.dumps(call.args, indent=2, ensure_ascii=False)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(name, pretty)

        t0 = time.monotonic()
        result = self._run(call, cancel)
        elapsed = time.monotonic() - t0

        if isinstance(result, Error):
            self.log.emit(f"✗ {name}: {_preview(result.text)}")
            if self.verbose:
                fmt.tool_outcome(name, "failed", result.text)
        elif isinstance(result, ApprovalRequired):
            self.log.emit(f"⏸ {name}: queued {result.change.id}")
            if self.verbose:
                fmt.tool_outcome(
                    name, "queued", f"[{result.change.id}] {result.change.description}"
                )
        else:
            self.log.emit(f"✓ {name} ({elapsed:.1f}s)")
            if self.verbose and name != REASONING_TOOL:
                fmt.tool_outcome(name, "executed", result.text, elapsed)
        return result

    def _run(self, call: ToolCall, cancel: CancelToken | None) -> ToolExecutionResult:
        if call.arguments_error:
            return Error(call.arguments_error)

        declared = {d["name"]: d for d in self.declarations()}
        decl = declared.get(call.name)
        if decl is None:
            if self.plan_mode and call.name in {d["name"] for d in get_tools(False)}:
                return Error(
                    f"tool {call.name!r} is not available in plan mode, "
                    "finish the plan and wait for the user to approve it"
                )
            return Error(f"unknown tool {call.name!r}")

        args = call.args if isinstance(call.args, dict) else {}
        missing = [
            key
            for key in decl["parameters"].get("required", [])
            if args.get(key) in (None, "")
        ]
        if missing:
            return Error(f"missing required argument(s): {', '.join(missing)}")

        try:
            outcome = self._execute(call.name, args, cancel)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("tool %s raised %s: %s", call.name, type(e).__name__, e)
            return Error(f"error: {e}")

        if isinstance(outcome, str):
            if outcome.startswith("error:"):
                return Error(outcome)
            return Executed(outcome)
        return outcome

    # -- Tool implementations --------------------------------------------------

    def _execute(self, name: str, args: dict, cancel: CancelToken | None):
        if name in ("list_files", "read_file", "search_files"):
            return run_read_tool(self.workspace, self.queue, name, args)
        if name == "call_search_agent":
            focus = args.get("focus_paths") or []
            if not isinstance(focus, list):
                return "error: 'focus_paths' must be an array of paths"
            return self.search_agent.run(str(args["request"]), focus, cancel)
        if name == REASONING_TOOL:
            if self.thinking is None:
                return "error: think tool is not available"
            return self.thinking.process(args)
        if name == "manage_todos":
            if self.todos is None:
                return "error: todo tool is not available"
            return self.todos.process(args)
        if name == "manage_plan_note":
            if self.plan is None:
                return "error: plan notebook is not available"
            return self.plan.process(args, self.plan_mode)
        if name == "update_project_meta":
            return self._update_project_meta(args)

        change = self._build_change(name, args)
        if isinstance(change, str):
            return change
        return self._submit(change)

    def _submit(self, change: PendingChange):
        if self.approval == "auto":
            result = commit_change(change, self.workspace)
            logger.info("auto-approved %s: %s", change.description, result)
            return result
        return ApprovalRequired(self.queue.add(change))

    def _build_change(self, name: str, args: dict) -> PendingChange | str:
        path = str(args["path"])
        try:
            resolved = self.workspace.resolve(path)
        except ValueError as e:
            return f"error: {e}"
        rel = self.workspace.relative(resolved)
        if rel == ".":
            return "error: the project root cannot be modified"
        current = self.queue.current_content(rel)
        committed = self.workspace.read_text(rel)
        thinking = args.get("thinking", "")

        def change(original, new, description):
            return PendingChange(
                tool_name=name,
                args=args,
                file_path=rel,
                original_content=original,
                new_content=new,
                description=description if not thinking else f"{description}: {thinking[:80]}",
            )

        if name == "create_file":
            if current is not None or resolved.exists():
                return f"error: {rel} already exists, use update_file or patch_file"
            return change(None, str(args["content"]), f"Create {rel}")

        if name == "update_file":
            if current is None:
                return f"error: file not found: {rel}, use create_file for new files"
            return change(committed, str(args["content"]), f"Update {rel}")

        if name == "patch_file":
            if current is None:
                return f"error: file not found: {rel}"
            edits = args["edits"]
            if not isinstance(edits, list) or not edits:
                return "error: 'edits' must be a non-empty array"
            for edit in edits:
                if not isinstance(edit, dict) or "start_line" not in edit:
                    return "error: each edit needs start_line, end_line and new_content"
                try:
                    start = int(edit["start_line"])
                    end = int(edit.get("end_line", start))
                except (TypeError, ValueError):
                    return "error: start_line and end_line must be integers"
                if start < 1 or end < start - 1:
                    return f"error: invalid line range {start}-{end}"
            patched = apply_line_edits(current, edits)
            label = "edit" if len(edits) == 1 else "edits"
            return change(committed, patched, f"Patch {rel} ({len(edits)} {label})")

        if name == "rename_file":
            new_name = str(args["new_name"])
            if "/" in new_name or "\\" in new_name or new_name in (".", ".."):
                return f"error: invalid new name {new_name!r}, expected a bare name"
            if not resolved.exists():
                return f"error: file not found: {rel}"
            target = resolved.with_name(new_name)
            if target.exists() or self.queue.shadow_content(
                self.workspace.relative(target)
            ) is not None:
                return f"error: {self.workspace.relative(target)} already exists"
            # No shadow content: reads of the old path keep showing the committed file.
            return change(committed, None, f"Rename {rel} to {new_name}")

        if name == "delete_file":
            if current is None and not resolved.exists():
                return f"error: file not found: {rel}"
            return change(committed, None, f"Delete {rel}")

        raise KeyError(name)

    def _update_project_meta(self, args: dict) -> str:
        updates = {}
        for key, kind in PROJECT_FIELDS.items():
            if key not in args or args[key] is None:
                continue
            value = args[key]
            if kind is int:
                if isinstance(value, bool):
                    return f"error: '{key}' must be an integer"
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    return f"error: '{key}' must be an integer, got {value!r}"
                if value < 1:
                    return f"error: '{key}' must be positive"
            else:
                value = str(value).strip()
            updates[key] = value
        if not updates:
            return (
                "error: no project fields given, expected one of: "
                + ", ".join(PROJECT_FIELDS)
            )
        changed = self.sessions.update_project(updates)
        if not changed:
            return "Project settings unchanged"
        return "Updated project settings: " + ", ".join(
            f"{key}={updates[key]!r}" for key in changed
        )
