"""Loop controller: runs one conversational turn as a bounded ReAct loop.

A turn appends the model's messages and tool results to the session through
the session bridge, stops on a plain-text answer, the loop ceiling, a
cancellation or a failure, and always leaves the transcript protocol-valid
(every tool call has a paired response).
"""

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from . import fmt
from .approval import ApprovalQueue
from .cancel import CancelToken
from .dispatch import ApprovalRequired, Error, Executed, ToolDispatcher, ToolLog
from .errors import (
    ContextOverflowError,
    LLMCallError,
    TurnCancelled,
    api_error,
    check_finish_reason,
    content_error,
    format_error_for_display,
    from_exception,
)
from .guard import AntiLoopGuard
from .llm import LLMClient, candidate_message, ensure_call_ids
from .messages import (
    ModelMessage,
    SystemMessage,
    ToolResponse,
    ToolResultsMessage,
    UserMessage,
)
from .plan import PlanNotebook
from .prompt import build_system_prompt
from .report import ReportCollector
from .search_agent import SearchAgent
from .session import SessionStore
from .thinking import ThinkingState
from .todo import TodoState
from .tools import REASONING_TOOL
from .window import DEFAULT_WINDOW_SIZE, build_window, compact_window, estimate_tokens
from .workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOOPS = 30

STOPPED_TEXT = "Stopped by user."
LIMIT_TEXT = (
    "Reached the limit of {max_loops} loops for one turn, so the agent was "
    "stopped. Send a message to let it continue."
)
EMPTY_RESPONSE_TEXT = (
    "The model returned an empty response. Try again or rephrase the request."
)
GATE_ERROR = (
    "error: reasoning required. Call the think tool (mode 'intent') to analyze "
    "the request before using any other tool in this turn."
)
NOT_EXECUTED = "error: not executed, the turn was stopped by the user"

_OUTCOMES = {Executed: "executed", ApprovalRequired: "queued", Error: "failed"}


class TurnState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ABORTED = "aborted"
    FAULTED = "faulted"


class GatePolicy(str, Enum):
    FIRST_ITERATION = "first_iteration"
    UNTIL_REASONED = "until_reasoned"
    OFF = "off"


@dataclass
class TurnResult:
    outcome: str
    answer: str | None = None
    loops: int = 0
    report: dict | None = None


@dataclass
class _Turn:
    session_id: str
    token: CancelToken
    trigger: object
    verbose: bool
    report: ReportCollector = field(default_factory=ReportCollector)
    guard: AntiLoopGuard = field(default_factory=AntiLoopGuard)
    thinking: ThinkingState | None = None
    log: ToolLog = field(default_factory=ToolLog)
    loops: int = 0
    answer: str | None = None

    def __post_init__(self):
        if self.thinking is None:
            self.thinking = ThinkingState(verbose=self.verbose)


def overflow_error(exc: BaseException):
    record = api_error(exc)
    record.title = "Context window exceeded"
    record.message = (
        "The conversation is too long for the model, even after compacting "
        "older tool results and halving the window."
    )
    record.suggestions = [
        "Start a new conversation",
        "Lower window_size in the configuration",
        "Use a model with a larger context window",
    ]
    record.recoverable = True
    return record


class AgentEngine:
    """Owns the turn state machine for every session of one project."""

    def __init__(
        self,
        client: LLMClient,
        sessions: SessionStore,
        workspace: Workspace,
        queue: ApprovalQueue | None = None,
        *,
        max_loops: int = DEFAULT_MAX_LOOPS,
        window_size: int = DEFAULT_WINDOW_SIZE,
        gate_policy: str | GatePolicy = GatePolicy.FIRST_ITERATION,
        approval: str = "ask",
        plan_mode: bool = False,
        verbose: bool = False,
        system_prompt: str | None = None,
        instructions: str = "",
        search_agent: bool = True,
    ):
        if max_loops < 1:
            raise ValueError("max_loops must be at least 1")
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.client = client
        self.sessions = sessions
        self.workspace = workspace
        self.queue = queue if queue is not None else ApprovalQueue(workspace)
        self.max_loops = max_loops
        self.window_size = window_size
        self.gate_policy = GatePolicy(gate_policy)
        self.approval = approval
        self.plan_mode = plan_mode
        self.verbose = verbose
        self.system_prompt = system_prompt
        self.instructions = instructions
        self.search_agent = search_agent
        self.last_report: dict | None = None
        self.log = ToolLog()
        self._lock = threading.Lock()
        self._running: dict[str, CancelToken] = {}
        # Per session; a session with no entry is idle.
        self._states: dict[str, TurnState] = {}
        self._last_states: dict[str, TurnState] = {}
        sessions.on_switch(lambda _session: self.queue.clear())

    # -- Observation -----------------------------------------------------------

    def on_log(self, fn):
        """Subscribe fn(line) to the streaming tool log; returns an unsubscribe callable."""
        return self.log.subscribe(fn)

    def is_running(self, session_id: str | None = None) -> bool:
        sid = session_id or self.sessions.current_id
        with self._lock:
            return sid in self._running

    def turn_state(self, session_id: str | None = None) -> TurnState:
        sid = session_id or self.sessions.current_id
        with self._lock:
            return self._states.get(sid, TurnState.IDLE)

    def last_turn_state(self, session_id: str | None = None) -> TurnState:
        """Terminal state of the session's most recent turn."""
        sid = session_id or self.sessions.current_id
        with self._lock:
            return self._last_states.get(sid, TurnState.IDLE)

    @property
    def state(self) -> TurnState:
        return self.turn_state()

    @property
    def last_state(self) -> TurnState:
        return self.last_turn_state()

    # -- Facade ----------------------------------------------------------------

    def send_message(self, text: str, session_id: str | None = None) -> TurnResult:
        sid = session_id or self.sessions.current_id
        if self.is_running(sid):
            return TurnResult("busy")
        self.sessions.add_message(UserMessage(text=text), sid)
        return self.process_turn(sid)

    def stop(self, session_id: str | None = None) -> bool:
        sid = session_id or self.sessions.current_id
        with self._lock:
            token = self._running.get(sid)
        if token is None:
            return False
        token.cancel()
        return True

    def approve_change(self, change_id: str, session_id: str | None = None) -> str | None:
        resolved = self.queue.approve(change_id)
        if resolved is None:
            return None
        change, result = resolved
        if result.startswith("error:"):
            # Still queued: nothing to tell the model yet.
            return result
        self.sessions.add_message(
            SystemMessage(
                kind="approval",
                text=f"User Approved: {change.description}\nResult: {result}",
                metadata={"change_id": change.id, "tool": change.tool_name},
            ),
            session_id,
        )
        if self.verbose:
            fmt.approval_result(True, change.description, result)
        return result

    def reject_change(self, change_id: str, session_id: str | None = None):
        change = self.queue.reject(change_id)
        if change is None:
            return None
        self.sessions.add_message(
            SystemMessage(
                kind="approval",
                text=f"User Rejected: {change.description}",
                metadata={"change_id": change.id, "tool": change.tool_name},
            ),
            session_id,
        )
        if self.verbose:
            fmt.approval_result(False, change.description)
        return change

    def approve_plan(self, session_id: str | None = None) -> bool:
        """Mark the session's plan approved and leave plan mode."""
        sid = session_id or self.sessions.current_id
        notebook = PlanNotebook(self.sessions.store, sid)
        note = notebook.load()
        if note is None or not notebook.approve():
            return False
        self.plan_mode = False
        self.sessions.add_message(
            SystemMessage(
                kind="approval",
                text=(
                    f'User Approved: plan "{note.title}"\n'
                    "Result: plan mode is off, execute the plan step by step."
                ),
                metadata={"plan_id": note.id},
            ),
            sid,
        )
        return True

    def window_info(self, session_id: str | None = None) -> dict:
        messages = self.sessions.get(session_id).messages
        return build_window(messages, self.window_size).info(len(messages))

    def token_usage(self, session_id: str | None = None) -> dict:
        session = self.sessions.get(session_id)
        window = build_window(session.messages, self.window_size)
        used = estimate_tokens(window.messages, self._build_prompt(session))
        limit = self.client.context_limit
        return {
            "used": used,
            "limit": limit,
            "percentage": round(used / limit * 100, 1),
        }

    # -- Turn ------------------------------------------------------------------

    def process_turn(self, session_id: str | None = None) -> TurnResult:
        sid = session_id or self.sessions.current_id
        token = CancelToken()
        turn = _Turn(session_id=sid, token=token, trigger=None, verbose=self.verbose)
        turn.log.subscribe(self.log.emit)
        error_dict = None
        outcome = "faulted"
        final = TurnState.FAULTED

        with self._lock:
            if sid in self._running:
                logger.info("turn already running for session %s", sid)
                return TurnResult("busy")
            self._running[sid] = token
            self._states[sid] = TurnState.RUNNING
        try:
            try:
                messages = self.sessions.get(sid).messages
                turn.trigger = messages[-1] if messages else None
                outcome = self._run_loop(turn)
                final = TurnState.IDLE
            except TurnCancelled:
                outcome = "cancelled"
                final = TurnState.ABORTED
                self._add_terminal_message(
                    sid, SystemMessage(kind="stopped", text=STOPPED_TEXT)
                )
                if self.verbose:
                    fmt.warning("turn stopped by user")
            except Exception as e:
                outcome = "faulted"
                final = TurnState.FAULTED
                record = from_exception(e)
                error_dict = record.to_dict()
                logger.error("turn failed: %s: %s", record.title, record.message)
                self._add_terminal_message(
                    sid,
                    SystemMessage(
                        kind="error",
                        text=format_error_for_display(record),
                        metadata={"error": error_dict},
                    ),
                )
                if self.verbose:
                    fmt.error_record(format_error_for_display(record))
        finally:
            with self._lock:
                self._running.pop(sid, None)
                self._states.pop(sid, None)
                self._last_states[sid] = final

        if self.verbose:
            fmt.turn_outcome(turn.loops, outcome, len(self.queue))
            summary = turn.thinking.summary_line()
            if summary:
                fmt.info(summary)
        report = turn.report.build_report(
            model=self.client.model,
            provider=self.client.provider,
            outcome=outcome,
            answer=turn.answer,
            loops=turn.loops,
            error=error_dict,
        )
        self.last_report = report
        return TurnResult(outcome, turn.answer, turn.loops, report)

    def _add_terminal_message(self, sid: str, message: SystemMessage) -> None:
        try:
            self.sessions.add_message(message, sid)
        except KeyError:
            logger.warning("session %s is gone, dropping %s message", sid, message.kind)

    def _build_prompt(self, session) -> str:
        return build_system_prompt(
            self.workspace,
            self.sessions.project,
            session.todos,
            self.plan_mode,
            self.instructions,
            template=self.system_prompt,
        )

    def _dispatcher(self, turn: _Turn) -> ToolDispatcher:
        search = None
        if self.search_agent:
            search = SearchAgent(
                self.client, self.workspace, self.queue, verbose=self.verbose
            )
        return ToolDispatcher(
            self.workspace,
            self.queue,
            self.sessions,
            thinking=turn.thinking,
            todos=TodoState(self.sessions, turn.session_id, verbose=self.verbose),
            plan=PlanNotebook(self.sessions.store, turn.session_id),
            search_agent=search,
            approval=self.approval,
            plan_mode=self.plan_mode,
            log=turn.log,
            verbose=self.verbose,
        )

    def _gate_required(self, turn: _Turn) -> bool:
        if self.gate_policy is GatePolicy.OFF or turn.thinking.used:
            return False
        if self.gate_policy is GatePolicy.FIRST_ITERATION and turn.loops > 1:
            return False
        trigger = turn.trigger
        return isinstance(trigger, UserMessage) or (
            isinstance(trigger, SystemMessage) and trigger.kind == "approval"
        )

    def _run_loop(self, turn: _Turn) -> str:
        sid = turn.session_id
        dispatcher = self._dispatcher(turn)
        tools = dispatcher.declarations()

        while turn.loops < self.max_loops:
            turn.token.raise_if_cancelled()
            turn.loops += 1
            loop = turn.loops
            gate = self._gate_required(turn)

            session = self.sessions.get(sid)
            system_prompt = self._build_prompt(session)
            window = build_window(session.messages, self.window_size)
            turn.report.record_window(loop, window.in_context, window.dropped)
            if ensure_call_ids(window.messages):
                self.sessions.schedule_persist()

            response = self._send(turn, window.messages, system_prompt, tools)
            turn.token.raise_if_cancelled()

            metadata = response.metadata.to_dict()
            if not response.candidates:
                raise LLMCallError(content_error("empty", metadata))
            candidate = response.candidates[0]
            finish_record = check_finish_reason(candidate.finish_reason, metadata)
            if finish_record is not None and not finish_record.recoverable:
                raise LLMCallError(finish_record)

            message = candidate_message(candidate, response.metadata)
            if message is None:
                self.sessions.add_message(
                    SystemMessage(
                        kind="notice",
                        text=EMPTY_RESPONSE_TEXT,
                        metadata={"warning": content_error("empty", metadata).to_dict()},
                    ),
                    sid,
                )
                if self.verbose:
                    fmt.warning("model returned an empty response")
                return "completed"

            message.metadata["loop"] = loop
            if finish_record is not None:
                message.metadata["warnings"] = [finish_record.to_dict()]
                if candidate.finish_reason == "length":
                    turn.report.record_truncated_response(loop)
            self.sessions.add_message(message, sid)
            if message.text:
                turn.answer = message.text
                if self.verbose and message.tool_calls:
                    fmt.model_text(message.text)

            if not message.tool_calls:
                return "completed"

            self._run_tools(turn, dispatcher, message, gate)

        self.sessions.add_message(
            SystemMessage(kind="limit", text=LIMIT_TEXT.format(max_loops=self.max_loops)),
            sid,
        )
        logger.warning("turn hit the %d-loop ceiling", self.max_loops)
        return "ceiling"

    # -- LLM calls -------------------------------------------------------------

    def _call(self, turn, messages, system_prompt, tools, token_est, retry_reason=None):
        spinner = fmt.llm_spinner() if self.verbose else contextlib.nullcontext()
        try:
            with spinner:
                response = self.client.send(messages, system_prompt, tools, turn.token)
        except ContextOverflowError:
            turn.report.record_llm_call(
                turn.loops, 0.0, token_est, "context_overflow", retry_reason=retry_reason
            )
            raise
        except LLMCallError:
            turn.report.record_llm_call(
                turn.loops, 0.0, token_est, "error", retry_reason=retry_reason
            )
            raise
        md = response.metadata
        turn.report.record_llm_call(
            turn.loops,
            md.duration,
            token_est,
            md.finish_reason,
            attempts=md.attempts,
            usage=md.usage,
            retry_reason=retry_reason,
        )
        if self.verbose:
            fmt.llm_response(md.duration, md.finish_reason, md.attempts)
        return response

    def _send(self, turn: _Turn, messages: list, system_prompt: str, tools: list):
        """Send the window, compacting then halving the sent copy on overflow."""
        loop = turn.loops
        token_est = estimate_tokens(messages, system_prompt, tools)
        if self.verbose:
            fmt.loop_header(loop, self.max_loops, token_est, self.plan_mode)
        try:
            return self._call(turn, messages, system_prompt, tools, token_est)
        except ContextOverflowError:
            logger.warning("context window exceeded, compacting older tool results")

        compacted = compact_window(messages)
        compacted_est = estimate_tokens(compacted, system_prompt, tools)
        turn.report.record_compaction(loop, "compact_window", token_est, compacted_est)
        if self.verbose:
            fmt.context_stats("Context after compaction", compacted_est)
        try:
            return self._call(
                turn, compacted, system_prompt, tools, compacted_est, "compact_window"
            )
        except ContextOverflowError:
            logger.warning("still too large, halving the window")

        halved = build_window(compacted, max(1, len(compacted) // 2)).messages
        halved_est = estimate_tokens(halved, system_prompt, tools)
        turn.report.record_compaction(loop, "halve_window", compacted_est, halved_est)
        if self.verbose:
            fmt.context_stats("Context after halving", halved_est)
        try:
            return self._call(turn, halved, system_prompt, tools, halved_est, "halve_window")
        except ContextOverflowError as e:
            raise LLMCallError(overflow_error(e)) from e

    # -- Tools -----------------------------------------------------------------

    def _run_tools(
        self, turn: _Turn, dispatcher: ToolDispatcher, message: ModelMessage, gate: bool
    ) -> None:
        sid = turn.session_id
        loop = turn.loops
        results = ToolResultsMessage(metadata={"loop": loop})
        self.sessions.add_message(results, sid)

        def append_log(line: str) -> None:
            def apply(_session):
                results.text = f"{results.text}\n{line}" if results.text else line

            self.sessions.update(apply, sid, event="tool_log")

        def respond(call, text: str) -> None:
            def apply(_session):
                results.responses.append(ToolResponse(call.name, call.call_id, text))

            self.sessions.update(apply, sid, event="tool_response")

        def fill_not_executed(calls) -> None:
            for call in calls:
                respond(call, NOT_EXECUTED)

        unsubscribe = turn.log.subscribe(append_log)
        try:
            calls = message.tool_calls
            for i, call in enumerate(calls):
                elapsed = 0.0
                gated = gate and not turn.thinking.used and call.name != REASONING_TOOL
                if gated:
                    result = Error(GATE_ERROR)
                    turn.report.record_gate_rejection(loop, call.name)
                    logger.info("reasoning gate rejected %s", call.name)
                    turn.log.emit(f"✗ {call.name}: rejected, think first")
                    if self.verbose:
                        fmt.intervention("gate", call.name, "rejected, think first")
                else:
                    t0 = time.monotonic()
                    try:
                        result = dispatcher.dispatch(call, turn.token)
                    except TurnCancelled:
                        fill_not_executed(calls[i:])
                        raise
                    elapsed = time.monotonic() - t0

                text = result.text
                # The guard counts tool failures only, never gate rejections.
                if isinstance(result, Error) and not gated:
                    text, count, intervened = turn.guard.check(text)
                    if intervened:
                        self._record_guard(turn, results, call.name, result.text, count)
                turn.report.record_tool_call(
                    loop,
                    call.name,
                    call.args,
                    _OUTCOMES[type(result)],
                    elapsed,
                    len(text),
                    error=result.text if isinstance(result, Error) else None,
                )
                respond(call, text)

                if turn.token.cancelled:
                    fill_not_executed(calls[i + 1 :])
                    raise TurnCancelled()
        finally:
            unsubscribe()

    def _record_guard(
        self, turn: _Turn, results: ToolResultsMessage, tool: str, error: str, count: int
    ) -> None:
        def apply(_session):
            results.metadata.setdefault("guard", []).append(
                {"tool": tool, "error": error, "count": count}
            )

        self.sessions.update(apply, turn.session_id, event="guard")
        turn.report.record_guardrail(turn.loops, tool, count)
        logger.warning("guard intervened: %s failed %d times with the same error", tool, count)
        if self.verbose:
            fmt.intervention("guard", tool, f"same error {count} times: {error}")
