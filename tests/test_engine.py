"""Tests for the loop controller: turn lifecycle, gate, cancellation and recovery."""

import pytest

from inkwell.engine import (
    GATE_ERROR,
    NOT_EXECUTED,
    STOPPED_TEXT,
    AgentEngine,
    GatePolicy,
    TurnState,
)
from inkwell.errors import (
    ContextOverflowError,
    ErrorCategory,
    LLMCallError,
    TurnCancelled,
    rate_limit_error,
)
from inkwell.llm import Candidate, LLMResponse, ResponseMetadata
from inkwell.messages import (
    ModelMessage,
    SystemMessage,
    ToolCall,
    ToolResultsMessage,
    UserMessage,
)
from inkwell.plan import PlanNotebook
from inkwell.session import SessionStore
from inkwell.store import MemoryStore
from inkwell.workspace import Workspace


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClient:
    """Scripted LLM client. Each step is a response, an exception, or a callable."""

    model = "test-model"
    provider = "fake"
    context_limit = 128_000

    def __init__(self, steps):
        self.steps = list(steps)
        self.calls = []

    def send(self, history, system_instruction, tools, cancel=None):
        self.calls.append({"history": list(history), "system": system_instruction, "tools": tools})
        step = self.steps.pop(0)
        if callable(step) and not isinstance(step, LLMResponse):
            step = step()
        if isinstance(step, BaseException):
            raise step
        return step


def _response(text="", calls=(), finish_reason=None):
    if finish_reason is None:
        finish_reason = "tool_calls" if calls else "stop"
    return LLMResponse(
        candidates=[Candidate(text, list(calls), finish_reason)],
        metadata=ResponseMetadata("test-model", finish_reason, duration=0.1),
    )


def _think(call_id="t1", **overrides):
    args = {
        "thinking": "The author asked about the project",
        "mode": "intent",
        "content": "List the files first",
        "confidence": 90,
        "next_action": "proceed",
    }
    args.update(overrides)
    return ToolCall("think", args, call_id)


def _list(call_id="l1"):
    return ToolCall("list_files", {}, call_id)


def _create(path, call_id):
    return ToolCall(
        "create_file", {"thinking": "draft", "path": path, "content": "text"}, call_id
    )


@pytest.fixture
def project(tmp_path):
    (tmp_path / "chapters").mkdir()
    (tmp_path / "chapters" / "01.md").write_text("It was dark.")
    return tmp_path


def _engine(project, steps, **kwargs):
    sessions = SessionStore(MemoryStore(), "novel", persist_delay=0).load()
    client = FakeClient(steps)
    kwargs.setdefault("search_agent", False)
    engine = AgentEngine(client, sessions, Workspace(project), **kwargs)
    return engine, client


def _messages(engine):
    return engine.sessions.current.messages


def _assert_protocol_valid(messages):
    for i, msg in enumerate(messages):
        if isinstance(msg, ModelMessage) and msg.tool_calls:
            results = messages[i + 1]
            assert isinstance(results, ToolResultsMessage)
            assert [r.call_id for r in results.responses] == [
                c.call_id for c in msg.tool_calls
            ]


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    def test_think_list_answer_trace(self, project):
        engine, client = _engine(
            project,
            [
                _response(calls=[_think()]),
                _response(text="Let me look.", calls=[_list()]),
                _response(text="You have one chapter folder."),
            ],
        )
        result = engine.send_message("What's in my project?")

        assert result.outcome == "completed"
        assert result.answer == "You have one chapter folder."
        assert result.loops == 3
        msgs = _messages(engine)
        assert [type(m).__name__ for m in msgs] == [
            "UserMessage",
            "ModelMessage",
            "ToolResultsMessage",
            "ModelMessage",
            "ToolResultsMessage",
            "ModelMessage",
        ]
        assert msgs[4].responses[0].result == "[DIR] chapters\n  [FILE] 01.md"
        assert "▶ list_files" in msgs[4].text
        assert msgs[5].metadata["loop"] == 3
        _assert_protocol_valid(msgs)
        assert len(client.calls) == 3
        assert engine.last_state is TurnState.IDLE
        assert engine.state is TurnState.IDLE

    def test_history_sent_to_model(self, project):
        engine, client = _engine(
            project, [_response(calls=[_think()]), _response(text="Done.")]
        )
        engine.send_message("Hello")
        second = client.calls[1]["history"]
        assert isinstance(second[0], UserMessage)
        assert isinstance(second[-1], ToolResultsMessage)
        assert "Open todos" in client.calls[0]["system"]

    def test_report(self, project):
        engine, _ = _engine(
            project, [_response(calls=[_think()]), _response(text="Done.")]
        )
        result = engine.send_message("Hello")
        stats = result.report["stats"]
        assert result.report["result"]["outcome"] == "completed"
        assert stats["llm_calls"] == 2
        assert stats["tool_calls_by_name"]["think"]["executed"] == 1
        assert engine.last_report is result.report

    def test_tool_log_callback(self, project):
        engine, _ = _engine(project, [_response(calls=[_think()]), _response(text="ok")])
        lines = []
        engine.on_log(lines.append)
        engine.send_message("Hi")
        assert lines[0] == "▶ think"
        assert lines[1].startswith("✓ think")


# ---------------------------------------------------------------------------
# Reasoning gate
# ---------------------------------------------------------------------------


class TestGate:
    def test_first_iteration_rejects_non_think(self, project):
        engine, _ = _engine(
            project,
            [_response(calls=[_list()]), _response(calls=[_list("l2")]), _response(text="ok")],
        )
        result = engine.send_message("List files")
        msgs = _messages(engine)
        assert msgs[2].responses[0].result == GATE_ERROR
        # Second iteration is not gated under the default policy.
        assert msgs[4].responses[0].result.startswith("[DIR]")
        assert result.report["stats"]["gate_rejections"] == 1

    def test_think_in_same_batch_unlocks(self, project):
        engine, _ = _engine(
            project, [_response(calls=[_think(), _list()]), _response(text="ok")]
        )
        engine.send_message("List files")
        responses = _messages(engine)[2].responses
        assert responses[1].result.startswith("[DIR]")

    def test_until_reasoned_keeps_gating(self, project):
        engine, _ = _engine(
            project,
            [_response(calls=[_list()]), _response(calls=[_list("l2")]), _response(text="ok")],
            gate_policy="until_reasoned",
        )
        engine.send_message("List files")
        msgs = _messages(engine)
        assert msgs[2].responses[0].result == GATE_ERROR
        assert msgs[4].responses[0].result == GATE_ERROR

    def test_off(self, project):
        engine, _ = _engine(
            project,
            [_response(calls=[_list()]), _response(text="ok")],
            gate_policy=GatePolicy.OFF,
        )
        engine.send_message("List files")
        assert _messages(engine)[2].responses[0].result.startswith("[DIR]")

    def test_not_gated_after_notice_trigger(self, project):
        engine, _ = _engine(project, [_response(calls=[_list()]), _response(text="ok")])
        engine.sessions.add_message(SystemMessage(kind="limit", text="limit reached"))
        engine.process_turn()
        assert _messages(engine)[2].responses[0].result.startswith("[DIR]")

    def test_gated_after_approval_trigger(self, project):
        engine, _ = _engine(
            project,
            [
                _response(calls=[_think(), _create("a.md", "c1")]),
                _response(text="Queued."),
                _response(calls=[_list()]),
                _response(text="ok"),
            ],
        )
        engine.send_message("Create a.md")
        change_id = engine.queue.pending()[0].id
        engine.approve_change(change_id)
        engine.process_turn()
        last_results = [m for m in _messages(engine) if isinstance(m, ToolResultsMessage)][-1]
        assert last_results.responses[0].result == GATE_ERROR

    def test_gated_batch_does_not_trip_guard(self, project):
        read = ToolCall("read_file", {"path": "chapters/01.md"}, "r1")
        engine, _ = _engine(
            project,
            [
                _response(calls=[read, _list()]),
                _response(calls=[_think()]),
                _response(text="Chapter one opens in the dark."),
            ],
        )
        result = engine.send_message("What is in chapter one?")
        results = _messages(engine)[2]
        assert [r.result for r in results.responses] == [GATE_ERROR, GATE_ERROR]
        assert "guard" not in results.metadata
        assert result.report["stats"]["gate_rejections"] == 2
        assert result.report["stats"]["guardrail_interventions"] == 0
        assert result.outcome == "completed"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_after_first_of_three_tools(self, project):
        engine, client = _engine(
            project,
            [
                _response(
                    calls=[_think(), _create("a.md", "c2"), _create("b.md", "c3")]
                )
            ],
        )

        def stop_after_think(line):
            if line.startswith("✓ think"):
                engine.stop()

        engine.on_log(stop_after_think)
        result = engine.send_message("Draft two notes")

        assert result.outcome == "cancelled"
        msgs = _messages(engine)
        results = msgs[2]
        assert [r.result for r in results.responses][1:] == [NOT_EXECUTED, NOT_EXECUTED]
        assert len(engine.queue) == 0
        stopped = [m for m in msgs if isinstance(m, SystemMessage) and m.kind == "stopped"]
        assert len(stopped) == 1
        assert stopped[0].text == STOPPED_TEXT
        assert msgs[-1] is stopped[0]
        _assert_protocol_valid(msgs)
        assert len(client.calls) == 1
        assert engine.last_state is TurnState.ABORTED

    def test_cancel_during_llm_call(self, project):
        engine, _ = _engine(project, [TurnCancelled()])
        result = engine.send_message("Hi")
        assert result.outcome == "cancelled"
        assert _messages(engine)[-1].kind == "stopped"

    def test_stop_when_idle(self, project):
        engine, _ = _engine(project, [])
        assert engine.stop() is False


# ---------------------------------------------------------------------------
# Termination and failure
# ---------------------------------------------------------------------------


class TestTermination:
    def test_ceiling(self, project):
        engine, client = _engine(
            project,
            [_response(calls=[_think()]), _response(calls=[_list()])],
            max_loops=2,
        )
        result = engine.send_message("Keep going")
        assert result.outcome == "ceiling"
        last = _messages(engine)[-1]
        assert isinstance(last, SystemMessage)
        assert last.kind == "limit"
        assert "2 loops" in last.text
        assert len(client.calls) == 2

    def test_llm_error_faults(self, project):
        error = LLMCallError(rate_limit_error(Exception("429")), status=429)
        engine, _ = _engine(project, [error])
        result = engine.send_message("Hi")
        assert result.outcome == "faulted"
        last = _messages(engine)[-1]
        assert last.kind == "error"
        assert last.text.startswith("Rate limit reached")
        assert last.metadata["error"]["category"] == ErrorCategory.RATE_LIMIT.value
        assert result.report["result"]["error"]["title"] == "Rate limit reached"
        assert engine.last_state is TurnState.FAULTED
        assert not engine.is_running()

    def test_unexpected_exception_faults(self, project):
        engine, _ = _engine(project, [RuntimeError("socket closed")])
        result = engine.send_message("Hi")
        assert result.outcome == "faulted"
        assert _messages(engine)[-1].kind == "error"

    def test_no_candidates_faults(self, project):
        empty = LLMResponse(candidates=[], metadata=ResponseMetadata("test-model"))
        engine, _ = _engine(project, [empty])
        result = engine.send_message("Hi")
        assert result.outcome == "faulted"
        assert _messages(engine)[-1].text.startswith("Empty response")

    def test_empty_candidate_is_notice(self, project):
        engine, _ = _engine(project, [_response()])
        result = engine.send_message("Hi")
        assert result.outcome == "completed"
        last = _messages(engine)[-1]
        assert last.kind == "notice"
        assert last.metadata["warning"]["title"] == "Empty response"

    def test_filtered_response_faults(self, project):
        engine, _ = _engine(project, [_response(text="", finish_reason="content_filter")])
        result = engine.send_message("Hi")
        assert result.outcome == "faulted"
        assert _messages(engine)[-1].text.startswith("Response filtered")

    def test_truncated_response_warns(self, project):
        engine, _ = _engine(project, [_response(text="Half an answ", finish_reason="length")])
        result = engine.send_message("Hi")
        assert result.outcome == "completed"
        last = _messages(engine)[-1]
        assert last.metadata["warnings"][0]["title"] == "Response truncated"
        assert result.report["stats"]["truncated_responses"] == 1

    def test_busy(self, project):
        engine = None
        inner = {}

        def reenter():
            inner["result"] = engine.send_message("Second message")
            return _response(text="ok")

        engine, _ = _engine(project, [reenter])
        result = engine.send_message("First")
        assert result.outcome == "completed"
        assert inner["result"].outcome == "busy"
        users = [m for m in _messages(engine) if isinstance(m, UserMessage)]
        assert [u.text for u in users] == ["First"]

    def test_unknown_session_is_released(self, project):
        engine, client = _engine(project, [])
        result = engine.process_turn("nope")
        assert result.outcome == "faulted"
        assert not engine.is_running("nope")
        assert engine.turn_state("nope") is TurnState.IDLE
        assert engine.last_turn_state("nope") is TurnState.FAULTED
        assert client.calls == []

    def test_session_deleted_mid_turn_is_released(self, project):
        engine = None

        def delete_and_fail():
            engine.sessions.delete_session(sid)
            raise RuntimeError("socket closed")

        engine, _ = _engine(project, [delete_and_fail])
        sid = engine.sessions.current_id
        result = engine.send_message("Hi", sid)
        assert result.outcome == "faulted"
        assert not engine.is_running(sid)
        assert engine.last_turn_state(sid) is TurnState.FAULTED

    def test_state_is_per_session(self, project):
        engine = None
        seen = {}

        def run_other_session():
            seen["during_a"] = engine.turn_state(a)
            seen["b_before"] = engine.turn_state(b)
            seen["b_result"] = engine.send_message("Other", b)
            seen["a_after_b"] = engine.turn_state(a)
            return _response(text="A done.")

        engine, _ = _engine(project, [run_other_session, _response(text="B done.")])
        a = engine.sessions.current_id
        b = engine.sessions.create_session().id
        engine.sessions.switch_session(a)

        assert engine.send_message("First", a).outcome == "completed"
        assert seen["during_a"] is TurnState.RUNNING
        assert seen["b_before"] is TurnState.IDLE
        assert seen["b_result"].outcome == "completed"
        assert seen["a_after_b"] is TurnState.RUNNING
        assert engine.turn_state(a) is TurnState.IDLE

    def test_guard_intervenes_on_repeated_error(self, project):
        bad = {"path": "missing.md"}
        engine, _ = _engine(
            project,
            [
                _response(calls=[_think(), ToolCall("read_file", bad, "r1")]),
                _response(calls=[ToolCall("read_file", bad, "r2")]),
                _response(text="I could not find it."),
            ],
        )
        result = engine.send_message("Read missing.md")
        msgs = _messages(engine)
        assert msgs[2].responses[1].result == "error: file not found: missing.md"
        assert msgs[4].responses[0].result.startswith("SYSTEM INTERVENTION")
        assert msgs[4].metadata["guard"][0]["count"] == 2
        assert result.report["stats"]["guardrail_interventions"] == 1


# ---------------------------------------------------------------------------
# Overflow recovery
# ---------------------------------------------------------------------------


class TestOverflow:
    def test_compaction_recovers(self, project):
        engine, client = _engine(
            project, [ContextOverflowError("too long"), _response(text="ok")]
        )
        result = engine.send_message("Hi")
        assert result.outcome == "completed"
        assert result.report["stats"]["compactions"] == 1
        assert len(client.calls) == 2

    def test_halving_recovers(self, project):
        engine, client = _engine(
            project,
            [ContextOverflowError("a"), ContextOverflowError("b"), _response(text="ok")],
        )
        result = engine.send_message("Hi")
        assert result.outcome == "completed"
        assert result.report["stats"]["compactions"] == 2

    def test_gives_up_after_halving(self, project):
        engine, _ = _engine(project, [ContextOverflowError("x")] * 3)
        result = engine.send_message("Hi")
        assert result.outcome == "faulted"
        assert _messages(engine)[-1].text.startswith("Context window exceeded")

    def test_stored_history_untouched(self, project):
        big = "x" * 5000
        engine, _ = _engine(project, [ContextOverflowError("x"), _response(text="ok")])
        engine.sessions.add_message(UserMessage(text=big))
        engine.process_turn()
        assert _messages(engine)[0].text == big


# ---------------------------------------------------------------------------
# Approvals, plans and session facade
# ---------------------------------------------------------------------------


class TestApprovals:
    def _queued(self, project):
        engine, _ = _engine(
            project,
            [_response(calls=[_think(), _create("notes.md", "c1")]), _response(text="Queued.")],
        )
        engine.send_message("Create notes.md")
        return engine

    def test_write_is_queued(self, project):
        engine = self._queued(project)
        results = _messages(engine)[2]
        change = engine.queue.pending()[0]
        assert results.responses[1].result == change.queued_message
        assert not (project / "notes.md").exists()
        assert engine.last_report["stats"]["tool_calls_by_name"]["create_file"]["queued"] == 1

    def test_approve(self, project):
        engine = self._queued(project)
        change = engine.queue.pending()[0]
        result = engine.approve_change(change.id)
        assert result == "Wrote 4 bytes to notes.md"
        assert (project / "notes.md").read_text() == "text"
        last = _messages(engine)[-1]
        assert last.kind == "approval"
        assert last.text == f"User Approved: {change.description}\nResult: {result}"
        assert engine.approve_change(change.id) is None

    def test_reject(self, project):
        engine = self._queued(project)
        change = engine.queue.pending()[0]
        assert engine.reject_change(change.id).id == change.id
        assert _messages(engine)[-1].text == f"User Rejected: {change.description}"
        assert not (project / "notes.md").exists()
        assert engine.reject_change(change.id) is None

    def test_auto_approval(self, project):
        engine, _ = _engine(
            project,
            [_response(calls=[_think(), _create("notes.md", "c1")]), _response(text="Done.")],
            approval="auto",
        )
        engine.send_message("Create notes.md")
        assert (project / "notes.md").read_text() == "text"
        assert _messages(engine)[2].responses[1].result == "Wrote 4 bytes to notes.md"

    def test_failed_commit_adds_no_message(self, project):
        (project / "notes.md").write_text("a file")
        engine, _ = _engine(
            project,
            [
                _response(calls=[_think(), _create("notes.md/ch1.md", "c1")]),
                _response(text="Queued."),
            ],
        )
        engine.send_message("Create notes.md/ch1.md")
        change = engine.queue.pending()[0]
        count = len(_messages(engine))
        result = engine.approve_change(change.id)
        assert result.startswith("error: cannot write")
        assert len(_messages(engine)) == count
        assert engine.queue.get(change.id) is not None

    def test_session_switch_clears_queue(self, project):
        engine = self._queued(project)
        engine.sessions.create_session()
        assert len(engine.queue) == 0


class TestPlanMode:
    def test_plan_mode_hides_write_tools(self, project):
        engine, client = _engine(project, [_response(text="Here is my plan.")], plan_mode=True)
        engine.send_message("Plan act two")
        names = {t["name"] for t in client.calls[0]["tools"]}
        assert "create_file" not in names
        assert "manage_plan_note" in names

    def test_approve_plan(self, project):
        engine, _ = _engine(project, [], plan_mode=True)
        assert engine.approve_plan() is False
        PlanNotebook(engine.sessions.store, engine.sessions.current_id).process(
            {"action": "create", "title": "Act two", "lines": ["Outline"]}, plan_mode=True
        )
        assert engine.approve_plan() is True
        assert engine.plan_mode is False
        last = _messages(engine)[-1]
        assert last.kind == "approval"
        assert 'User Approved: plan "Act two"' in last.text


class TestFacade:
    def test_window_info(self, project):
        engine, _ = _engine(project, [], window_size=2)
        for i in range(3):
            engine.sessions.add_message(UserMessage(text=str(i)))
        assert engine.window_info() == {
            "total": 3,
            "in_context": 2,
            "dropped": 0,
            "window_size": 2,
        }

    def test_token_usage(self, project):
        engine, _ = _engine(project, [])
        engine.sessions.add_message(UserMessage(text="hello"))
        usage = engine.token_usage()
        assert usage["limit"] == 128_000
        assert 0 < usage["used"] < usage["limit"]
        assert usage["percentage"] == round(usage["used"] / 128_000 * 100, 1)

    def test_invalid_limits(self, project):
        with pytest.raises(ValueError):
            _engine(project, [], max_loops=0)
        with pytest.raises(ValueError):
            _engine(project, [], gate_policy="sometimes")
