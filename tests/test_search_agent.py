"""Tests for the read-only search sub-agent."""

import pytest

from inkwell.approval import ApprovalQueue, PendingChange
from inkwell.cancel import CancelToken
from inkwell.errors import TurnCancelled
from inkwell.llm import Candidate, LLMResponse, ResponseMetadata
from inkwell.messages import ToolCall, ToolResultsMessage
from inkwell.search_agent import SearchAgent, render_report
from inkwell.workspace import Workspace


class FakeClient:
    """Replays scripted responses and records every history it was sent."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.histories = []
        self.tools = []

    def send(self, history, system_instruction, tools, cancel=None):
        self.histories.append(list(history))
        self.tools.append([t["name"] for t in tools])
        return self.responses.pop(0)


def _response(text="", calls=(), finish_reason="stop"):
    return LLMResponse(
        candidates=[Candidate(text, list(calls), finish_reason)],
        metadata=ResponseMetadata("test-model", finish_reason),
    )


def _report_call(**args):
    args.setdefault("summary", "The sword is in chapter one.")
    args.setdefault("findings", [])
    return ToolCall("submit_report", args, "call_report")


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "chapters").mkdir()
    (tmp_path / "chapters" / "01.md").write_text("She found the sword.")
    return Workspace(tmp_path)


def test_reads_then_reports(workspace):
    client = FakeClient(
        [
            _response(calls=[ToolCall("search_files", {"query": "sword"}, "c1")]),
            _response(
                calls=[
                    _report_call(
                        findings=[
                            {
                                "path": "chapters/01.md",
                                "relevance": "the sword appears",
                                "snippet": "She found the sword.",
                            }
                        ],
                        reasoning="Searched for the word.",
                    )
                ]
            ),
        ]
    )
    out = SearchAgent(client, workspace).run("Where is the sword?")
    assert out.startswith("## Search report")
    assert "1. **chapters/01.md**: the sword appears" in out
    assert "   > She found the sword." in out
    assert "### Reasoning" in out
    results = client.histories[1][-1]
    assert isinstance(results, ToolResultsMessage)
    assert results.responses[0].result == "chapters/01.md:1: She found the sword."


def test_only_read_tools_offered(workspace):
    client = FakeClient([_response(calls=[_report_call()])])
    SearchAgent(client, workspace).run("x")
    assert client.tools[0] == ["list_files", "read_file", "search_files", "submit_report"]


def test_focus_paths_in_prompt(workspace):
    client = FakeClient([_response(calls=[_report_call()])])
    SearchAgent(client, workspace).run("Find it", ["chapters/01.md", "notes"])
    assert client.histories[0][0].text == "Find it\n\nStart with: chapters/01.md, notes"


def test_sees_shadow_content(workspace):
    queue = ApprovalQueue(workspace)
    queue.add(
        PendingChange("create_file", {}, "notes.md", None, "Pending idea", "Create notes.md")
    )
    client = FakeClient(
        [
            _response(calls=[ToolCall("read_file", {"path": "notes.md"}, "c1")]),
            _response(calls=[_report_call()]),
        ]
    )
    SearchAgent(client, workspace, queue).run("x")
    result = client.histories[1][-1].responses[0].result
    assert "[Shadow Read - Pending Change]" in result
    assert "Pending idea" in result


def test_stop_without_report_is_error(workspace):
    client = FakeClient([_response(text="I think it's in chapter one.")])
    out = SearchAgent(client, workspace).run("x")
    assert out.startswith("error: search agent stopped without submitting a report")


def test_empty_response_is_error(workspace):
    client = FakeClient([_response()])
    assert SearchAgent(client, workspace).run("x") == (
        "error: search agent received an empty response"
    )


def test_loop_limit(workspace):
    client = FakeClient(
        [_response(calls=[ToolCall("list_files", {}, f"c{i}")]) for i in range(3)]
    )
    out = SearchAgent(client, workspace, max_loops=3).run("x")
    assert out == "error: search agent reached its 3-step limit without a report"
    assert len(client.histories) == 3


def test_write_tools_refused(workspace):
    client = FakeClient(
        [
            _response(calls=[ToolCall("create_file", {"path": "a.md"}, "c1")]),
            _response(calls=[_report_call()]),
        ]
    )
    SearchAgent(client, workspace).run("x")
    result = client.histories[1][-1].responses[0].result
    assert result == "error: unknown tool 'create_file'"
    assert not (workspace.root / "a.md").exists()


def test_missing_argument(workspace):
    client = FakeClient(
        [
            _response(calls=[ToolCall("read_file", {}, "c1")]),
            _response(calls=[_report_call()]),
        ]
    )
    SearchAgent(client, workspace).run("x")
    result = client.histories[1][-1].responses[0].result
    assert result == "error: missing required argument 'path'"


def test_cancellation_propagates(workspace):
    token = CancelToken()
    token.cancel()
    client = FakeClient([])
    with pytest.raises(TurnCancelled):
        SearchAgent(client, workspace).run("x", cancel=token)


def test_render_report_without_findings():
    out = render_report({"summary": "Nothing found.", "findings": []})
    assert out == "## Search report\n\nNothing found.\n\n(No relevant passages found)"
