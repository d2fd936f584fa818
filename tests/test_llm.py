"""Tests for the LLM client adapter: wire translation, routing, retry and send."""

import json
import types
from unittest.mock import patch

import litellm
import pytest

from inkwell.cancel import CancelToken
from inkwell.errors import (
    ContextOverflowError,
    ErrorCategory,
    LLMCallError,
    TurnCancelled,
)
from inkwell.llm import (
    LLMClient,
    ResponseMetadata,
    Candidate,
    candidate_message,
    ensure_call_ids,
    from_wire,
    to_wire,
    with_retry,
    wrap_tools,
)
from inkwell.messages import (
    ModelMessage,
    SystemMessage,
    ToolCall,
    ToolResponse,
    ToolResultsMessage,
    UserMessage,
)
from inkwell.report import ConfigError


class _StatusError(Exception):
    def __init__(self, msg, status_code):
        super().__init__(msg)
        self.status_code = status_code


def _make_message(content=None, tool_calls=None):
    return types.SimpleNamespace(content=content, tool_calls=tool_calls, role="assistant")


def _make_tool_call(name, arguments, call_id="call_1"):
    return types.SimpleNamespace(
        id=call_id,
        function=types.SimpleNamespace(name=name, arguments=arguments),
    )


def _make_response(content=None, tool_calls=None, finish_reason="stop"):
    choice = types.SimpleNamespace(
        message=_make_message(content, tool_calls), finish_reason=finish_reason
    )
    usage = types.SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    return types.SimpleNamespace(choices=[choice], usage=usage, id="resp-1")


def _client(**overrides):
    kwargs = dict(provider="lmstudio", model="test-model", retries=3, retry_delay=0)
    kwargs.update(overrides)
    return LLMClient(**kwargs)


# ---------------------------------------------------------------------------
# to_wire
# ---------------------------------------------------------------------------


class TestToWire:
    def test_system_instruction_first(self):
        wire = to_wire([UserMessage(text="hi")], "You are inkwell.")
        assert wire[0] == {"role": "system", "content": "You are inkwell."}
        assert wire[1] == {"role": "user", "content": "hi"}

    def test_no_system_instruction(self):
        wire = to_wire([UserMessage(text="hi")], None)
        assert wire == [{"role": "user", "content": "hi"}]

    def test_tool_exchange(self):
        history = [
            UserMessage(text="list"),
            ModelMessage(
                text="Looking.",
                tool_calls=[ToolCall("list_files", {"path": "."}, "c1")],
            ),
            ToolResultsMessage(
                text="▶ list_files", responses=[ToolResponse("list_files", "c1", "[DIR] a")]
            ),
        ]
        wire = to_wire(history, None)
        assistant = wire[1]
        assert assistant["role"] == "assistant"
        assert assistant["content"] == "Looking."
        call = assistant["tool_calls"][0]
        assert call["id"] == "c1"
        assert call["function"]["name"] == "list_files"
        assert json.loads(call["function"]["arguments"]) == {"path": "."}
        assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "[DIR] a"}

    def test_orphan_responses_become_user_text(self):
        history = [
            ToolResultsMessage(responses=[ToolResponse("read_file", "gone", "content")]),
            UserMessage(text="next"),
        ]
        wire = to_wire(history, None)
        assert wire[0]["role"] == "user"
        assert wire[0]["content"] == "[Tool result: read_file]\ncontent"

    def test_unanswered_call_without_text_skipped(self):
        history = [
            UserMessage(text="q"),
            ModelMessage(tool_calls=[ToolCall("think", {}, "c9")]),
            UserMessage(text="again"),
        ]
        wire = to_wire(history, None)
        assert [m["role"] for m in wire] == ["user", "user"]

    def test_system_message_sent_as_user(self):
        wire = to_wire([SystemMessage(kind="approval", text="User Approved: x")], None)
        assert wire == [{"role": "user", "content": "User Approved: x"}]

    def test_wrap_tools(self):
        decl = {"name": "think", "description": "d", "parameters": {"type": "object"}}
        assert wrap_tools([decl]) == [
            {
                "type": "function",
                "function": {
                    "name": "think",
                    "description": "d",
                    "parameters": {"type": "object"},
                },
            }
        ]


# ---------------------------------------------------------------------------
# from_wire
# ---------------------------------------------------------------------------


class TestFromWire:
    def test_text_response(self):
        resp = from_wire(_make_response("Hello"), "m", duration=1.5, attempts=2)
        assert resp.candidates[0].text == "Hello"
        assert resp.candidates[0].tool_calls == []
        assert resp.metadata.finish_reason == "stop"
        assert resp.metadata.usage == {
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 15,
        }
        assert resp.metadata.attempts == 2
        assert resp.metadata.response_id == "resp-1"

    def test_tool_calls_parsed(self):
        tc = _make_tool_call("read_file", '{"path": "a.md"}', "call_x")
        resp = from_wire(_make_response(None, [tc], "tool_calls"), "m")
        call = resp.candidates[0].tool_calls[0]
        assert call.name == "read_file"
        assert call.args == {"path": "a.md"}
        assert call.call_id == "call_x"
        assert call.arguments_error is None
        assert resp.candidates[0].text == ""

    def test_invalid_arguments_recorded(self):
        tc = _make_tool_call("read_file", "{not json")
        call = from_wire(_make_response(None, [tc]), "m").candidates[0].tool_calls[0]
        assert call.args == {}
        assert "invalid JSON" in call.arguments_error

    def test_non_object_arguments(self):
        tc = _make_tool_call("read_file", "[1, 2]")
        call = from_wire(_make_response(None, [tc]), "m").candidates[0].tool_calls[0]
        assert call.arguments_error == "tool arguments must be a JSON object"

    def test_missing_id_gets_generated(self):
        tc = _make_tool_call("think", "{}", call_id=None)
        call = from_wire(_make_response(None, [tc]), "m").candidates[0].tool_calls[0]
        assert call.call_id.startswith("call_")

    def test_no_choices_is_parse_error(self):
        with pytest.raises(LLMCallError) as exc_info:
            from_wire(types.SimpleNamespace(), "m")
        assert exc_info.value.record.category is ErrorCategory.PARSE

    def test_empty_choices(self):
        resp = from_wire(types.SimpleNamespace(choices=[], usage=None), "m")
        assert resp.candidates == []
        assert resp.metadata.finish_reason is None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestWithRetry:
    def test_success_first_try(self):
        assert with_retry(lambda: "ok", retries=3, initial_delay=0) == ("ok", 1)

    def test_retries_then_succeeds(self):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 3:
                raise _StatusError("busy", 503)
            return "ok"

        assert with_retry(op, retries=3, initial_delay=0) == ("ok", 3)

    def test_always_429_exhausts_retries(self):
        calls = []

        def op():
            calls.append(1)
            raise _StatusError("rate limited", 429)

        with pytest.raises(_StatusError):
            with_retry(op, retries=4, initial_delay=0)
        assert len(calls) == 4

    def test_400_not_retried(self):
        calls = []

        def op():
            calls.append(1)
            raise _StatusError("bad", 400)

        with pytest.raises(_StatusError):
            with_retry(op, retries=5, initial_delay=0)
        assert len(calls) == 1

    def test_cancel_during_backoff(self):
        token = CancelToken()

        def op():
            token.cancel()
            raise _StatusError("busy", 503)

        with pytest.raises(TurnCancelled):
            with_retry(op, retries=3, initial_delay=5, cancel=token)

    def test_cancelled_before_start(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(TurnCancelled):
            with_retry(lambda: "ok", cancel=token)


# ---------------------------------------------------------------------------
# Client configuration and requests
# ---------------------------------------------------------------------------


class TestClientConfig:
    def test_provider_defaults(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-env")
        client = LLMClient(provider="deepseek")
        assert client.model == "deepseek-chat"
        assert client.base_url == "https://api.deepseek.com"
        assert client.api_key == "sk-env"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-env")
        assert LLMClient(provider="deepseek", api_key="sk-cli").api_key == "sk-cli"

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            LLMClient(provider="nope")

    def test_lmstudio_requires_model(self):
        with pytest.raises(ConfigError):
            LLMClient(provider="lmstudio")

    def test_bad_threshold(self):
        with pytest.raises(ConfigError):
            _client(safety_threshold="BLOCK_SOME")

    def test_with_options_keeps_settings(self):
        client = _client(temperature=0.3)
        other = client.with_options(max_output_tokens=100)
        assert other is not client
        assert other.temperature == 0.3
        assert other.max_output_tokens == 100
        assert client.max_output_tokens == 8192

    def test_with_options_provider_switch_resets_defaults(self):
        client = _client(base_url="http://local:1234/v1")
        other = client.with_options(provider="openai")
        assert other.model == "gpt-4o"
        assert other.base_url == "https://api.openai.com/v1"

    def test_context_limit(self):
        assert _client().context_limit == 128_000
        assert _client(model="gemini-2.5-pro").context_limit == 1_000_000


class TestBuildRequest:
    def test_openai_compatible_route(self):
        req = _client().build_request([UserMessage(text="hi")], "sys", [])
        assert req["model"] == "openai/test-model"
        assert req["api_base"] == "http://127.0.0.1:1234/v1"
        assert req["api_key"] == "lm-studio"
        assert req["max_tokens"] == 8192
        assert "tools" not in req
        assert "temperature" not in req

    def test_tools_and_temperature(self):
        decl = {"name": "think", "description": "d", "parameters": {}}
        req = _client(temperature=0.7).build_request([], None, [decl])
        assert req["tools"][0]["function"]["name"] == "think"
        assert req["tool_choice"] == "auto"
        assert req["temperature"] == 0.7

    def test_openrouter_route(self):
        client = LLMClient(provider="openrouter", model="anthropic/some-model", api_key="k")
        req = client.build_request([], None, [])
        assert req["model"] == "openrouter/anthropic/some-model"
        assert "api_base" not in req

    def test_gemini_safety_settings(self):
        client = LLMClient(provider="gemini", api_key="k", safety_threshold="BLOCK_ONLY_HIGH")
        req = client.build_request([], None, [])
        settings = req["extra_body"]["safety_settings"]
        assert len(settings) == 4
        assert all(s["threshold"] == "BLOCK_ONLY_HIGH" for s in settings)

    def test_non_gemini_has_no_safety_settings(self):
        assert "extra_body" not in _client().build_request([], None, [])


class TestSend:
    def test_send_returns_parsed_response(self):
        with patch("litellm.completion", return_value=_make_response("Hi")) as mock:
            resp = _client().send([UserMessage(text="hi")], "sys", [])
        assert resp.candidates[0].text == "Hi"
        assert resp.metadata.model == "test-model"
        sent = mock.call_args.kwargs["messages"]
        assert sent[0]["role"] == "system"

    def test_send_retries_rate_limit(self):
        with patch(
            "litellm.completion", side_effect=_StatusError("rate limited", 429)
        ) as mock:
            with pytest.raises(LLMCallError) as exc_info:
                _client(retries=3).send([UserMessage(text="hi")], None, [])
        assert mock.call_count == 3
        assert exc_info.value.record.category is ErrorCategory.RATE_LIMIT
        assert exc_info.value.status == 429

    def test_send_bad_request_single_attempt(self):
        with patch("litellm.completion", side_effect=_StatusError("bad", 400)) as mock:
            with pytest.raises(LLMCallError):
                _client(retries=3).send([UserMessage(text="hi")], None, [])
        assert mock.call_count == 1

    def test_context_window_exceeded(self):
        exc = litellm.ContextWindowExceededError(
            message="too long", model="test-model", llm_provider="openai"
        )
        with patch("litellm.completion", side_effect=exc) as mock:
            with pytest.raises(ContextOverflowError):
                _client().send([UserMessage(text="hi")], None, [])
        assert mock.call_count == 1

    def test_cancel_after_response(self):
        token = CancelToken()

        def fake_completion(**kwargs):
            token.cancel()
            return _make_response("late")

        with patch("litellm.completion", side_effect=fake_completion):
            with pytest.raises(TurnCancelled):
                _client().send([UserMessage(text="hi")], None, [], token)


# ---------------------------------------------------------------------------
# Candidates and call ids
# ---------------------------------------------------------------------------


class TestCandidateMessage:
    def test_empty_candidate_is_none(self):
        assert candidate_message(Candidate("", [], "stop"), ResponseMetadata("m")) is None

    def test_builds_model_message(self):
        cand = Candidate("text", [ToolCall("think", {}, "c1")], "tool_calls")
        msg = candidate_message(cand, ResponseMetadata("m", "tool_calls"))
        assert isinstance(msg, ModelMessage)
        assert msg.tool_calls[0].call_id == "c1"
        assert msg.metadata["response"]["finish_reason"] == "tool_calls"

    def test_missing_call_id_assigned(self):
        cand = Candidate("", [ToolCall("think", {})], "tool_calls")
        msg = candidate_message(cand, ResponseMetadata("m"))
        assert msg.tool_calls[0].call_id


class TestEnsureCallIds:
    def test_assigns_missing_only(self):
        msgs = [
            ModelMessage(tool_calls=[ToolCall("a", {}), ToolCall("b", {}, "keep")]),
            UserMessage(text="x"),
        ]
        assert ensure_call_ids(msgs) == 1
        assert msgs[0].tool_calls[0].call_id
        assert msgs[0].tool_calls[1].call_id == "keep"
        assert ensure_call_ids(msgs) == 0
