"""Tests for the Agent turn loop, using a scripted client and a real dispatcher."""

import json

import httpx
import pytest

from opencode.agent import Agent, build_system_prompt
from opencode.approval import FixedApproval
from opencode.client import ChatClient
from opencode.errors import ApiStatusError, RetriesExhaustedError
from opencode.tools import TOOLS, ToolDispatcher


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedClient:
    """Returns queued assistant messages (or raises queued exceptions)."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def send(self, messages, *, tools=None, stream=False, on_chunk=None):
        self.requests.append({"messages": json.loads(json.dumps(messages)), "stream": stream})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if stream and on_chunk and reply.get("content"):
            for word in reply["content"].split(" "):
                on_chunk(word)
        return reply


def _tool_call(name, args, call_id):
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(args)},
    }


def _assistant(content=None, tool_calls=None):
    msg = {"role": "assistant", "content": content}
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def _agent(client, tmp_path, **kwargs):
    dispatcher = ToolDispatcher(str(tmp_path), approval=FixedApproval(False))
    return Agent(client, dispatcher, TOOLS, system_prompt="SYS", base_dir=str(tmp_path), **kwargs)


# ===========================================================================
# Basic turns
# ===========================================================================


class TestChat:
    def test_plain_answer(self, tmp_path):
        client = ScriptedClient(_assistant("hi there"))
        agent = _agent(client, tmp_path)
        assert agent.chat("hello") == "hi there"
        assert [m["role"] for m in agent.history] == ["system", "user", "assistant"]
        assert agent.exhausted is False

    def test_null_content_answer_is_empty_string(self, tmp_path):
        agent = _agent(ScriptedClient(_assistant(None)), tmp_path)
        assert agent.chat("hello") == ""

    def test_system_message_first(self, tmp_path):
        agent = _agent(ScriptedClient(), tmp_path)
        assert agent.history == [{"role": "system", "content": "SYS"}]

    def test_tool_messages_follow_calls_in_order(self, tmp_path):
        (tmp_path / "a.txt").write_text("AAA", encoding="utf-8")
        (tmp_path / "b.txt").write_text("BBB", encoding="utf-8")
        calls = [
            _tool_call("read_file", {"path": "a.txt"}, "call_a"),
            _tool_call("read_file", {"path": "b.txt"}, "call_b"),
            _tool_call("nonexistent", {}, "call_c"),
        ]
        client = ScriptedClient(_assistant("reading", calls), _assistant("done"))
        agent = _agent(client, tmp_path)

        assert agent.chat("read both") == "done"
        history = agent.history
        assistant = history[2]
        tool_msgs = history[3:6]
        assert [tc["id"] for tc in assistant["tool_calls"]] == ["call_a", "call_b", "call_c"]
        assert [m["role"] for m in tool_msgs] == ["tool"] * 3
        assert [m["tool_call_id"] for m in tool_msgs] == ["call_a", "call_b", "call_c"]
        assert [m["content"] for m in tool_msgs] == ["AAA", "BBB", "error: unknown tool: nonexistent"]
        assert tool_msgs[0]["name"] == "read_file"
        assert history[6] == {"role": "assistant", "content": "done"}

        # Second request saw the tool results
        second = client.requests[1]["messages"]
        assert second[-1]["tool_call_id"] == "call_c"

    def test_step_bound_ends_without_extra_messages(self, tmp_path):
        loop_call = lambda i: _assistant(
            f"step {i}", [_tool_call("list_files", {}, f"call_{i}")]
        )
        client = ScriptedClient(*[loop_call(i) for i in range(10)])
        agent = _agent(client, tmp_path)

        answer = agent.chat("loop forever")

        assert agent.exhausted is True
        assert answer == "step 9"
        assert len(client.requests) == 10
        history = agent.history
        # system + user + 10 * (assistant + tool)
        assert len(history) == 2 + 20
        assert history[-1]["role"] == "tool"
        assert history[-1]["tool_call_id"] == "call_9"

    def test_exhausted_resets_on_next_turn(self, tmp_path):
        client = ScriptedClient(
            _assistant(None, [_tool_call("list_files", {}, "c1")]), _assistant("ok")
        )
        agent = _agent(client, tmp_path, max_steps=1)
        assert agent.chat("a") is None
        assert agent.exhausted
        assert agent.chat("b") == "ok"
        assert not agent.exhausted

    def test_denied_command_goes_back_to_model(self, tmp_path):
        client = ScriptedClient(
            _assistant(None, [_tool_call("run_command", {"command": "rm -rf x"}, "c1")]),
            _assistant("ok, not running it"),
        )
        agent = _agent(client, tmp_path)
        agent.chat("clean up")
        assert agent.history[3]["content"] == "User denied command execution."


class TestStreaming:
    def test_chunks_forwarded(self, tmp_path):
        client = ScriptedClient(_assistant("Hello world"))
        agent = _agent(client, tmp_path)
        chunks = []
        assert agent.chat("hi", stream=True, on_chunk=chunks.append) == "Hello world"
        assert chunks == ["Hello", "world"]
        assert client.requests[0]["stream"] is True

    def test_stream_requires_sink(self, tmp_path):
        client = ScriptedClient(_assistant("x"))
        _agent(client, tmp_path).chat("hi", stream=True)
        assert client.requests[0]["stream"] is False

    def test_end_to_end_with_http_stream(self, tmp_path):
        def sse(delta):
            return f"data: {json.dumps({'choices': [{'delta': delta}]})}\n\n".encode()

        def handler(request):
            body = sse({"content": "Hello"}) + sse({"content": " world"}) + b"data: [DONE]\n\n"
            return httpx.Response(200, content=iter([body]))

        client = ChatClient("http://llm.test/v1", "m", transport=httpx.MockTransport(handler))
        agent = _agent(client, tmp_path)
        chunks = []
        assert agent.chat("hi", stream=True, on_chunk=chunks.append) == "Hello world"
        assert chunks == ["Hello", " world"]


class TestFailures:
    def test_failure_keeps_user_message(self, tmp_path):
        client = ScriptedClient(ApiStatusError(400, "bad request"))
        agent = _agent(client, tmp_path)
        with pytest.raises(ApiStatusError):
            agent.chat("question")
        assert agent.history[-1] == {"role": "user", "content": "question"}

    def test_resubmit_same_input_not_duplicated(self, tmp_path):
        client = ScriptedClient(
            RetriesExhaustedError(4, RuntimeError("down")), _assistant("answer")
        )
        agent = _agent(client, tmp_path)
        with pytest.raises(RetriesExhaustedError):
            agent.chat("question")
        assert agent.chat("question") == "answer"
        users = [m for m in agent.history if m["role"] == "user"]
        assert users == [{"role": "user", "content": "question"}]

    def test_retry_resumes(self, tmp_path):
        client = ScriptedClient(ApiStatusError(500, "x"), _assistant("answer"))
        agent = _agent(client, tmp_path)
        with pytest.raises(ApiStatusError):
            agent.chat("question")
        assert agent.retry() == "answer"
        assert [m["role"] for m in agent.history] == ["system", "user", "assistant"]

    def test_different_input_after_failure_is_appended(self, tmp_path):
        client = ScriptedClient(ApiStatusError(500, "x"), _assistant("answer"))
        agent = _agent(client, tmp_path)
        with pytest.raises(ApiStatusError):
            agent.chat("first")
        agent.chat("second")
        users = [m["content"] for m in agent.history if m["role"] == "user"]
        assert users == ["first", "second"]

    def test_failure_after_tool_round_keeps_results(self, tmp_path):
        client = ScriptedClient(
            _assistant(None, [_tool_call("list_files", {}, "c1")]),
            ApiStatusError(503, "x"),
        )
        agent = _agent(client, tmp_path)
        with pytest.raises(ApiStatusError):
            agent.chat("q")
        assert [m["role"] for m in agent.history] == ["system", "user", "assistant", "tool"]


class TestHistory:
    def test_history_is_a_copy(self, tmp_path):
        agent = _agent(ScriptedClient(), tmp_path)
        h = agent.history
        h.append({"role": "user", "content": "sneaky"})
        h[0]["content"] = "changed"
        assert agent.history == [{"role": "system", "content": "SYS"}]
        assert agent.get_history() == agent.history

    def test_set_history_copies(self, tmp_path):
        agent = _agent(ScriptedClient(), tmp_path)
        msgs = [{"role": "system", "content": "OLD"}, {"role": "user", "content": "u"}]
        agent.set_history(msgs)
        msgs[1]["content"] = "mutated"
        assert agent.history[1]["content"] == "u"

    def test_set_history_without_system_gets_one(self, tmp_path):
        agent = _agent(ScriptedClient(), tmp_path)
        agent.set_history([{"role": "user", "content": "u"}])
        assert agent.history[0] == {"role": "system", "content": "SYS"}

    def test_clear_and_add(self, tmp_path):
        agent = _agent(ScriptedClient(_assistant("x")), tmp_path)
        agent.chat("q")
        agent.add_to_context("user", "file contents")
        assert agent.history[-1] == {"role": "user", "content": "file contents"}
        agent.clear_history()
        assert agent.history == [{"role": "system", "content": "SYS"}]


class TestSystemPrompt:
    def test_contains_environment_and_tools(self, tmp_path):
        extra = [{"type": "function", "function": {"name": "word_count"}}]
        prompt = build_system_prompt(str(tmp_path), TOOLS + extra)
        assert str(tmp_path.resolve()) in prompt
        assert "read_file" in prompt
        assert "word_count" in prompt
        assert "Current date and time:" in prompt

    def test_default_prompt_built(self, tmp_path):
        dispatcher = ToolDispatcher(str(tmp_path), approval=FixedApproval(False))
        agent = Agent(ScriptedClient(), dispatcher, TOOLS, base_dir=str(tmp_path))
        assert agent.history[0]["role"] == "system"
        assert "git_commit" in agent.history[0]["content"]
