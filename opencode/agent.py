"""The conversation orchestrator: history plus the bounded tool-calling loop."""

import copy
import json
import logging
import os
import platform
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

import tiktoken

from . import fmt

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_STEPS = 10

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _get_encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def build_system_prompt(base_dir: str, tools: list) -> str:
    """Base prompt plus environment, available tool names and the date."""
    text = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").rstrip()
    shell = os.environ.get("SHELL") or os.environ.get("COMSPEC") or "unknown"
    names = [t["function"]["name"] for t in tools if "function" in t]
    now = datetime.now().astimezone()
    return (
        f"{text}\n\n"
        "Environment:\n"
        f"- OS: {platform.system()} {platform.release()}\n"
        f"- Shell: {shell}\n"
        f"- Working directory: {Path(base_dir).resolve()}\n\n"
        f"Available tools: {', '.join(names) if names else '(none)'}\n\n"
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )


class Agent:
    """Owns the message history and drives request / tool-execution rounds.

    Everything is synchronous: one request or one tool call at a time, tool
    calls of a step in the order the model issued them.
    """

    def __init__(
        self,
        client,
        dispatcher,
        tools: list,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        system_prompt: str | None = None,
        base_dir: str = ".",
        verbose: bool = False,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.tools = list(tools)
        self.max_steps = max_steps
        self.base_dir = base_dir
        self.verbose = verbose
        if system_prompt is None:
            system_prompt = build_system_prompt(base_dir, self.tools)
        self.system_prompt = system_prompt
        self.exhausted = False
        self._messages: list[dict] = [self._system_message()]
        self._failed_input: str | None = None

    def _system_message(self) -> dict:
        return {"role": "system", "content": self.system_prompt}

    # -- History -------------------------------------------------------------

    @property
    def history(self) -> list[dict]:
        return copy.deepcopy(self._messages)

    def get_history(self) -> list[dict]:
        return self.history

    def set_history(self, messages: list[dict]) -> None:
        messages = copy.deepcopy(list(messages))
        if not messages or messages[0].get("role") != "system":
            messages.insert(0, self._system_message())
        self._messages = messages
        self._failed_input = None
        self.exhausted = False

    def clear_history(self) -> None:
        self._messages = [self._system_message()]
        self._failed_input = None
        self.exhausted = False

    def add_to_context(self, role: str, content: str) -> None:
        self._messages.append({"role": role, "content": content})

    # -- Turns ---------------------------------------------------------------

    def chat(
        self,
        user_input: str,
        *,
        stream: bool = False,
        on_chunk: Callable[[str], None] | None = None,
    ) -> str | None:
        """Run one user turn and return the final assistant text.

        If the previous turn failed on this same input and its user message
        is still last, the message is reused instead of appended again.
        """
        last = self._messages[-1]
        resubmit = (
            self._failed_input == user_input
            and last.get("role") == "user"
            and last.get("content") == user_input
        )
        if not resubmit:
            self._messages.append({"role": "user", "content": user_input})
        return self._run(user_input, stream, on_chunk)

    def retry(
        self,
        *,
        stream: bool = False,
        on_chunk: Callable[[str], None] | None = None,
    ) -> str | None:
        """Resume the loop on the current history without a new user message."""
        pending = self._failed_input
        last = self._messages[-1]
        if pending is None and last.get("role") == "user":
            pending = last.get("content")
        return self._run(pending, stream, on_chunk)

    def _run(self, pending: str | None, stream: bool, on_chunk) -> str | None:
        try:
            answer = self._loop(stream and on_chunk is not None, on_chunk)
        except Exception:
            self._failed_input = pending
            raise
        self._failed_input = None
        return answer

    def _request(self, stream: bool, on_chunk) -> dict:
        if stream:
            return self.client.send(
                self._messages, tools=self.tools, stream=True, on_chunk=on_chunk
            )
        if self.verbose:
            with fmt.llm_spinner():
                return self.client.send(self._messages, tools=self.tools)
        return self.client.send(self._messages, tools=self.tools)

    def _loop(self, stream: bool, on_chunk) -> str | None:
        self.exhausted = False
        last_text: str | None = None

        for step in range(1, self.max_steps + 1):
            if self.verbose:
                fmt.turn_header(step, self.max_steps, estimate_tokens(self._messages, self.tools))

            t0 = time.monotonic()
            msg = self._request(stream, on_chunk)
            elapsed = time.monotonic() - t0

            tool_calls = msg.get("tool_calls") or []
            if self.verbose:
                fmt.llm_timing(elapsed, len(tool_calls))
            self._messages.append(msg)

            content = msg.get("content")
            if not tool_calls:
                if self.verbose:
                    fmt.completion(step, "ok")
                return content or ""

            if content:
                last_text = content
                if self.verbose and not stream:
                    fmt.assistant_text(content)

            for tc in tool_calls:
                result = self.dispatcher.execute(tc)
                self._messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": tc["id"],
                        "name": tc["function"]["name"],
                        "content": result["content"],
                    }
                )

        self.exhausted = True
        logger.info("step limit of %d reached without a final answer", self.max_steps)
        if self.verbose:
            fmt.completion(self.max_steps, "exhausted")
        return last_text
