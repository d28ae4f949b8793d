"""HTTP transport for OpenAI-compatible chat-completion endpoints.

ChatClient sends the conversation and tool schema to ``{base_url}/chat/completions``
and always hands back one normalized assistant message, whether the server
answered with a single JSON body or with a stream of ``data:`` events.
Transient failures (timeouts, connection errors, 5xx) are retried with
exponential backoff; everything else surfaces on the first attempt.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

import httpx

from . import fmt
from .errors import (
    ApiStatusError,
    RequestTimeout,
    ResponseFormatError,
    RetriesExhaustedError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_RETRIES = 3
BACKOFF_BASE_MS = 1000
BACKOFF_MAX_MS = 10_000
MAX_DEBUG_BODY = 2000

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"

_MESSAGE_KEYS = ("tool_calls", "tool_call_id", "name")


def backoff_ms(attempt: int) -> int:
    """Delay before retrying after the 0-based ``attempt`` failed."""
    return min(BACKOFF_BASE_MS * 2**attempt, BACKOFF_MAX_MS)


def is_retryable(exc: BaseException) -> bool:
    """Classify a failed attempt.

    Retryable: watchdog/httpx timeouts, connection failures and resets,
    and any 5xx status.
    """
    if isinstance(exc, RequestTimeout):
        return True
    if isinstance(exc, ApiStatusError):
        return exc.status_code >= 500
    return isinstance(
        exc,
        (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError),
    )


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def reduce_message(msg: dict) -> dict:
    """Strip a history message down to the fields the endpoint accepts."""
    out = {"role": msg["role"], "content": msg.get("content")}
    for key in _MESSAGE_KEYS:
        if msg.get(key) is not None:
            out[key] = msg[key]
    return out


def normalize_tool_calls(raw_calls) -> list[dict]:
    """Coerce server tool calls into ``{id, type, function: {name, arguments}}``."""
    calls = []
    for tc in raw_calls or []:
        if not isinstance(tc, dict):
            continue
        function = tc.get("function") or {}
        if not isinstance(function, dict):
            raise ResponseFormatError(
                f"tool call function is not an object: {json.dumps(function)[:200]}"
            )
        arguments = function.get("arguments")
        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments)
        elif arguments is None:
            arguments = ""
        calls.append(
            {
                "id": tc.get("id") or new_call_id(),
                "type": "function",
                "function": {
                    "name": function.get("name") or "unknown",
                    "arguments": arguments,
                },
            }
        )
    return calls


def normalize_message(raw: dict) -> dict:
    """Turn ``choices[0].message`` into an assistant history message."""
    msg = {"role": "assistant", "content": raw.get("content")}
    tool_calls = normalize_tool_calls(raw.get("tool_calls"))
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def parse_completion(data) -> dict:
    try:
        raw = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        raise ResponseFormatError(
            f"unexpected response shape: {json.dumps(data)[:200]}"
        )
    if not isinstance(raw, dict):
        raise ResponseFormatError("choices[0].message is not an object")
    return normalize_message(raw)


@dataclass
class _ToolCallSlot:
    index: int
    order: int
    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)


class StreamAccumulator:
    """Reassemble a server-sent-events chat completion from raw bytes.

    Bytes are buffered until a newline; the trailing partial line waits for
    the next chunk. Content deltas go to ``on_chunk`` immediately. Tool-call
    deltas are accumulated per index, except that an index reused under a
    different id opens a new slot, and a known id always routes back to its
    own slot.
    """

    def __init__(self, on_chunk: Callable[[str], None] | None = None):
        self.on_chunk = on_chunk
        self.done = False
        self._buffer = b""
        self._content: list[str] = []
        self._slots: list[_ToolCallSlot] = []
        self._by_index: dict[int, _ToolCallSlot] = {}
        self._by_id: dict[str, _ToolCallSlot] = {}

    def feed(self, data: bytes) -> None:
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for raw in lines:
            self._handle_line(raw)

    def finish(self) -> dict:
        """Flush the buffer and build the assistant message."""
        if self._buffer:
            self._handle_line(self._buffer)
            self._buffer = b""

        msg = {"role": "assistant", "content": "".join(self._content) or None}
        if self._slots:
            ordered = sorted(self._slots, key=lambda s: (s.index, s.order))
            msg["tool_calls"] = [
                {
                    "id": slot.id or new_call_id(),
                    "type": "function",
                    "function": {
                        "name": slot.name or "unknown",
                        "arguments": "".join(slot.arguments),
                    },
                }
                for slot in ordered
            ]
        return msg

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX) :].strip()
        if payload == DONE_MARKER:
            self.done = True
            return

        try:
            event = json.loads(payload)
            delta = event["choices"][0].get("delta") or {}
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("skipping malformed stream line: %r", line[:200])
            return
        if not isinstance(delta, dict):
            return

        content = delta.get("content")
        if isinstance(content, str) and content:
            self._content.append(content)
            if self.on_chunk is not None:
                self.on_chunk(content)

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tc in tool_calls:
                if isinstance(tc, dict):
                    self._add_tool_delta(tc)

    def _add_tool_delta(self, tc: dict) -> None:
        index = tc.get("index", 0)
        if not isinstance(index, int):
            index = 0
        call_id = tc.get("id") or None

        slot = self._by_id.get(call_id) if call_id is not None else None
        if slot is None:
            slot = self._by_index.get(index)
            if (
                slot is not None
                and call_id is not None
                and slot.id is not None
                and slot.id != call_id
            ):
                logger.debug(
                    "tool call index %d reused by id %s (was %s)", index, call_id, slot.id
                )
                slot = None
        if slot is None:
            slot = _ToolCallSlot(index=index, order=len(self._slots))
            self._slots.append(slot)
        self._by_index[index] = slot

        if call_id is not None and slot.id is None:
            slot.id = call_id
            self._by_id[call_id] = slot

        function = tc.get("function") or {}
        if not isinstance(function, dict):
            return
        if function.get("name"):
            slot.name = function["name"]
        arguments = function.get("arguments")
        if isinstance(arguments, str) and arguments:
            slot.arguments.append(arguments)


class _ReplayGuard:
    """Forward streamed text once when a retried stream repeats its prefix."""

    def __init__(self, on_chunk: Callable[[str], None]):
        self.on_chunk = on_chunk
        self.emitted = 0
        self.seen = 0

    def restart(self) -> None:
        self.seen = 0

    def __call__(self, text: str) -> None:
        start = self.seen
        self.seen += len(text)
        if self.seen <= self.emitted:
            return
        self.on_chunk(text[max(self.emitted - start, 0):])
        self.emitted = self.seen


class ChatClient:
    """Synchronous client for ``POST {base_url}/chat/completions``."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retries: int = DEFAULT_RETRIES,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout_ms = timeout_ms
        self.retries = max(0, retries)
        self.verbose = verbose
        self._sleep = sleep
        self._http = httpx.Client(transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_ms / 1000)

    def build_request_body(
        self, messages: list[dict], tools: list | None, stream: bool
    ) -> dict:
        body: dict = {
            "model": self.model,
            "messages": [reduce_message(m) for m in messages],
        }
        if tools:
            body["tools"] = tools
        body["stream"] = stream
        return body

    def send(
        self,
        messages: list[dict],
        *,
        tools: list | None = None,
        stream: bool = False,
        on_chunk: Callable[[str], None] | None = None,
    ) -> dict:
        """Send the conversation and return one assistant message.

        Raises ApiStatusError (4xx), ResponseFormatError or TransportError on
        the first non-retryable failure, RetriesExhaustedError when every
        attempt failed with a retryable one.
        """
        url = f"{self.base_url}/chat/completions"
        body = self.build_request_body(messages, tools, stream)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("POST %s\n%s", url, json.dumps(body, indent=2)[:MAX_DEBUG_BODY])

        sink = _ReplayGuard(on_chunk) if stream and on_chunk else None
        attempts = self.retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            if sink is not None:
                sink.restart()
            try:
                msg = self._attempt(url, body, stream, sink)
            except (httpx.HTTPError, TransportError) as exc:
                if not is_retryable(exc):
                    if isinstance(exc, TransportError):
                        raise
                    raise TransportError(f"LLM request failed: {exc}") from exc
                last_error = exc
                if attempt == attempts - 1:
                    break
                delay = backoff_ms(attempt)
                logger.info(
                    "retry %d/%d in %dms after: %s", attempt + 1, self.retries, delay, exc
                )
                if self.verbose:
                    fmt.retry_notice(attempt + 1, self.retries, delay, str(exc) or type(exc).__name__)
                self._sleep(delay / 1000)
                continue
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("response: %s", json.dumps(msg)[:MAX_DEBUG_BODY])
            return msg

        raise RetriesExhaustedError(attempts, last_error) from last_error

    def _attempt(
        self,
        url: str,
        body: dict,
        stream: bool,
        on_chunk: Callable[[str], None] | None,
    ) -> dict:
        deadline = time.monotonic() + self.timeout_ms / 1000
        with self._http.stream(
            "POST",
            url,
            json=body,
            headers=self._headers(),
            timeout=self._timeout(),
        ) as response:
            if response.status_code >= 400:
                text = self._read_body(response, deadline)
                raise ApiStatusError(response.status_code, text)

            content_type = response.headers.get("content-type", "")
            if stream and not content_type.startswith("application/json"):
                acc = StreamAccumulator(on_chunk)
                for chunk in response.iter_bytes():
                    self._check_deadline(deadline)
                    acc.feed(chunk)
                return acc.finish()

            text = self._read_body(response, deadline)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ResponseFormatError(f"invalid JSON in response: {exc}") from exc
        return parse_completion(data)

    def _read_body(self, response: httpx.Response, deadline: float) -> str:
        chunks: list[bytes] = []
        for chunk in response.iter_bytes():
            self._check_deadline(deadline)
            chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    def _check_deadline(self, deadline: float) -> None:
        if time.monotonic() > deadline:
            raise RequestTimeout(f"request timed out after {self.timeout_ms}ms")

    def list_models(self, timeout: float = 10.0) -> list[str]:
        """Return the model ids advertised by ``GET {base_url}/models``."""
        url = f"{self.base_url}/models"
        try:
            response = self._http.get(url, headers=self._headers(), timeout=timeout)
        except httpx.HTTPError as exc:
            raise TransportError(f"could not reach {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ApiStatusError(response.status_code, response.text)
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise ResponseFormatError(f"invalid JSON from {url}: {exc}") from exc
        entries = data.get("data") if isinstance(data, dict) else None
        return [e["id"] for e in entries or [] if isinstance(e, dict) and "id" in e]
