"""Exception hierarchy shared by the agent, the transport and the CLI."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong types, missing file)."""


class SessionError(AgentError):
    """Raised when a saved session cannot be read back."""


class TransportError(AgentError):
    """Raised when the inference endpoint cannot produce a response."""


class RequestTimeout(TransportError):
    """The per-attempt watchdog fired before the response was complete."""


class ApiStatusError(TransportError):
    """The endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error {status_code}: {body}")


class ResponseFormatError(TransportError):
    """The endpoint answered 2xx but the body is not a chat completion."""


class RetriesExhaustedError(TransportError):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"LLM request failed after {attempts} attempts: {last_error}"
        )
