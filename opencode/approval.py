"""Shell-command approval: the state machine and the providers that answer it."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from . import fmt

DENIED_BY_USER = "User denied command execution."


class ApprovalState(str, Enum):
    DRY_RUN = "dry_run"
    AUTO_APPROVED = "auto_approved"
    ALLOWLIST_DENIED = "allowlist_denied"
    INTERACTIVE_APPROVED = "interactive_approved"
    INTERACTIVE_DENIED = "interactive_denied"

    @property
    def allowed(self) -> bool:
        return self in (ApprovalState.AUTO_APPROVED, ApprovalState.INTERACTIVE_APPROVED)


@dataclass
class ApprovalDecision:
    state: ApprovalState
    message: str = ""


class ApprovalProvider:
    """Answers "may this command run?" when no policy decides it up front."""

    def confirm(self, command: str) -> bool:
        raise NotImplementedError


class FixedApproval(ApprovalProvider):
    """Always gives the same answer. For scripted and automated sessions."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.asked: list[str] = []

    def confirm(self, command: str) -> bool:
        self.asked.append(command)
        return self.answer


class InteractiveApproval(ApprovalProvider):
    """Blocks on a terminal prompt; only a literal ``y`` approves."""

    PROMPT = "Allow? (y/n): "

    def __init__(self, prompt_fn: Callable[[str], str] | None = None):
        if prompt_fn is None:
            from prompt_toolkit import prompt as prompt_fn
        self._prompt = prompt_fn

    def confirm(self, command: str) -> bool:
        fmt.approval_request(command)
        try:
            answer = self._prompt(self.PROMPT)
        except (EOFError, KeyboardInterrupt):
            return False
        return answer.strip().lower() == "y"


def command_base(command: str) -> str:
    """First whitespace-separated token of the command, lower-cased."""
    parts = command.strip().split()
    return parts[0].lower() if parts else ""


def allowlist_denial(base: str) -> str:
    return f'Command "{base}" not in allowlist. Use --allow "cmd1,cmd2" to add.'


def evaluate(
    command: str,
    *,
    dry_run: bool = False,
    auto_approve: bool = False,
    allowlist: Iterable[str] = (),
    provider: ApprovalProvider | None = None,
) -> ApprovalDecision:
    """Decide whether a shell command may run.

    Dry-run wins over everything. With auto-approve, a non-empty allowlist
    restricts the command's first token; otherwise the provider is asked.
    A missing provider counts as a refusal.
    """
    if dry_run:
        return ApprovalDecision(ApprovalState.DRY_RUN)

    if auto_approve:
        allowed = {c.strip().lower() for c in allowlist if c.strip()}
        if not allowed:
            return ApprovalDecision(ApprovalState.AUTO_APPROVED)
        base = command_base(command)
        if base in allowed:
            return ApprovalDecision(ApprovalState.AUTO_APPROVED)
        return ApprovalDecision(ApprovalState.ALLOWLIST_DENIED, allowlist_denial(base))

    if provider is not None and provider.confirm(command):
        return ApprovalDecision(ApprovalState.INTERACTIVE_APPROVED)
    return ApprovalDecision(ApprovalState.INTERACTIVE_DENIED, DENIED_BY_USER)
