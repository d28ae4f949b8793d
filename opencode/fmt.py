"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def console() -> Console:
    return _console


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Step {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, tool_calls: int) -> None:
    style = "green" if not tool_calls else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    if tool_calls:
        text.append(f"  tool_calls={tool_calls}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def retry_notice(attempt: int, max_retries: int, delay_ms: int, reason: str) -> None:
    line = Text()
    line.append(f"  \u21bb Retry {attempt}/{max_retries} in {delay_ms}ms", style="yellow")
    line.append(f"  ({reason})", style="dim")
    _console.print(line)


def completion(steps: int, status: str) -> None:
    if status == "ok":
        _console.print(
            Text(f"  \u2713 Agent finished: {steps} steps", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {steps} steps, status={status}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def dry_run(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="yellow"))


def approval_request(command: str) -> None:
    line = Text()
    line.append("  \u26a0 Agent wants to run: ", style="bold yellow")
    line.append(command, style="yellow")
    _console.print(line)


def approval_outcome(state: str, detail: str = "") -> None:
    style = "green" if state.endswith("approved") else "red"
    line = Text(f"  [{state}]", style=style)
    if detail:
        line.append(f" {detail}", style="dim")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    _console.print(Text(f"  \u2713 {msg}", style="green"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(model: str, base_url: str) -> None:
    _console.print(Rule("opencode", style="cyan"))
    _console.print(Text(f"  model: {model}  endpoint: {base_url}", style="dim"))
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
