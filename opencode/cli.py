"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import logging
import os
import sys
from importlib import metadata
from pathlib import Path

from rich.logging import RichHandler

from . import fmt
from .agent import Agent, estimate_tokens
from .approval import ApprovalProvider
from .audit import AuditLog
from .client import ChatClient
from .config import (
    _UNSET,
    Settings,
    apply_config_to_args,
    generate_config,
    load_config,
    load_env,
    settings_from_args,
)
from .errors import AgentError
from .plugins import load_plugins
from .session import load_session, save_session
from .tools import TOOLS, ToolDispatcher

logger = logging.getLogger(__name__)

STATE_DIR = ".opencode"
DEFAULT_SESSION_FILE = "session.json"
EXIT_EXHAUSTED = 2

_LOG_LEVELS = {
    "quiet": logging.WARNING,
    "normal": logging.WARNING,
    "verbose": logging.INFO,
    "debug": logging.DEBUG,
}


def _comma_list(value: str) -> list[str]:
    return [c.strip() for c in value.split(",") if c.strip()]


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="opencode",
        usage="%(prog)s [options] [question]",
        description="A terminal coding assistant for OpenAI-compatible endpoints.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer a single question and exit. Without it an interactive session starts.",
    )
    parser.add_argument(
        "--run", metavar="PROMPT", default=None, help="Same as the positional question."
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--config", metavar="FILE", default=None, help="Read configuration from FILE only."
    )
    parser.add_argument(
        "--no-banner", action="store_true", help="Do not print the REPL banner."
    )
    parser.add_argument(
        "--session",
        metavar="FILE",
        default=None,
        help="Load the conversation from FILE if it exists and save it back on exit.",
    )

    parser.add_argument("--model", default=_UNSET, help="Model name.")
    parser.add_argument("--base-url", default=_UNSET, help="Endpoint base URL.")
    parser.add_argument("--api-key", default=_UNSET, help="API key (overrides env var).")
    parser.add_argument(
        "--timeout", type=int, default=_UNSET, metavar="MS", help="Per-request timeout in ms."
    )
    parser.add_argument(
        "--retries", type=int, default=_UNSET, help="Extra attempts for transient failures."
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum request/tool rounds per question (default: 10).",
    )
    parser.add_argument(
        "--stream", action="store_true", default=_UNSET, help="Stream the answer as it arrives."
    )
    parser.add_argument(
        "--yes",
        "-y",
        dest="auto_approve",
        action="store_true",
        default=_UNSET,
        help="Run shell commands without asking (restricted by --allow if given).",
    )
    parser.add_argument(
        "--allow",
        dest="allowed_commands",
        type=_comma_list,
        default=_UNSET,
        metavar="LIST",
        help='Comma-separated commands allowed with --yes, e.g. "git,ls".',
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=_UNSET,
        help="Describe tool calls instead of executing them.",
    )
    parser.add_argument(
        "--audit-log", metavar="FILE", default=_UNSET, help="Append tool calls to FILE (JSONL)."
    )
    parser.add_argument(
        "--plugin-dir", metavar="DIR", default=_UNSET, help="Load tool plugins from DIR."
    )

    level_group = parser.add_mutually_exclusive_group()
    level_group.add_argument(
        "--verbose", "-V", dest="log_level", action="store_const", const="verbose",
        default=_UNSET, help="Show steps, tool calls and timings.",
    )
    level_group.add_argument(
        "--quiet", "-q", dest="log_level", action="store_const", const="quiet",
        default=_UNSET, help="Only print answers and errors.",
    )
    level_group.add_argument(
        "--debug", dest="log_level", action="store_const", const="debug",
        default=_UNSET, help="Verbose output plus request/response traces.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", dest="color", action="store_const", const=True, default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color", dest="color", action="store_const", const=False, default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _init_logging(level: str) -> None:
    logging.basicConfig(
        level=_LOG_LEVELS.get(level, logging.WARNING),
        format="%(message)s",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
        force=True,
    )
    if level != "debug":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_agent(
    settings: Settings, base_dir: str, approval: ApprovalProvider | None = None
) -> Agent:
    """Wire client, dispatcher, plugins and audit log into an Agent."""
    plugins = load_plugins(settings.plugin_dir, verbose=settings.verbose)
    audit = AuditLog(settings.audit_log) if settings.audit_log else None
    dispatcher = ToolDispatcher(
        base_dir,
        auto_approve=settings.auto_approve,
        allowlist=settings.allowed_commands,
        dry_run=settings.dry_run,
        approval=approval,
        plugin_handlers=plugins.handlers,
        audit=audit,
        verbose=settings.verbose,
    )
    client = ChatClient(
        settings.base_url,
        settings.model,
        api_key=settings.api_key,
        timeout_ms=settings.timeout,
        retries=settings.retries,
        verbose=settings.log_level != "quiet",
    )
    return Agent(
        client,
        dispatcher,
        TOOLS + plugins.definitions,
        max_steps=settings.max_steps,
        base_dir=base_dir,
        verbose=settings.verbose,
    )


def _stdout_sink(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


def _print_answer(answer: str | None, streamed: bool) -> None:
    if streamed:
        sys.stdout.write("\n")
        sys.stdout.flush()
    elif answer is not None:
        print(answer)


def run_once(agent: Agent, prompt: str, stream: bool = False) -> int:
    """Answer one question. Returns the process exit status."""
    answer = agent.chat(prompt, stream=stream, on_chunk=_stdout_sink if stream else None)
    _print_answer(answer, stream)
    if agent.exhausted:
        fmt.warning(f"step limit ({agent.max_steps}) reached, agent stopped.")
        return EXIT_EXHAUSTED
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("opencode-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    if args.run and args.question:
        parser.error("give the question either positionally or with --run, not both")

    try:
        sys.exit(_run_main(args))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args) -> int:
    base_dir = os.getcwd()
    config = load_config(Path(base_dir), args.config)
    env = load_env(Path(base_dir))
    apply_config_to_args(args, config, env)
    settings = settings_from_args(args)

    fmt.init(color=settings.color is True, no_color=settings.color is False)
    _init_logging(settings.log_level)
    logger.debug("settings: %s", {**vars(settings), "api_key": "***" if settings.api_key else None})

    agent = build_agent(settings, base_dir)
    session_path = Path(args.session) if args.session else None
    if session_path is not None and session_path.exists():
        agent.set_history(load_session(session_path))
        if settings.verbose:
            fmt.info(f"Loaded session from {session_path}")

    prompt = args.run or args.question
    try:
        if prompt:
            return run_once(agent, prompt, settings.stream)
        repl_loop(agent, settings, base_dir, show_banner=not args.no_banner)
        return 0
    finally:
        if session_path is not None:
            save_session(agent.history, session_path)
        agent.client.close()


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation\n"
        "  /save [path]       Save the conversation to a JSON file\n"
        "  /load <path>       Replace the conversation with a saved one\n"
        "  /add <file>        Add a file's contents to the conversation\n"
        "  /retry             Resubmit after a failed request\n"
        "  /status            Show model, endpoint and conversation size\n"
        "  /ping              Check that the endpoint is reachable\n"
        "  /model [name]      Show or change the model\n"
        "  /timeout [ms]      Show or change the request timeout\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_save(agent: Agent, arg: str, base_dir: str) -> None:
    path = Path(arg) if arg else Path(base_dir) / STATE_DIR / DEFAULT_SESSION_FILE
    try:
        saved = save_session(agent.history, path)
    except OSError as e:
        fmt.error(f"cannot save session: {e}")
        return
    fmt.success(f"Session saved to {saved}")


def _repl_load(agent: Agent, arg: str) -> None:
    if not arg:
        fmt.warning("/load requires a path argument")
        return
    agent.set_history(load_session(arg))
    fmt.success(f"Session loaded from {arg} ({len(agent.history)} messages)")


def _repl_add(agent: Agent, arg: str, base_dir: str) -> None:
    if not arg:
        fmt.warning("/add requires a file argument")
        return
    p = Path(arg).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    try:
        content = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        fmt.error(f"cannot read {arg}: {e}")
        return
    agent.add_to_context("user", f"Content of {arg}:\n```\n{content}\n```")
    fmt.success(f"Added {arg} to context ({len(content)} chars)")


def _repl_status(agent: Agent, settings: Settings) -> None:
    client = agent.client
    fmt.info(
        f"model: {client.model}\n"
        f"endpoint: {client.base_url}\n"
        f"timeout: {client.timeout_ms}ms, retries: {client.retries}\n"
        f"max steps: {agent.max_steps}, stream: {settings.stream}\n"
        f"auto-approve: {settings.auto_approve}, dry-run: {settings.dry_run}\n"
        f"messages: {len(agent.history)}"
    )
    fmt.context_stats("context", estimate_tokens(agent.history, agent.tools))


def _repl_ping(agent: Agent) -> None:
    models = agent.client.list_models()
    fmt.success(f"{agent.client.base_url} is reachable ({len(models)} models)")
    if models and agent.client.model not in models:
        fmt.warning(f"model {agent.client.model!r} is not in the server's list")


def _repl_model(agent: Agent, arg: str) -> None:
    if arg:
        agent.client.model = arg
        fmt.success(f"Model set to {arg}")
    else:
        fmt.info(f"model: {agent.client.model}")


def _repl_timeout(agent: Agent, arg: str) -> None:
    if not arg:
        fmt.info(f"timeout: {agent.client.timeout_ms}ms")
        return
    try:
        ms = int(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if ms < 1:
        fmt.warning("timeout must be at least 1ms")
        return
    agent.client.timeout_ms = ms
    fmt.success(f"Timeout set to {ms}ms")


def _repl_turn(agent: Agent, settings: Settings, fn) -> None:
    stream = settings.stream
    on_chunk = _stdout_sink if stream else None
    try:
        answer = fn(stream=stream, on_chunk=on_chunk)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return
    except AgentError as e:
        if stream:
            sys.stdout.write("\n")
        fmt.error(str(e))
        fmt.info("Use /retry to resubmit.")
        return
    _print_answer(answer, stream)
    if agent.exhausted:
        fmt.warning(f"step limit ({agent.max_steps}) reached for this question.")


def repl_loop(
    agent: Agent, settings: Settings, base_dir: str, show_banner: bool = True
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, STATE_DIR, "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "opencode> ")])

    if show_banner:
        fmt.repl_banner(agent.client.model, agent.client.base_url)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

        try:
            if cmd == "/help":
                _repl_help()
            elif cmd == "/clear":
                agent.clear_history()
                fmt.info("context cleared")
            elif cmd == "/save":
                _repl_save(agent, cmd_arg, base_dir)
            elif cmd == "/load":
                _repl_load(agent, cmd_arg)
            elif cmd == "/add":
                _repl_add(agent, cmd_arg, base_dir)
            elif cmd == "/status":
                _repl_status(agent, settings)
            elif cmd == "/ping":
                _repl_ping(agent)
            elif cmd == "/model":
                _repl_model(agent, cmd_arg)
            elif cmd == "/timeout":
                _repl_timeout(agent, cmd_arg)
            elif cmd == "/retry":
                _repl_turn(agent, settings, agent.retry)
            else:
                _repl_turn(agent, settings, lambda **kw: agent.chat(line, **kw))
        except AgentError as e:
            fmt.error(str(e))


if __name__ == "__main__":
    main()
