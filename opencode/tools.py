"""Tool definitions and implementations for the coding agent."""

import json
import logging
import os
import re
import subprocess
import sys
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from . import fmt
from .approval import (
    ApprovalDecision,
    ApprovalProvider,
    ApprovalState,
    InteractiveApproval,
    evaluate,
)
from .edit import replace

logger = logging.getLogger(__name__)


def _schema(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_REPO_PATH = {"type": "string", "description": "Repository path (default .)."}

TOOLS = [
    _schema(
        "write_file",
        "Create or overwrite a file with content. Parent directories are created.",
        {
            "path": {"type": "string", "description": "File path."},
            "content": {"type": "string", "description": "Full file content."},
        },
        ["path", "content"],
    ),
    _schema(
        "read_file",
        "Read the contents of a UTF-8 text file. Output is capped at 100KB.",
        {"path": {"type": "string", "description": "File path."}},
        ["path"],
    ),
    _schema(
        "list_files",
        "List the entries of a directory. Subdirectories have a / suffix.",
        {"path": {"type": "string", "description": "Directory path (default .)."}},
        [],
    ),
    _schema(
        "create_directory",
        "Create a directory, including missing parents.",
        {"path": {"type": "string", "description": "Directory path."}},
        ["path"],
    ),
    _schema(
        "grep_search",
        (
            "Search for a regex pattern in files. Returns matching lines as "
            "path:line: text, at most 50 results."
        ),
        {
            "pattern": {"type": "string", "description": "Regular expression."},
            "path": {
                "type": "string",
                "description": "File or directory to search (default .).",
            },
            "recursive": {
                "type": "boolean",
                "description": "Descend into subdirectories (default true).",
            },
            "ignore_case": {
                "type": "boolean",
                "description": "Case-insensitive match (default false).",
            },
        },
        ["pattern"],
    ),
    _schema(
        "edit_file",
        (
            "Edit a file by replacing exact text. Every occurrence of old_text "
            "is replaced. Prefer this over rewriting the whole file."
        ),
        {
            "path": {"type": "string", "description": "File path to edit."},
            "old_text": {"type": "string", "description": "Exact text to find."},
            "new_text": {"type": "string", "description": "Replacement text."},
        },
        ["path", "old_text", "new_text"],
    ),
    _schema(
        "run_command",
        "Run a shell command in the workspace. Requires approval.",
        {
            "command": {"type": "string", "description": "Shell command line."},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (1-600). Defaults to 120.",
            },
        },
        ["command"],
    ),
    _schema("git_status", "Show git working tree status.", {"path": _REPO_PATH}, []),
    _schema(
        "git_diff",
        "Show unstaged changes, or staged changes with staged=true.",
        {
            "staged": {"type": "boolean", "description": "Show the staged diff."},
            "path": _REPO_PATH,
        },
        [],
    ),
    _schema(
        "git_add",
        "Stage files for commit.",
        {
            "paths": {
                "type": "string",
                "description": "Space-separated file paths, or . for everything.",
            },
            "path": _REPO_PATH,
        },
        [],
    ),
    _schema(
        "git_commit",
        "Create a commit from the staged changes.",
        {
            "message": {"type": "string", "description": "Commit message."},
            "path": _REPO_PATH,
        },
        ["message"],
    ),
    _schema(
        "git_stash",
        "Stash working changes (push) or restore the latest stash (pop).",
        {
            "action": {"type": "string", "enum": ["push", "pop"]},
            "message": {"type": "string", "description": "Message for push."},
            "path": _REPO_PATH,
        },
        ["action"],
    ),
]


class ToolKind(str, Enum):
    WRITE_FILE = "write_file"
    READ_FILE = "read_file"
    LIST_FILES = "list_files"
    CREATE_DIRECTORY = "create_directory"
    GREP_SEARCH = "grep_search"
    EDIT_FILE = "edit_file"
    RUN_COMMAND = "run_command"
    GIT_STATUS = "git_status"
    GIT_DIFF = "git_diff"
    GIT_ADD = "git_add"
    GIT_COMMIT = "git_commit"
    GIT_STASH = "git_stash"


ALIASES: dict[str, ToolKind] = {kind.value: kind for kind in ToolKind}
ALIASES.update(
    {
        "create_file": ToolKind.WRITE_FILE,
        "file_write": ToolKind.WRITE_FILE,
        "file_read": ToolKind.READ_FILE,
        "ls": ToolKind.LIST_FILES,
        "mkdir": ToolKind.CREATE_DIRECTORY,
        "search": ToolKind.GREP_SEARCH,
        "grep": ToolKind.GREP_SEARCH,
        "patch_file": ToolKind.EDIT_FILE,
        "shell": ToolKind.RUN_COMMAND,
        "bash": ToolKind.RUN_COMMAND,
    }
)

BUILTIN_NAMES = frozenset(ALIASES)


def resolve_tool(name: str) -> ToolKind | None:
    return ALIASES.get(name)


MAX_READ_BYTES = 100 * 1024  # 100 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LINE_LENGTH = 2000
MAX_GREP_RESULTS = 50
SKIP_DIRS = frozenset({"node_modules", "dist", "build", "__pycache__"})
MAX_COMMAND_OUTPUT = 100 * 1024  # 100 KB
DEFAULT_COMMAND_TIMEOUT = 120
MAX_COMMAND_TIMEOUT = 600
GIT_TIMEOUT = 60
MAX_PREVIEW = 200

_REQUIRED = object()


def _str_arg(args: dict, key: str, default=_REQUIRED) -> str:
    value = args.get(key)
    if value is None:
        if default is _REQUIRED:
            raise ValueError(f"missing required argument: {key}")
        return default
    if not isinstance(value, str):
        raise ValueError(f"argument {key!r} must be a string")
    return value


def _bool_arg(args: dict, key: str, default: bool) -> bool:
    value = args.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def resolve_path(path: str, base_dir: str) -> Path:
    """Resolve a tool path against the workspace directory."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p


def decode_arguments(raw) -> tuple[dict | None, str | None]:
    """Decode tool-call arguments. Returns (args, error)."""
    if isinstance(raw, dict):
        return raw, None
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}, None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        return None, str(e)
    if not isinstance(parsed, dict):
        return None, f"expected an object, got {type(parsed).__name__}"
    return parsed, None


# -- File tools --------------------------------------------------------------


def _write_file(path: str, content: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if resolved.is_dir():
        return f"error: path is a directory: {path}"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return f"Successfully wrote to {path}"


def _read_file(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if resolved.is_dir():
        return f"error: path is a directory (use list_files): {path}"

    data = resolved.read_bytes()
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        return f"error: binary file detected: {path}"
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"

    if len(data) > MAX_READ_BYTES:
        head = data[:MAX_READ_BYTES].decode("utf-8", errors="ignore")
        return f"{head}\n[truncated: showing first 100KB of {len(data)} bytes]"
    return text


def _list_files(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if not resolved.is_dir():
        return f"error: path is not a directory: {path}"
    names = [
        child.name + ("/" if child.is_dir() else "")
        for child in sorted(resolved.iterdir(), key=lambda c: c.name)
    ]
    return "\n".join(names) if names else "(empty directory)"


def _create_directory(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    resolved.mkdir(parents=True, exist_ok=True)
    return f"Successfully created directory {path}"


def _edit_file(path: str, old_text: str, new_text: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.is_file():
        return f"error: file does not exist: {path}"
    if not old_text:
        return "error: old_text must not be empty"

    # Bytes in and out so line endings survive untouched.
    content = resolved.read_bytes().decode("utf-8")
    try:
        new_content, count = replace(content, old_text, new_text)
    except ValueError:
        return (
            f"error: could not find the specified text in {path}. "
            "Make sure to use exact matching text."
        )

    resolved.write_bytes(new_content.encode("utf-8"))
    return f"Successfully edited {path}. Replaced {count} occurrence(s)."


# -- Search ------------------------------------------------------------------


def _skipped(name: str) -> bool:
    return name.startswith(".") or name in SKIP_DIRS


def _iter_search_files(root: Path, recursive: bool) -> Iterator[Path]:
    if root.is_file():
        yield root
        return
    if not recursive:
        for child in sorted(root.iterdir(), key=lambda c: c.name):
            if child.is_file() and not child.name.startswith("."):
                yield child
        return
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not _skipped(d))
        for filename in sorted(files):
            if not filename.startswith("."):
                yield Path(dirpath) / filename


def _search_file(filepath: Path, regex: re.Pattern) -> Iterator[tuple[int, str]]:
    try:
        with open(filepath, "rb") as f:
            data = f.read()
    except OSError:
        return
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        return
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return
    # Only \n ends a line.
    if text.endswith("\n"):
        text = text[:-1]
    for line_no, line in enumerate(text.split("\n"), start=1):
        line = line.removesuffix("\r")
        if regex.search(line):
            yield line_no, line


def _grep(
    pattern: str,
    path: str,
    base_dir: str,
    recursive: bool = True,
    ignore_case: bool = False,
) -> str:
    """Search file contents for a regex pattern."""
    try:
        regex = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"

    root = resolve_path(path, base_dir)
    if not root.exists():
        return f"error: path does not exist: {path}"

    base = Path(base_dir).resolve()
    results: list[str] = []
    for filepath in _iter_search_files(root, recursive):
        try:
            rel = filepath.resolve().relative_to(base).as_posix()
        except ValueError:
            rel = str(filepath)
        for line_no, line in _search_file(filepath, regex):
            text = line.strip()[:MAX_LINE_LENGTH]
            results.append(f"{rel}:{line_no}: {text}")
            if len(results) >= MAX_GREP_RESULTS:
                break
        if len(results) >= MAX_GREP_RESULTS:
            break

    if not results:
        return f'No matches found for "{pattern}"'
    output = "\n".join(results)
    if len(results) >= MAX_GREP_RESULTS:
        output += f"\n... (limited to {MAX_GREP_RESULTS} results)"
    return output


# -- Shell -------------------------------------------------------------------


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the child runs in its own session, so the whole process group
    is signalled. On Windows, taskkill /T /F does the same.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after SIGKILL", proc.pid)


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Collect merged stdout/stderr, killing the tree on timeout."""
    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining so the child never blocks on a full pipe
                chunks.append(chunk[: MAX_COMMAND_OUTPUT - total])
                total += len(chunks[-1])
                if total >= MAX_COMMAND_OUTPUT:
                    truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    parts: list[str] = []
    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    if truncated:
        parts.append("[output truncated at 100KB]")
    return "\n".join(parts) if parts else "(no output)"


def clamp_timeout(value) -> int:
    if value is None:
        return DEFAULT_COMMAND_TIMEOUT
    try:
        timeout = int(value)
    except (TypeError, ValueError):
        return DEFAULT_COMMAND_TIMEOUT
    return max(1, min(timeout, MAX_COMMAND_TIMEOUT))


def run_shell_command(command: str, base_dir: str, timeout: int) -> str:
    """Execute a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    base_path = Path(base_dir)
    if not base_path.is_dir():
        return f"error: working directory does not exist: {base_dir}"

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    return _capture_process(proc, timeout)


# -- Git ---------------------------------------------------------------------


def _run_git(args: list[str], repo: str, base_dir: str, empty: str) -> str:
    cwd = resolve_path(repo, base_dir)
    if not cwd.is_dir():
        return f"error: path is not a directory: {repo}"
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=GIT_TIMEOUT,
        )
    except FileNotFoundError:
        return "error: git executable not found"
    except subprocess.TimeoutExpired:
        return f"error: git {args[0]} timed out after {GIT_TIMEOUT}s"

    out = proc.stdout.strip()
    err = proc.stderr.strip()
    if proc.returncode != 0:
        detail = err or out or f"exit code {proc.returncode}"
        return f"error: git {args[0]} failed: {detail}"
    result = out or empty
    if err:
        result += f"\n{err}"
    return result


def _git_stash(action: str, message: str, repo: str, base_dir: str) -> str:
    action = action.strip().lower()
    if action == "push":
        args = ["stash", "push"]
        if message:
            args += ["-m", message]
    elif action == "pop":
        args = ["stash", "pop"]
    else:
        return f"error: unknown stash action {action!r} (expected push or pop)"
    return _run_git(args, repo, base_dir, "Done.")


# -- Dispatch ----------------------------------------------------------------


class ToolDispatcher:
    """Turns tool calls into tool results. ``execute`` never raises."""

    def __init__(
        self,
        base_dir: str = ".",
        *,
        auto_approve: bool = False,
        allowlist=(),
        dry_run: bool = False,
        approval: ApprovalProvider | None = None,
        plugin_handlers: dict[str, Callable[[dict], str]] | None = None,
        audit=None,
        verbose: bool = False,
    ):
        self.base_dir = str(Path(base_dir).resolve())
        self.auto_approve = auto_approve
        self.allowlist = tuple(allowlist)
        self.dry_run = dry_run
        self.approval = approval if approval is not None else InteractiveApproval()
        self.plugin_handlers = dict(plugin_handlers or {})
        self.audit = audit
        self.verbose = verbose
        self.last_approval: ApprovalDecision | None = None

    def execute(self, tool_call: dict) -> dict:
        function = tool_call.get("function") or {}
        name = function.get("name") or "unknown"
        call_id = tool_call.get("id") or ""
        raw_args = function.get("arguments")

        args, decode_error = decode_arguments(raw_args)
        if decode_error is not None:
            content = f"error: invalid JSON in tool arguments: {decode_error}"
            if self.verbose:
                fmt.tool_error(name, content)
            self._record(name, {"raw": raw_args}, content)
            return _tool_result(call_id, name, content)

        if self.dry_run:
            content = f"[DRY-RUN] Would execute: {name}({json.dumps(args)})"
            if self.verbose:
                fmt.dry_run(content)
            self._record(name, args, content)
            return _tool_result(call_id, name, content)

        if self.verbose:
            fmt.tool_call(name, json.dumps(args, indent=2))

        t0 = time.monotonic()
        try:
            content = self._invoke(name, args)
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            content = f"error: {e}"
        elapsed = time.monotonic() - t0

        if self.verbose:
            if content.startswith("error:"):
                fmt.tool_error(name, content)
            else:
                fmt.tool_result(name, elapsed, content.split("\n", 1)[0][:MAX_PREVIEW])
        self._record(name, args, content)
        return _tool_result(call_id, name, content)

    def _record(self, name: str, args, content: str) -> None:
        if self.audit is None:
            return
        try:
            if content.startswith("error:"):
                self.audit.record(name, args, error=content, cwd=self.base_dir)
            else:
                self.audit.record(name, args, result=content, cwd=self.base_dir)
        except Exception:
            logger.debug("audit sink failed for %s", name, exc_info=True)

    def _invoke(self, name: str, args: dict) -> str:
        kind = resolve_tool(name)
        base_dir = self.base_dir

        if kind is None:
            handler = self.plugin_handlers.get(name)
            if handler is None:
                return f"error: unknown tool: {name}"
            result = handler(args)
            return result if isinstance(result, str) else str(result)

        if kind is ToolKind.WRITE_FILE:
            return _write_file(_str_arg(args, "path"), _str_arg(args, "content"), base_dir)
        elif kind is ToolKind.READ_FILE:
            return _read_file(_str_arg(args, "path"), base_dir)
        elif kind is ToolKind.LIST_FILES:
            return _list_files(_str_arg(args, "path", "."), base_dir)
        elif kind is ToolKind.CREATE_DIRECTORY:
            return _create_directory(_str_arg(args, "path"), base_dir)
        elif kind is ToolKind.GREP_SEARCH:
            return _grep(
                pattern=_str_arg(args, "pattern"),
                path=_str_arg(args, "path", "."),
                base_dir=base_dir,
                recursive=_bool_arg(args, "recursive", True),
                ignore_case=_bool_arg(args, "ignore_case", False),
            )
        elif kind is ToolKind.EDIT_FILE:
            return _edit_file(
                _str_arg(args, "path"),
                _str_arg(args, "old_text"),
                _str_arg(args, "new_text"),
                base_dir,
            )
        elif kind is ToolKind.RUN_COMMAND:
            return self._run_command(_str_arg(args, "command"), args.get("timeout"))
        elif kind is ToolKind.GIT_STATUS:
            return _run_git(["status"], _str_arg(args, "path", "."), base_dir, "(clean)")
        elif kind is ToolKind.GIT_DIFF:
            diff_args = ["diff", "--staged"] if _bool_arg(args, "staged", False) else ["diff"]
            return _run_git(diff_args, _str_arg(args, "path", "."), base_dir, "(no changes)")
        elif kind is ToolKind.GIT_ADD:
            paths = _str_arg(args, "paths", ".").split() or ["."]
            return _run_git(["add", "--", *paths], _str_arg(args, "path", "."), base_dir, "Staged.")
        elif kind is ToolKind.GIT_COMMIT:
            message = _str_arg(args, "message")
            if not message.strip():
                return "error: commit message must not be empty"
            return _run_git(
                ["commit", "-m", message], _str_arg(args, "path", "."), base_dir, "Committed."
            )
        elif kind is ToolKind.GIT_STASH:
            return _git_stash(
                _str_arg(args, "action"),
                _str_arg(args, "message", ""),
                _str_arg(args, "path", "."),
                base_dir,
            )
        raise AssertionError(f"unhandled tool kind: {kind}")

    def _run_command(self, command: str, timeout) -> str:
        if not command.strip():
            return "error: command must not be empty"
        decision = evaluate(
            command,
            dry_run=self.dry_run,
            auto_approve=self.auto_approve,
            allowlist=self.allowlist,
            provider=self.approval,
        )
        self.last_approval = decision
        if self.verbose:
            fmt.approval_outcome(decision.state.value, decision.message)
        if decision.state is ApprovalState.DRY_RUN:
            return f"[DRY-RUN] Would run: {command}"
        if not decision.state.allowed:
            return decision.message
        return run_shell_command(command, self.base_dir, clamp_timeout(timeout))


def _tool_result(call_id: str, name: str, content: str) -> dict:
    return {"tool_call_id": call_id, "name": name, "content": content}
