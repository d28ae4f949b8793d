"""Save and restore a conversation as a JSON array of messages."""

import json
from pathlib import Path

from .errors import SessionError

VALID_ROLES = frozenset({"system", "user", "assistant", "tool"})


def save_session(messages: list[dict], path: str | Path) -> Path:
    path = Path(path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(messages, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def load_session(path: str | Path) -> list[dict]:
    """Read a saved conversation back.

    Raises SessionError if the file is missing or unreadable, is not JSON,
    is not a list, or holds anything other than message objects.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise SessionError(f"session file not found: {path}")
    except (OSError, UnicodeDecodeError) as e:
        raise SessionError(f"cannot read session file {path}: {e}")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SessionError(f"invalid JSON in {path}: {e}")

    if not isinstance(data, list):
        raise SessionError(f"invalid session format in {path}: expected a list of messages")
    for i, msg in enumerate(data):
        if not isinstance(msg, dict) or msg.get("role") not in VALID_ROLES:
            raise SessionError(f"invalid session format in {path}: bad message at index {i}")
    return data
