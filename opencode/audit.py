"""Append-only JSONL record of every tool invocation."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def record(
        self,
        tool: str,
        args: dict | None,
        result: str | None = None,
        error: str | None = None,
        cwd: str | None = None,
    ) -> None:
        """Append one entry. A failing sink never interrupts the tool call."""
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "cwd": cwd or os.getcwd(),
            "tool": tool,
            "args": args if args is not None else {},
        }
        if error is not None:
            entry["error"] = error
        else:
            entry["result"] = result
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            logger.debug("audit write to %s failed: %s", self.path, exc)
