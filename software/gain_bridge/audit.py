"""Append-only JSONL audit trail for operator-visible bridge events."""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

REPO_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "GAIN_BRIDGE_LOG_DIR"


def resolve_log_dir(log_dir: Optional[os.PathLike] = None) -> Path:
    """Pick the audit directory: explicit arg, then env var, then ``logs/``.

    Relative paths hang off the repo root so tuning sessions launched from
    any working directory land in the same file.
    """

    raw = log_dir or os.environ.get(LOG_DIR_ENV)
    if raw:
        candidate = Path(raw)
        return candidate if candidate.is_absolute() else REPO_ROOT / candidate
    return REPO_ROOT / "logs"


class AuditLogger:
    def __init__(self, log_dir: Optional[os.PathLike] = None):
        directory = resolve_log_dir(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        self.log_path = directory / "ops_events.jsonl"
        self.operator = (
            os.environ.get("OPERATOR_ID")
            or os.environ.get("USER")
            or os.environ.get("USERNAME")
            or "unknown"
        )
        self.host = os.environ.get("HOSTNAME", "unknown_host")
        # relay workers and OSC handler threads write concurrently
        self._lock = threading.Lock()

    def write(
        self,
        action: str,
        status: str = "info",
        message: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operator": self.operator,
            "host": self.host,
            "action": action,
            "status": status,
        }
        if message:
            event["message"] = message
        if details is not None:
            event["details"] = details
        line = json.dumps(event, ensure_ascii=False, default=str) + "\n"
        with self._lock, self.log_path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    def events(self) -> list:
        """Read back every event written so far (handy in tests and tooling)."""

        if not self.log_path.exists():
            return []
        return [
            json.loads(line)
            for line in self.log_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
