from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Any, TextIO

from .timestamps import iso_now

LOG_NAME = "feed-relay"


class RelayLogger:
    def __init__(self, root: Path, echo: TextIO | None = None) -> None:
        self.log_path = root / "logs" / f"{LOG_NAME}.log"
        self.failures_path = root / "failures" / f"{LOG_NAME}.jsonl"
        self.echo = echo
        self._lock = threading.Lock()

    def log(self, message: str) -> None:
        line = f"{iso_now()} {message}\n"
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
            if self.echo is not None:
                self.echo.write(line)

    def failure(self, record: dict[str, Any]) -> None:
        record_with_time = {"occurred_at": iso_now(), **record}
        with self._lock:
            self.failures_path.parent.mkdir(parents=True, exist_ok=True)
            with self.failures_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record_with_time, ensure_ascii=True) + "\n")


def stderr_logger(root: Path) -> RelayLogger:
    return RelayLogger(root, echo=sys.stderr)
