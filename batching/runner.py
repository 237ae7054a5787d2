"""Run identity and structured event logging shared by navigators and schedulers."""

from __future__ import annotations

import json
import sys
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import get_logs_path


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunnerConfig:
    run_id: str
    batch_id: str = ""
    verbose: bool = True
    live_events: bool = False
    ndjson_path: Path | None = None


class EventLogger:
    def __init__(self, cfg: RunnerConfig):
        self.cfg = cfg
        self._fh = None
        self._lock = threading.Lock()
        if cfg.ndjson_path:
            cfg.ndjson_path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = cfg.ndjson_path.open("a", encoding="utf-8")

    def close(self):
        if self._fh:
            self._fh.close()
            self._fh = None

    def emit(self, event: str, **fields):
        payload = {
            "event": event,
            "ts_utc": _utc_now(),
            "run_id": self.cfg.run_id,
            "batch_id": fields.pop("batch_id", None) or self.cfg.batch_id or "",
            **fields,
        }
        if self._fh:
            with self._lock:
                self._fh.write(json.dumps(payload, ensure_ascii=False) + "\n")
                self._fh.flush()
        if self.cfg.live_events:
            with self._lock:
                print(json.dumps(payload, ensure_ascii=False), flush=True)

    def info(self, msg: str):
        if self.cfg.verbose:
            with self._lock:
                print(msg, flush=True)

    def warning(self, msg: str, **fields):
        """Always printed (stderr) and recorded as a `warning` event."""
        self.emit("warning", message=msg, **fields)
        with self._lock:
            print(f"WARNING: {msg}", file=sys.stderr, flush=True)


def default_run_id(prefix: str = "run") -> str:
    return f"{prefix}-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:8]}"


def default_ndjson_path(run_id: str) -> Path:
    """Get the default ndjson log path for a run."""
    return get_logs_path(run_id)


def quiet_logger(prefix: str = "run") -> EventLogger:
    """Logger that records nothing; used when a caller passes no logger."""
    return EventLogger(RunnerConfig(run_id=default_run_id(prefix), verbose=False))
