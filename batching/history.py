"""Append-only record of completed loads and helpers for listing it."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol


class HistoryLog(Protocol):
    def append(self, entry: dict) -> None: ...

    def read_all(self) -> list[dict]: ...


def history_entry(url: str, batch_id: str = "") -> dict:
    return {
        "url": url,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "batch_id": batch_id,
    }


class JsonHistoryLog:
    """History kept in a single JSON file: {"last_updated", "opened_urls": [...]}."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict:
        if not self.path.exists():
            return {"last_updated": "", "opened_urls": []}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("opened_urls", [])
        return data

    def _save(self, data: dict) -> None:
        data["last_updated"] = datetime.now(timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp.replace(self.path)

    def append(self, entry: dict) -> None:
        with self._lock:
            data = self._load()
            data["opened_urls"].append(
                {
                    "url": entry.get("url", ""),
                    "timestamp": entry.get("timestamp", ""),
                    "batch_id": entry.get("batch_id", ""),
                }
            )
            self._save(data)

    def read_all(self) -> list[dict]:
        with self._lock:
            return list(self._load()["opened_urls"])


def _parse_ts(value: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def filter_history(entries: list[dict], search: str = "", order: str = "newest") -> list[dict]:
    """Match `search` against URL (case-insensitive) or batch id, then sort by time."""
    if order not in ("newest", "oldest"):
        raise ValueError(f"order must be 'newest' or 'oldest', got {order!r}")
    needle = (search or "").lower()
    matched = [
        e for e in entries
        if not needle
        or needle in (e.get("url") or "").lower()
        or needle in str(e.get("batch_id") or "").lower()
    ]
    return sorted(
        matched,
        key=lambda e: _parse_ts(e.get("timestamp", "")),
        reverse=order == "newest",
    )
