"""Constants, run paths and user-tunable settings for batch opening."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path

import yaml

from .errors import InvalidConfiguration

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Base directory for run logs
RUNS_DIR = PROJECT_ROOT / "ops" / "runs"

# Append-only record of every URL that finished loading
HISTORY_PATH = RUNS_DIR / "history.json"


def get_run_dir(run_id: str) -> Path:
    """Get the directory for a specific run."""
    return RUNS_DIR / run_id


def get_logs_path(run_id: str) -> Path:
    """Get the logs file path for a specific run."""
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir / "logs.ndjson"


# Defaults for the user-tunable surface
DEFAULT_SLICE_SIZE = 10
DEFAULT_CONCURRENCY = 2
DEFAULT_ITEM_DELAY = 0.3  # seconds between opening sessions
DEFAULT_ROUND_DELAY = 5.0  # seconds between dispatch rounds in auto mode
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds between attempts of one load

MIN_ITEM_DELAY = 0.1
MIN_ROUND_DELAY = 1.0

# Browser
PLAYWRIGHT_TIMEOUT = 45000  # milliseconds
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
VIEWPORT = {"width": 1200, "height": 800}


@dataclass
class BatchSettings:
    slice_size: int = DEFAULT_SLICE_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    item_delay: float = DEFAULT_ITEM_DELAY
    round_delay: float = DEFAULT_ROUND_DELAY
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    headless: bool = False
    timeout_ms: int = PLAYWRIGHT_TIMEOUT
    history_path: Path = HISTORY_PATH

    def validate(self) -> "BatchSettings":
        """Raise InvalidConfiguration for the first out-of-range value."""
        if not isinstance(self.slice_size, int) or self.slice_size < 1:
            raise InvalidConfiguration(f"slice_size must be >= 1, got {self.slice_size!r}")
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise InvalidConfiguration(f"concurrency must be >= 1, got {self.concurrency!r}")
        if self.item_delay < MIN_ITEM_DELAY:
            raise InvalidConfiguration(
                f"item_delay must be >= {MIN_ITEM_DELAY}, got {self.item_delay!r}"
            )
        if self.round_delay < MIN_ROUND_DELAY:
            raise InvalidConfiguration(
                f"round_delay must be >= {MIN_ROUND_DELAY}, got {self.round_delay!r}"
            )
        if not isinstance(self.retry_attempts, int) or self.retry_attempts < 1:
            raise InvalidConfiguration(
                f"retry_attempts must be >= 1, got {self.retry_attempts!r}"
            )
        if self.retry_delay < 0:
            raise InvalidConfiguration(f"retry_delay must be >= 0, got {self.retry_delay!r}")
        if self.timeout_ms <= 0:
            raise InvalidConfiguration(f"timeout_ms must be > 0, got {self.timeout_ms!r}")
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        data["history_path"] = str(self.history_path)
        return data


def load_settings(path: Path | None = None, **overrides) -> BatchSettings:
    """Build validated settings from an optional YAML file plus overrides.

    Overrides whose value is None are ignored so argparse namespaces can be
    passed through directly.
    """
    data: dict = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise InvalidConfiguration(f"{path}: expected a mapping of settings")

    known = {f.name for f in fields(BatchSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InvalidConfiguration(f"unknown setting(s): {', '.join(unknown)}")

    data.update({k: v for k, v in overrides.items() if v is not None and k in known})
    if "history_path" in data:
        data["history_path"] = Path(data["history_path"])

    try:
        return BatchSettings(**data).validate()
    except TypeError as exc:
        raise InvalidConfiguration(str(exc)) from exc


__all__ = [
    "PROJECT_ROOT",
    "RUNS_DIR",
    "HISTORY_PATH",
    "get_run_dir",
    "get_logs_path",
    "DEFAULT_SLICE_SIZE",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_ITEM_DELAY",
    "DEFAULT_ROUND_DELAY",
    "DEFAULT_RETRY_ATTEMPTS",
    "DEFAULT_RETRY_DELAY",
    "PLAYWRIGHT_TIMEOUT",
    "USER_AGENT",
    "VIEWPORT",
    "BatchSettings",
    "load_settings",
]
