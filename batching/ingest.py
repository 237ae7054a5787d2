"""Read candidate URL strings from text or CSV input."""

from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd


def read_text_lines(path: Path | str) -> list[str]:
    """Newline-delimited input; '-' reads stdin."""
    if str(path) == "-":
        return sys.stdin.read().splitlines()
    return Path(path).read_text(encoding="utf-8").splitlines()


def _pick_url_column(columns: list[str], column: str | None) -> str:
    if column:
        if column not in columns:
            raise KeyError(f"column '{column}' not found; available: {', '.join(columns)}")
        return column
    for name in columns:
        if name.strip().lower() == "url":
            return name
    # Work order exports are written as id,url rows.
    return columns[1] if len(columns) >= 2 else columns[0]


def read_csv_urls(path: Path | str, column: str | None = None) -> list[str]:
    """Return the URL column of a CSV file (header row required)."""
    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
    except pd.errors.EmptyDataError:
        return []
    if df.columns.empty:
        return []
    name = _pick_url_column([str(c) for c in df.columns], column)
    return [value.strip().strip('"') for value in df[name].tolist()]


def read_input(path: Path | str, column: str | None = None) -> list[str]:
    if str(path).lower().endswith(".csv"):
        return read_csv_urls(path, column=column)
    return read_text_lines(path)
