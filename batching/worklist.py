"""Work list construction and slicing into fixed-size batches."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator
from urllib.parse import urlparse

from .errors import InvalidConfiguration

URL_SCHEMES = ("http", "https")


def is_valid_url(candidate: str) -> bool:
    """True for well-formed absolute http(s) URLs with a host."""
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    return parsed.scheme.lower() in URL_SCHEMES and bool(parsed.netloc)


@dataclass(frozen=True)
class WorkList:
    items: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.items)

    def __getitem__(self, index):
        return self.items[index]


@dataclass(frozen=True)
class Slice:
    slice_number: int
    items: tuple[str, ...]
    start_offset: int

    @property
    def end_offset(self) -> int:
        return self.start_offset + len(self.items)


def build_work_list(raw_lines: Iterable[str]) -> WorkList:
    """Trim, validate and dedupe raw lines, keeping first-occurrence order."""
    out: list[str] = []
    seen: set[str] = set()
    for line in raw_lines:
        url = (line or "").strip()
        if not is_valid_url(url):
            continue
        if url in seen:
            continue
        seen.add(url)
        out.append(url)
    return WorkList(tuple(out))


def _check_slice_size(slice_size: int) -> None:
    if not isinstance(slice_size, int) or slice_size < 1:
        raise InvalidConfiguration(f"slice_size must be >= 1, got {slice_size!r}")


def slice_work_list(work_list: WorkList, slice_size: int) -> list[Slice]:
    _check_slice_size(slice_size)
    return [
        Slice(
            slice_number=start // slice_size,
            items=tuple(work_list.items[start:start + slice_size]),
            start_offset=start,
        )
        for start in range(0, len(work_list), slice_size)
    ]


def total_slices(work_list: WorkList, slice_size: int) -> int:
    """Number of slices, never less than 1 so progress ratios stay defined."""
    _check_slice_size(slice_size)
    return max(1, math.ceil(len(work_list) / slice_size))


def slice_containing(offset: int, slice_size: int) -> int:
    _check_slice_size(slice_size)
    return offset // slice_size


def slice_at(work_list: WorkList, slice_size: int, slice_number: int) -> Slice:
    """Return one slice by number; slice 0 of an empty list is empty."""
    _check_slice_size(slice_size)
    if slice_number < 0 or slice_number >= total_slices(work_list, slice_size):
        raise IndexError(f"slice {slice_number} out of range")
    start = slice_number * slice_size
    return Slice(
        slice_number=slice_number,
        items=tuple(work_list.items[start:start + slice_size]),
        start_offset=start,
    )
