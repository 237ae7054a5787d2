"""Dispatch rounds: hand whole slices to fresh sessions, one round at a time.

State is a monotonic ``dispatch_cursor`` (start offset of the smallest slice
not yet dispatched), the set of dispatched slice numbers, and the live
handles this scheduler opened. A slice counts as dispatched only once its
session confirmed opening; a slice whose open failed stays eligible for the
next ``dispatch_next`` call.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field

from .config import DEFAULT_CONCURRENCY, DEFAULT_ITEM_DELAY
from .errors import DispatchInProgress, InvalidConfiguration, OpenFailed, SchedulingInconsistency
from .history import HistoryLog, history_entry
from .runner import EventLogger, quiet_logger
from .session import (
    SESSION_CLOSED,
    LoadEvent,
    LoadResult,
    RetryPolicy,
    SessionFactory,
    SessionHandle,
)
from .worklist import (
    Slice,
    WorkList,
    is_valid_url,
    slice_containing,
    slice_work_list,
    total_slices,
)

BATCH_ID_PREFIX = "popup_batch_"

PENDING = "pending"
DISPATCHING = "dispatching"
DISPATCHED = "dispatched"
DISPATCH_FAILED = "dispatch_failed"


def batch_id_for(slice_number: int) -> str:
    return f"{BATCH_ID_PREFIX}{slice_number}"


@dataclass
class RoundSummary:
    round_number: int
    cursor: int
    total_items: int
    exhausted: bool
    opened: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    inconsistencies: list[int] = field(default_factory=list)
    load_results: dict[int, LoadResult] = field(default_factory=dict)

    @property
    def opened_count(self) -> int:
        return len(self.opened)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def status_line(self) -> str:
        if not self.opened and not self.failed and self.exhausted:
            return (
                f"Round {self.round_number}: nothing left to open "
                f"({self.cursor}/{self.total_items} URLs)"
            )
        line = (
            f"Round {self.round_number}: opened {self.opened_count} batch(es), "
            f"{self.failed_count} failed; {self.cursor}/{self.total_items} URLs dispatched"
        )
        if self.failed:
            details = ", ".join(f"batch {n + 1}: {reason}" for n, reason in sorted(self.failed.items()))
            line += f" [{details}]"
        if self.exhausted:
            line += "; all batches dispatched"
        return line

    def to_dict(self) -> dict:
        return {
            "round_number": self.round_number,
            "cursor": self.cursor,
            "total_items": self.total_items,
            "exhausted": self.exhausted,
            "opened": list(self.opened),
            "failed": {str(k): v for k, v in self.failed.items()},
            "skipped": list(self.skipped),
            "inconsistencies": list(self.inconsistencies),
            "load_results": {str(k): v.to_dict() for k, v in self.load_results.items()},
        }


class DispatchScheduler:
    """Hands whole slices to fresh sessions, one round per ``dispatch_next``.

    Each live window also keeps a page cursor over its own slice, moved with
    ``next_item``, ``previous_item`` and ``navigate``. ``rounds`` counts rounds
    that ran; a call on an exhausted scheduler leaves every counter as is.

    With ``max_parallel_opens > 1`` the session factory is called from worker
    threads, so it must be thread-safe. ``PlaywrightViewerFactory`` is not: the
    sync Playwright API is bound to the thread that started it.
    """

    def __init__(
        self,
        work_list: WorkList,
        slice_size: int,
        session_factory: SessionFactory,
        *,
        history: HistoryLog | None = None,
        logger: EventLogger | None = None,
        retry_policy: RetryPolicy | None = None,
        item_delay: float = DEFAULT_ITEM_DELAY,
        max_parallel_opens: int = 1,
    ):
        if max_parallel_opens < 1:
            raise InvalidConfiguration(
                f"max_parallel_opens must be >= 1, got {max_parallel_opens!r}"
            )
        self.slices: list[Slice] = slice_work_list(work_list, slice_size)
        self.work_list = work_list
        self.slice_size = slice_size
        self.session_factory = session_factory
        self.history = history
        self.logger = logger or quiet_logger("dispatch")
        self.retry_policy = retry_policy or RetryPolicy()
        self.item_delay = item_delay
        self.max_parallel_opens = max_parallel_opens

        self.dispatch_cursor = 0
        self.dispatched_slice_numbers: set[int] = set()
        self.in_flight: dict[int, SessionHandle] = {}
        self.page_index: dict[int, int] = {}
        self.rounds = 0
        self._failures: dict[int, str] = {}
        self._dispatching: set[int] = set()
        self._lock = threading.Lock()

    @property
    def total_items(self) -> int:
        return len(self.work_list)

    @property
    def total_slices(self) -> int:
        return total_slices(self.work_list, self.slice_size)

    @property
    def exhausted(self) -> bool:
        return self.dispatch_cursor >= len(self.work_list)

    def slice_state(self, slice_number: int) -> str:
        if slice_number in self.dispatched_slice_numbers:
            return DISPATCHED
        if slice_number in self._dispatching:
            return DISPATCHING
        if slice_number in self._failures:
            return DISPATCH_FAILED
        return PENDING

    def progress(self) -> dict:
        return {
            "cursor": self.dispatch_cursor,
            "total_items": self.total_items,
            "total_slices": self.total_slices,
            "dispatched": sorted(self.dispatched_slice_numbers),
            "failed": dict(sorted(self._failures.items())),
            "live": sorted(self.in_flight),
            "pages": dict(sorted(self.page_index.items())),
            "rounds": self.rounds,
            "exhausted": self.exhausted,
        }

    def dispatch_next(self, concurrency: int = DEFAULT_CONCURRENCY) -> RoundSummary:
        """Run one dispatch round; rejects a call made while a round is running."""
        if not isinstance(concurrency, int) or concurrency < 1:
            raise InvalidConfiguration(f"concurrency must be >= 1, got {concurrency!r}")
        with self._exclusive():
            return self._run_round(concurrency)

    def reopen(self, slice_number: int) -> SessionHandle:
        """Open a fresh window for an already dispatched slice, closing the old one.

        Dispatch bookkeeping is left untouched and the window starts again at
        the first URL of its slice. Raises OpenFailed when the new session
        cannot be created.
        """
        with self._exclusive():
            if slice_number not in self.dispatched_slice_numbers:
                raise KeyError(f"slice {slice_number} has not been dispatched")
            sl = self.slices[slice_number]
            handle = self._open_slice(sl)
            self._register(slice_number, handle)
            self.logger.emit("slice_reopened", batch_id=handle.batch_id, slice_number=slice_number)
            self._initial_load(sl, handle)
            return handle

    def current_item(self, slice_number: int) -> str | None:
        if slice_number not in self.page_index:
            return None
        return self.slices[slice_number].items[self.page_index[slice_number]]

    def position_label(self, slice_number: int) -> str:
        if slice_number not in self.page_index:
            return "Not dispatched"
        items = self.slices[slice_number].items
        return f"URL {self.page_index[slice_number] + 1} of {len(items)}"

    def next_item(self, slice_number: int) -> LoadResult | None:
        """Show the next URL of a live window's slice; None on the last one."""
        with self._exclusive():
            handle = self._live_handle(slice_number)
            items = self.slices[slice_number].items
            index = self.page_index[slice_number]
            if index >= len(items) - 1:
                return None
            self.page_index[slice_number] = index + 1
            return self._load_item(slice_number, handle, items[index + 1])

    def previous_item(self, slice_number: int) -> LoadResult | None:
        """Show the previous URL of a live window's slice; None on the first one."""
        with self._exclusive():
            handle = self._live_handle(slice_number)
            items = self.slices[slice_number].items
            index = self.page_index[slice_number]
            if index <= 0:
                return None
            self.page_index[slice_number] = index - 1
            return self._load_item(slice_number, handle, items[index - 1])

    def navigate(self, slice_number: int, url: str) -> LoadResult:
        """Load any URL in a live window.

        The page cursor follows when ``url`` belongs to the slice and stays
        put otherwise.
        """
        if not is_valid_url(url):
            raise ValueError(f"not an http(s) URL: {url!r}")
        with self._exclusive():
            handle = self._live_handle(slice_number)
            items = self.slices[slice_number].items
            if url in items:
                self.page_index[slice_number] = items.index(url)
            return self._load_item(slice_number, handle, url)

    def close_all(self) -> None:
        for slice_number in list(self.in_flight):
            handle = self.in_flight.pop(slice_number)
            handle.close()

    @contextmanager
    def _exclusive(self):
        if not self._lock.acquire(blocking=False):
            raise DispatchInProgress("another dispatch round or window command is running")
        try:
            yield
        finally:
            self._lock.release()

    def _live_handle(self, slice_number: int) -> SessionHandle:
        if slice_number not in self.dispatched_slice_numbers:
            raise KeyError(f"slice {slice_number} has not been dispatched")
        handle = self.in_flight.get(slice_number)
        if handle is None or handle.closed:
            raise KeyError(f"slice {slice_number} has no open window")
        return handle

    def _run_round(self, concurrency: int) -> RoundSummary:
        if self.exhausted:
            summary = RoundSummary(
                round_number=self.rounds,
                cursor=self.dispatch_cursor,
                total_items=self.total_items,
                exhausted=True,
            )
            self.logger.emit("round_done", **summary.to_dict())
            self.logger.info(summary.status_line())
            return summary

        self.rounds += 1
        summary = RoundSummary(
            round_number=self.rounds,
            cursor=self.dispatch_cursor,
            total_items=self.total_items,
            exhausted=False,
        )

        candidates = self._select_candidates(concurrency, summary)
        self.logger.emit(
            "round_start",
            round_number=self.rounds,
            cursor=self.dispatch_cursor,
            slices=[sl.slice_number for sl in candidates],
        )
        outcomes = self._open_candidates(candidates)

        # Bookkeeping in slice order keeps the cursor contiguous.
        opened: list[tuple[Slice, SessionHandle]] = []
        for sl in candidates:
            handle, reason = outcomes[sl.slice_number]
            self._dispatching.discard(sl.slice_number)
            if handle is None:
                self._failures[sl.slice_number] = reason
                summary.failed[sl.slice_number] = reason
                self.logger.warning(
                    f"could not open batch {sl.slice_number + 1}: {reason}",
                    batch_id=batch_id_for(sl.slice_number),
                    slice_number=sl.slice_number,
                )
                continue
            self.dispatched_slice_numbers.add(sl.slice_number)
            self._failures.pop(sl.slice_number, None)
            self._register(sl.slice_number, handle)
            summary.opened.append(sl.slice_number)
            opened.append((sl, handle))
            self.logger.emit(
                "slice_dispatched",
                batch_id=handle.batch_id,
                slice_number=sl.slice_number,
                item_count=len(sl.items),
            )
        self._advance_cursor()

        for i, (sl, handle) in enumerate(opened):
            if i > 0:
                time.sleep(self.item_delay)
            result = self._initial_load(sl, handle)
            if result is not None:
                summary.load_results[sl.slice_number] = result

        summary.cursor = self.dispatch_cursor
        summary.exhausted = self.exhausted
        self.logger.emit("round_done", **summary.to_dict())
        self.logger.info(summary.status_line())
        return summary

    def _select_candidates(self, concurrency: int, summary: RoundSummary) -> list[Slice]:
        candidates: list[Slice] = []
        cursor_slice = slice_containing(self.dispatch_cursor, self.slice_size)
        offset = self.dispatch_cursor
        while len(candidates) < concurrency and offset < len(self.work_list):
            slice_number = slice_containing(offset, self.slice_size)
            sl = self.slices[slice_number]
            if slice_number in self.dispatched_slice_numbers:
                if slice_number == cursor_slice:
                    problem = SchedulingInconsistency(slice_number)
                    summary.inconsistencies.append(slice_number)
                    self.logger.warning(str(problem), slice_number=slice_number)
                else:
                    summary.skipped.append(slice_number)
                offset = sl.start_offset + self.slice_size
                continue
            candidates.append(sl)
            self._dispatching.add(slice_number)
            offset = sl.end_offset
        return candidates

    def _open_candidates(self, candidates: list[Slice]) -> dict[int, tuple[SessionHandle | None, str]]:
        if self.max_parallel_opens <= 1 or len(candidates) <= 1:
            return {sl.slice_number: self._try_open(sl) for sl in candidates}

        out_by_number: dict[int, tuple[SessionHandle | None, str]] = {}
        workers = min(self.max_parallel_opens, len(candidates))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {sl.slice_number: pool.submit(self._try_open, sl) for sl in candidates}
            for slice_number, fut in futures.items():
                out_by_number[slice_number] = fut.result()
        return out_by_number

    def _try_open(self, sl: Slice) -> tuple[SessionHandle | None, str]:
        try:
            return self._open_slice(sl), ""
        except OpenFailed as exc:
            return None, exc.reason
        except Exception as exc:  # noqa: BLE001
            return None, str(exc) or exc.__class__.__name__

    def _open_slice(self, sl: Slice) -> SessionHandle:
        batch_id = batch_id_for(sl.slice_number)
        previous = self.in_flight.get(sl.slice_number)
        if previous is not None and not previous.closed:
            previous.close()
            self.logger.emit("session_replaced", batch_id=batch_id, slice_number=sl.slice_number)
        self.logger.emit("session_open", batch_id=batch_id, slice_number=sl.slice_number)
        return self.session_factory.open_session(batch_id, sl.items)

    def _register(self, slice_number: int, handle: SessionHandle) -> None:
        self.in_flight[slice_number] = handle
        self.page_index[slice_number] = 0

        def _on_event(h: SessionHandle, event: LoadEvent) -> None:
            if event.kind != SESSION_CLOSED:
                return
            # A user-closed window stays dispatched; it is only no longer live.
            if self.in_flight.get(slice_number) is h:
                del self.in_flight[slice_number]
            self.logger.emit("session_closed", batch_id=h.batch_id, slice_number=slice_number)

        handle.subscribe(_on_event)

    def _advance_cursor(self) -> None:
        while self.dispatch_cursor < len(self.work_list):
            slice_number = slice_containing(self.dispatch_cursor, self.slice_size)
            if slice_number not in self.dispatched_slice_numbers:
                break
            self.dispatch_cursor += len(self.slices[slice_number].items)

    def _initial_load(self, sl: Slice, handle: SessionHandle) -> LoadResult | None:
        if not sl.items:
            return None
        return self._load_item(sl.slice_number, handle, sl.items[0])

    def _load_item(self, slice_number: int, handle: SessionHandle, url: str) -> LoadResult:
        result = handle.load(url, self.retry_policy)
        if result.ok and self.history is not None:
            self.history.append(history_entry(result.final_url or url, handle.batch_id))
        self.logger.emit(
            "load_result",
            batch_id=handle.batch_id,
            slice_number=slice_number,
            page_index=self.page_index.get(slice_number, 0),
            **result.to_dict(),
        )
        if not result.ok:
            self.logger.info(f"[{handle.batch_id}] load {result.status}: {result.reason} url={url}")
        return result
