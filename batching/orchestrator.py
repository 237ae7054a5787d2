"""Job drivers: automatic dispatch rounds and in-app slice browsing."""

from __future__ import annotations

import time

from .config import DEFAULT_CONCURRENCY, DEFAULT_ROUND_DELAY
from .navigator import InlineNavigator
from .scheduler import DispatchScheduler, RoundSummary
from .session import LoadResult
from .worklist import WorkList, slice_at, total_slices

MAX_IDLE_ROUNDS = 3


def dispatch_all(
    scheduler: DispatchScheduler,
    concurrency: int = DEFAULT_CONCURRENCY,
    round_delay: float = DEFAULT_ROUND_DELAY,
    max_idle_rounds: int = MAX_IDLE_ROUNDS,
    max_rounds: int | None = None,
) -> list[RoundSummary]:
    """Dispatch rounds until the work list is exhausted.

    Pauses ``round_delay`` seconds between rounds. Gives up after
    ``max_idle_rounds`` consecutive rounds that opened nothing, so a viewer
    that never opens cannot spin forever; the failed slices stay eligible
    for a later call.
    """
    summaries: list[RoundSummary] = []
    idle = 0
    logger = scheduler.logger
    logger.emit(
        "job_start",
        total_items=scheduler.total_items,
        total_slices=scheduler.total_slices,
        concurrency=concurrency,
        round_delay=round_delay,
    )
    while True:
        summary = scheduler.dispatch_next(concurrency)
        summaries.append(summary)
        if summary.exhausted:
            break
        idle = 0 if summary.opened else idle + 1
        if idle >= max_idle_rounds:
            logger.warning(
                f"stopping after {idle} rounds without opening a batch",
                cursor=scheduler.dispatch_cursor,
            )
            break
        if max_rounds is not None and len(summaries) >= max_rounds:
            break
        logger.info(f"Pausing for {round_delay} seconds...")
        time.sleep(round_delay)

    logger.emit(
        "job_done",
        rounds=len(summaries),
        cursor=scheduler.dispatch_cursor,
        exhausted=scheduler.exhausted,
    )
    return summaries


class InlineBrowser:
    """Pick which slice the inline navigator shows: by number, next or previous."""

    def __init__(self, work_list: WorkList, slice_size: int, navigator: InlineNavigator):
        self.work_list = work_list
        self.slice_size = slice_size
        self.navigator = navigator
        self.total_slices = total_slices(work_list, slice_size)
        self.current_slice: int | None = None

    def select(self, slice_number: int) -> LoadResult | None:
        """Show slice `slice_number` (0-based); out-of-range numbers are ignored."""
        if slice_number < 0 or slice_number >= self.total_slices:
            return None
        self.current_slice = slice_number
        return self.navigator.load_slice(slice_at(self.work_list, self.slice_size, slice_number))

    def next_slice(self) -> LoadResult | None:
        if self.current_slice is None:
            return self.select(0)
        if self.current_slice >= self.total_slices - 1:
            return None
        return self.select(self.current_slice + 1)

    def previous_slice(self) -> LoadResult | None:
        if self.current_slice is None or self.current_slice <= 0:
            return None
        return self.select(self.current_slice - 1)

    @property
    def label(self) -> str:
        current = (self.current_slice or 0) + 1
        return f"Batch {current} of {self.total_slices} | {self.navigator.position_label}"
