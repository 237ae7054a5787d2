"""Paced, item-by-item viewing of one slice through one session."""

from __future__ import annotations

from .errors import OpenFailed
from .history import HistoryLog, history_entry
from .runner import EventLogger, quiet_logger
from .session import (
    FAILED,
    LOAD_FAILED,
    LOAD_RETRY,
    LOAD_STARTED,
    LoadEvent,
    LoadResult,
    RetryPolicy,
    SessionFactory,
    SessionHandle,
)
from .worklist import Slice

INLINE_BATCH_ID = "inline_batch"


class InlineNavigator:
    """Owns a single SessionHandle and a cursor into the active slice.

    ``page_index`` always stays inside ``[0, len(items) - 1]`` (0 for an
    empty slice). A failed load leaves the cursor where it is and reports
    the failure through ``status``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        history: HistoryLog | None = None,
        logger: EventLogger | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.history = history
        self.logger = logger or quiet_logger("inline")
        self.retry_policy = retry_policy or RetryPolicy()
        self.slice: Slice | None = None
        self.page_index = 0
        self.settled = False
        self.status = ""
        self.last_result: LoadResult | None = None
        self._handle: SessionHandle | None = None

    @property
    def items(self) -> tuple[str, ...]:
        return self.slice.items if self.slice else ()

    @property
    def current_item(self) -> str | None:
        if not self.items:
            return None
        return self.items[self.page_index]

    @property
    def position_label(self) -> str:
        if not self.items:
            return "No URLs"
        return f"URL {self.page_index + 1} of {len(self.items)}"

    @property
    def batch_id(self) -> str:
        if self.slice is None:
            return INLINE_BATCH_ID
        return f"{INLINE_BATCH_ID}_{self.slice.slice_number}"

    def can_go_next(self) -> bool:
        return bool(self.items) and self.page_index < len(self.items) - 1

    def can_go_previous(self) -> bool:
        return bool(self.items) and self.page_index > 0

    def load_slice(self, sl: Slice) -> LoadResult | None:
        """Replace the active slice; the cursor always restarts at 0."""
        self.slice = sl
        self.page_index = 0
        self.settled = False
        self.last_result = None
        self.logger.emit(
            "inline_slice",
            batch_id=self.batch_id,
            slice_number=sl.slice_number,
            item_count=len(sl.items),
        )
        if not sl.items:
            self.status = f"Batch {sl.slice_number + 1} has no URLs."
            self.logger.info(f"[inline] slice {sl.slice_number} is empty")
            return None
        self.status = f"Batch {sl.slice_number + 1} loaded with {len(sl.items)} URLs."
        return self._load_current()

    def next(self) -> LoadResult | None:
        if not self.can_go_next():
            return None
        self.page_index += 1
        return self._load_current()

    def previous(self) -> LoadResult | None:
        if not self.can_go_previous():
            return None
        self.page_index -= 1
        return self._load_current()

    def reload(self) -> LoadResult | None:
        if not self.items:
            return None
        return self._load_current()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _on_event(self, handle: SessionHandle, event: LoadEvent) -> None:
        if event.kind == LOAD_STARTED:
            self.status = "Loading page..."
        elif event.kind == LOAD_RETRY:
            self.status = f"Retrying... ({event.attempt}/{event.max_attempts - 1})"
        elif event.kind == LOAD_FAILED and event.is_main_content and handle.state == FAILED:
            self.status = _failure_status(event.url, event.code, event.description)

    def _ensure_handle(self) -> SessionHandle:
        if self._handle is None or self._handle.closed:
            handle = self.session_factory.open_session(INLINE_BATCH_ID, ())
            handle.subscribe(self._on_event)
            self._handle = handle
            self.logger.emit("session_open", batch_id=INLINE_BATCH_ID)
        return self._handle

    def _load_current(self) -> LoadResult:
        item = self.items[self.page_index]
        self.settled = False
        self.logger.emit(
            "load_start", batch_id=self.batch_id, page_index=self.page_index, url=item
        )
        try:
            handle = self._ensure_handle()
        except OpenFailed as exc:
            result = LoadResult(url=item, status=FAILED, reason=f"open_failed: {exc.reason}")
            self.status = f"Could not open viewer: {exc.reason}"
            self.logger.warning(str(exc), batch_id=self.batch_id)
            self.last_result = result
            return result

        result = handle.load(item, self.retry_policy)
        self.last_result = result
        if result.ok:
            self.settled = True
            self.status = f"Loaded: {result.final_url[:100]}"
            if self.history is not None:
                self.history.append(history_entry(result.final_url or item, self.batch_id))
        else:
            self.status = _failure_status(item, result.code, result.reason)
        self.logger.emit(
            "load_result", batch_id=self.batch_id, page_index=self.page_index, **result.to_dict()
        )
        self.logger.info(
            f"[inline] [{self.page_index + 1}/{len(self.items)}] {result.status.upper()} "
            f"attempts={result.attempts} url={item}"
        )
        return result


def _failure_status(url: str, code: int | None, detail: str) -> str:
    suffix = f" Error: {code} {detail}" if code is not None else f" Error: {detail}"
    return f"Failed to load: {url[:100]}{suffix}".rstrip()
