"""Session handles: one external viewer, its load state machine and retry policy.

A viewer is anything that can show one URL at a time (a Playwright page in
production, a scripted fake in tests). It is created with an ``emit``
callback and reports what happens through it:

    load_started(url)
    load_finished(url, title)
    load_failed(code, url, is_main_content, description)
    navigated(url)
    closed()

``Viewer.load(url)`` must not return before it has emitted the outcome of
that load. The handle folds those events into ``idle -> loading ->
{loaded | failed}`` (plus terminal ``closed``) and forwards every event to
its subscribers.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from .config import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY
from .errors import OpenFailed

IDLE = "idle"
LOADING = "loading"
LOADED = "loaded"
FAILED = "failed"
CLOSED = "closed"

LOAD_STARTED = "load_started"
LOAD_FINISHED = "load_finished"
LOAD_FAILED = "load_failed"
LOAD_RETRY = "load_retry"
NAVIGATED = "navigated"
SESSION_CLOSED = "closed"

# Chromium net error codes
ERR_ABORTED = -3
ERR_TIMED_OUT = -7
ERR_CONNECTION_CLOSED = -100
ERR_CONNECTION_RESET = -101
ERR_CONNECTION_REFUSED = -102
ERR_NAME_NOT_RESOLVED = -105
ERR_INTERNET_DISCONNECTED = -106
ERR_ADDRESS_UNREACHABLE = -109
ERR_EMPTY_RESPONSE = -324

TRANSIENT_NET_ERRORS = frozenset(
    {
        ERR_CONNECTION_CLOSED,
        ERR_CONNECTION_RESET,
        ERR_CONNECTION_REFUSED,
        ERR_NAME_NOT_RESOLVED,
        ERR_INTERNET_DISCONNECTED,
        ERR_ADDRESS_UNREACHABLE,
        ERR_EMPTY_RESPONSE,
    }
)

# Aborted main-frame loads are usually a redirect replacing the navigation.
IGNORED_NET_ERRORS = frozenset({ERR_ABORTED})


@dataclass(frozen=True)
class LoadEvent:
    kind: str
    url: str = ""
    code: int | None = None
    is_main_content: bool = True
    description: str = ""
    title: str = ""
    attempt: int = 0
    max_attempts: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay_seconds: float = DEFAULT_RETRY_DELAY
    retryable_codes: frozenset = TRANSIENT_NET_ERRORS


@dataclass
class LoadResult:
    url: str
    status: str
    attempts: int = 0
    final_url: str = ""
    title: str = ""
    code: int | None = None
    reason: str = ""
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.status == LOADED

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "status": self.status,
            "attempts": self.attempts,
            "final_url": self.final_url,
            "title": self.title,
            "code": self.code,
            "reason": self.reason,
            "transient": self.transient,
        }


def classify_load_failure(code: int | None, policy: RetryPolicy | None = None) -> tuple[str, str]:
    """Classify a main-content load failure as transient, terminal or ignored."""
    policy = policy or RetryPolicy()
    if code in IGNORED_NET_ERRORS:
        return "ignored", "aborted"
    if code is None:
        return "terminal", "viewer_error"
    if code in policy.retryable_codes:
        return "transient", f"net_error_{abs(code)}"
    if code == ERR_TIMED_OUT:
        return "terminal", "timeout"
    return "terminal", f"net_error_{abs(code)}"


class Viewer(Protocol):
    def load(self, url: str) -> None: ...

    def close(self) -> None: ...

    def is_closed(self) -> bool: ...


class ViewerFactory(Protocol):
    def open_viewer(self, batch_id: str, emit: Callable[[LoadEvent], None]) -> Viewer: ...


class SessionFactory(Protocol):
    def open_session(self, batch_id: str, items: Sequence[str]) -> "SessionHandle": ...


Subscriber = Callable[["SessionHandle", LoadEvent], None]


class SessionHandle:
    def __init__(self, batch_id: str, items: Sequence[str] = ()):
        self.batch_id = batch_id
        self.items = tuple(items)
        self.state = IDLE
        self.current_url = ""
        self.title = ""
        self._viewer: Viewer | None = None
        self._last_failure: LoadEvent | None = None
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"SessionHandle(batch_id={self.batch_id!r}, state={self.state!r})"

    def attach(self, viewer: Viewer) -> None:
        self._viewer = viewer

    @property
    def closed(self) -> bool:
        if self.state == CLOSED:
            return True
        return self._viewer is not None and self._viewer.is_closed()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an observer; returns a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, event: LoadEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(self, event)

    def handle_event(self, event: LoadEvent) -> None:
        """Fold one viewer event into the state machine, then fan it out."""
        if self.state == CLOSED and event.kind != SESSION_CLOSED:
            return
        if event.kind == LOAD_STARTED:
            self.state = LOADING
            self._last_failure = None
            if event.url:
                self.current_url = event.url
        elif event.kind == LOAD_FINISHED:
            self.state = LOADED
            self.current_url = event.url or self.current_url
            self.title = event.title
        elif event.kind == LOAD_FAILED:
            if event.is_main_content and event.code not in IGNORED_NET_ERRORS:
                self.state = FAILED
                self._last_failure = event
        elif event.kind == NAVIGATED:
            self.current_url = event.url or self.current_url
        elif event.kind == SESSION_CLOSED:
            if self.state == CLOSED:
                return
            self.state = CLOSED
        self._notify(event)

    def load(self, item: str, retry_policy: RetryPolicy | None = None) -> LoadResult:
        """Load one item, retrying transient main-content failures."""
        policy = retry_policy or RetryPolicy()
        if self._viewer is None:
            return LoadResult(url=item, status=CLOSED, reason="session_closed")

        attempt = 0
        while True:
            # Also covers a window closed during the retry delay.
            if self.closed:
                return self._closed_result(item, attempt)
            attempt += 1
            self.state = LOADING
            self._last_failure = None
            try:
                self._viewer.load(item)
            except Exception as exc:  # noqa: BLE001
                self.handle_event(
                    LoadEvent(LOAD_FAILED, url=item, code=None, description=str(exc))
                )

            if self.state == LOADED:
                return LoadResult(
                    url=item,
                    status=LOADED,
                    attempts=attempt,
                    final_url=self.current_url,
                    title=self.title,
                )
            if self.closed:
                return self._closed_result(item, attempt)
            if self.state != FAILED:
                # The viewer returned without reporting an outcome.
                return LoadResult(
                    url=item, status=FAILED, attempts=attempt, reason="load_unconfirmed"
                )

            failure = self._last_failure
            code = failure.code if failure else None
            kind, reason = classify_load_failure(code, policy)
            if kind == "transient" and attempt < policy.max_attempts:
                self._notify(
                    LoadEvent(
                        LOAD_RETRY,
                        url=item,
                        code=code,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                    )
                )
                time.sleep(policy.delay_seconds)
                continue

            if code is None and failure and failure.description:
                reason = f"{reason}: {failure.description}"
            return LoadResult(
                url=item,
                status=FAILED,
                attempts=attempt,
                final_url=self.current_url,
                code=code,
                reason=reason,
                transient=kind == "transient",
            )

    def _closed_result(self, item: str, attempts: int) -> LoadResult:
        # No-op when the closed event was already delivered.
        self.handle_event(LoadEvent(SESSION_CLOSED, url=self.current_url))
        return LoadResult(url=item, status=CLOSED, attempts=attempts, reason="session_closed")

    def close(self) -> None:
        """Close the viewer; safe to call more than once."""
        if self.state == CLOSED:
            return
        viewer = self._viewer
        if viewer is not None and not viewer.is_closed():
            viewer.close()
        self.handle_event(LoadEvent(SESSION_CLOSED, url=self.current_url))


class ViewerSessionFactory:
    """Open SessionHandles on top of a viewer factory."""

    def __init__(self, viewer_factory: ViewerFactory):
        self.viewer_factory = viewer_factory

    def open_session(self, batch_id: str, items: Sequence[str]) -> SessionHandle:
        handle = SessionHandle(batch_id, items)
        try:
            viewer = self.viewer_factory.open_viewer(batch_id, handle.handle_event)
        except OpenFailed:
            raise
        except Exception as exc:  # noqa: BLE001
            raise OpenFailed(batch_id, str(exc)) from exc
        handle.attach(viewer)
        return handle

