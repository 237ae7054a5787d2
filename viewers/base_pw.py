"""Playwright-backed viewers: one Chromium page per session."""

from __future__ import annotations

import re
from typing import Callable

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from batching.config import PLAYWRIGHT_TIMEOUT, USER_AGENT, VIEWPORT
from batching.session import (
    ERR_ABORTED,
    ERR_TIMED_OUT,
    LOAD_FAILED,
    LOAD_FINISHED,
    LOAD_STARTED,
    NAVIGATED,
    SESSION_CLOSED,
    LoadEvent,
)

Emit = Callable[[LoadEvent], None]

NET_ERROR_CODES = {
    "ERR_FAILED": -2,
    "ERR_ABORTED": -3,
    "ERR_TIMED_OUT": -7,
    "ERR_ACCESS_DENIED": -10,
    "ERR_BLOCKED_BY_CLIENT": -20,
    "ERR_BLOCKED_BY_RESPONSE": -27,
    "ERR_CONNECTION_CLOSED": -100,
    "ERR_CONNECTION_RESET": -101,
    "ERR_CONNECTION_REFUSED": -102,
    "ERR_CONNECTION_ABORTED": -103,
    "ERR_CONNECTION_FAILED": -104,
    "ERR_NAME_NOT_RESOLVED": -105,
    "ERR_INTERNET_DISCONNECTED": -106,
    "ERR_SSL_PROTOCOL_ERROR": -107,
    "ERR_ADDRESS_INVALID": -108,
    "ERR_ADDRESS_UNREACHABLE": -109,
    "ERR_CONNECTION_TIMED_OUT": -118,
    "ERR_CERT_COMMON_NAME_INVALID": -200,
    "ERR_CERT_DATE_INVALID": -201,
    "ERR_CERT_AUTHORITY_INVALID": -202,
    "ERR_TOO_MANY_REDIRECTS": -310,
    "ERR_EMPTY_RESPONSE": -324,
    "ERR_INVALID_RESPONSE": -320,
    "ERR_HTTP2_PROTOCOL_ERROR": -337,
}

_NET_ERROR_RE = re.compile(r"net::(ERR_[A-Z0-9_]+)")


def parse_net_error(message: str) -> tuple[int | None, str]:
    """Extract the Chromium net error (code, name) from a Playwright error message."""
    match = _NET_ERROR_RE.search(message or "")
    if not match:
        return None, ""
    name = match.group(1)
    return NET_ERROR_CODES.get(name, -2), name


class PlaywrightViewer:
    def __init__(self, page, batch_id: str, emit: Emit, timeout_ms: int = PLAYWRIGHT_TIMEOUT):
        self.page = page
        self.batch_id = batch_id
        self.emit = emit
        self.timeout_ms = timeout_ms
        page.on("framenavigated", self._on_frame_navigated)
        page.on("requestfailed", self._on_request_failed)
        page.on("close", self._on_close)

    def _on_frame_navigated(self, frame):
        if frame == self.page.main_frame:
            self.emit(LoadEvent(NAVIGATED, url=frame.url))

    def _on_request_failed(self, request):
        try:
            is_main = request.is_navigation_request() and request.frame == self.page.main_frame
        except PlaywrightError:
            is_main = False
        if is_main:
            # Main document failures surface through goto() in load().
            return
        failure = request.failure or ""
        code, _name = parse_net_error(failure)
        self.emit(
            LoadEvent(
                LOAD_FAILED,
                url=request.url,
                code=code,
                is_main_content=False,
                description=failure,
            )
        )

    def _on_close(self, _page):
        self.emit(LoadEvent(SESSION_CLOSED, url=self._url()))

    def _url(self) -> str:
        try:
            return self.page.url
        except PlaywrightError:
            return ""

    def _title(self) -> str:
        try:
            return self.page.title()
        except PlaywrightError:
            return ""

    def load(self, url: str) -> None:
        self.emit(LoadEvent(LOAD_STARTED, url=url))
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        except PlaywrightTimeoutError as exc:
            self.emit(LoadEvent(LOAD_FAILED, url=url, code=ERR_TIMED_OUT, description=str(exc)))
            return
        except PlaywrightError as exc:
            if self.page.is_closed():
                return
            code, name = parse_net_error(str(exc))
            self.emit(LoadEvent(LOAD_FAILED, url=url, code=code, description=name or str(exc)))
            if code != ERR_ABORTED:
                return
            # A redirect or download replaced the navigation; wait for whatever won.
            try:
                self.page.wait_for_load_state("domcontentloaded", timeout=self.timeout_ms)
            except PlaywrightError as wait_exc:
                self.emit(
                    LoadEvent(LOAD_FAILED, url=url, code=ERR_TIMED_OUT, description=str(wait_exc))
                )
                return

        self.emit(LoadEvent(LOAD_FINISHED, url=self._url(), title=self._title()))

    def close(self) -> None:
        if not self.page.is_closed():
            self.page.close()

    def is_closed(self) -> bool:
        return self.page.is_closed()


class PlaywrightViewerFactory:
    """Chromium browser shared by all sessions of a run; one page per viewer.

    All pages live in one browser context so a login done in one window is
    visible to the others. Only call it from the thread that started it.
    """

    def __init__(
        self,
        headless: bool = False,
        timeout_ms: int = PLAYWRIGHT_TIMEOUT,
        user_agent: str = USER_AGENT,
        viewport: dict | None = None,
    ):
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent
        self.viewport = viewport or dict(VIEWPORT)
        self._pw = None
        self._browser = None
        self._context = None

    def start(self) -> None:
        if self._context is not None:
            return
        self._pw = sync_playwright().start()
        self._browser = self._pw.chromium.launch(headless=self.headless)
        self._context = self._browser.new_context(
            user_agent=self.user_agent,
            ignore_https_errors=True,
            java_script_enabled=True,
            viewport=self.viewport,
        )

    def open_viewer(self, batch_id: str, emit: Emit) -> PlaywrightViewer:
        self.start()
        page = self._context.new_page()
        return PlaywrightViewer(page, batch_id, emit, timeout_ms=self.timeout_ms)

    def close(self) -> None:
        if self._context is not None:
            self._context.close()
            self._context = None
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._pw is not None:
            self._pw.stop()
            self._pw = None

    def __enter__(self) -> "PlaywrightViewerFactory":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
