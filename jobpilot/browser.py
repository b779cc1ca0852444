"""Scoped Playwright browser session (one per scrape or send run)."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from playwright.sync_api import sync_playwright

from jobpilot.log import get_logger

log = get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
LAUNCH_ARGS = ["--disable-blink-features=AutomationControlled", "--disable-dev-shm-usage", "--no-sandbox"]


class BrowserSession:
    """Context manager yielding a ready Page; closes everything on exit.

    ``with BrowserSession(headless=True) as page: ...``
    Partial launches are torn down before the error propagates, so a failed
    ``__enter__`` never leaks a browser process.
    """

    def __init__(self, *, headless: bool = True, locale: str = "en-US", default_timeout_ms: int = 20_000) -> None:
        self.headless = headless
        self.locale = locale
        self.default_timeout_ms = default_timeout_ms
        self._pw: Any = None
        self._browser: Any = None
        self._context: Any = None
        self.page: Any = None

    def __enter__(self) -> Any:
        _pw_path = os.environ.get("PLAYWRIGHT_BROWSERS_PATH", "")
        if _pw_path and not Path(_pw_path).exists():
            os.environ.pop("PLAYWRIGHT_BROWSERS_PATH", None)
        try:
            log.info("Launching Chromium (headless=%s)", self.headless)
            self._pw = sync_playwright().start()
            self._browser = self._pw.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            self._context = self._browser.new_context(
                viewport={"width": 1920, "height": 1080},
                user_agent=USER_AGENT,
                locale=self.locale,
            )
            self.page = self._context.new_page()
            self.page.set_default_timeout(self.default_timeout_ms)
        except Exception:
            self.close()
            raise
        return self.page

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        for name in ("page", "_context", "_browser"):
            obj = getattr(self, name)
            if obj is None:
                continue
            try:
                obj.close()
            except Exception as e:
                log.debug("Ignoring error closing %s: %s", name, e)
            setattr(self, name, None)
        if self._pw is not None:
            try:
                self._pw.stop()
            except Exception as e:
                log.debug("Ignoring error stopping playwright: %s", e)
            self._pw = None
            log.info("Browser session closed")
