"""
LinkedIn actions driven through a Playwright page: login, connection request
with a note, and the Easy Apply flow.

Every action returns ``(ok, message)``; the caller decides what a failure means.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

from jobpilot.cancellation import CancelToken, ensure_token
from jobpilot.config import get_env
from jobpilot.log import get_logger

log = get_logger(__name__)

NOTE_LIMIT = 300
MESSAGE_LIMIT = 3000


def _visible(locator: Any) -> bool:
    """Safe visibility check that never throws."""
    try:
        return locator.count() > 0 and locator.first.is_visible(timeout=2000)
    except Exception:
        return False


def _click_first_visible(page: Any, selectors: list[str], *, timeout: int = 3000) -> bool:
    """Try clicking the first visible element matching any selector."""
    for sel in selectors:
        try:
            loc = page.locator(sel).first
            if loc.is_visible(timeout=timeout):
                loc.click()
                return True
        except Exception:
            continue
    return False


class LinkedInAutomation:
    def __init__(
        self,
        email: str | None = None,
        password: str | None = None,
        *,
        nav_timeout_ms: int = 25_000,
        step_delay: float = 2.0,
    ) -> None:
        self.email = email if email is not None else get_env("LINKEDIN_EMAIL")
        self.password = password if password is not None else get_env("LINKEDIN_PASSWORD")
        self.nav_timeout_ms = nav_timeout_ms
        self.step_delay = step_delay

    def _open(self, page: Any, url: str, cancel: CancelToken) -> None:
        page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
        cancel.sleep(self.step_delay)

    def login_if_needed(self, page: Any, cancel: CancelToken) -> tuple[bool, str]:
        if "login" not in page.url and "authwall" not in page.url:
            return True, "Already signed in"
        if not self.email or not self.password:
            return False, "LinkedIn credentials not set"
        try:
            page.get_by_label("Email or phone").fill(self.email)
            page.get_by_label("Password").fill(self.password)
            page.get_by_role("button", name="Sign in").click()
            page.wait_for_load_state("networkidle", timeout=15000)
        except Exception as e:
            return False, f"LinkedIn login failed: {str(e)[:80]}"
        cancel.sleep(self.step_delay)
        return True, "Signed in"

    def send_connection_request(
        self, page: Any, profile_url: str, note: str = "", cancel: CancelToken | None = None
    ) -> tuple[bool, str]:
        cancel = ensure_token(cancel)
        self._open(page, profile_url, cancel)
        ok, msg = self.login_if_needed(page, cancel)
        if not ok:
            return False, msg

        if not _click_first_visible(page, [
            'button:has-text("Connect")',
            'div[role="button"]:has-text("Connect")',
        ]):
            # Connect sometimes hides under the "More" menu
            if not (_click_first_visible(page, ['button:has-text("More")'])
                    and _click_first_visible(page, ['div[role="button"]:has-text("Connect")'])):
                return False, "Connect button not found"
        cancel.sleep(self.step_delay)

        if note and _click_first_visible(page, ['button:has-text("Add a note")']):
            ta = page.locator("textarea")
            if _visible(ta):
                ta.first.fill(note[:NOTE_LIMIT])

        if _click_first_visible(page, ['button:has-text("Send")', 'button[aria-label*="Send"]']):
            cancel.sleep(self.step_delay)
            return True, "Connection request sent"
        return False, "Send button not found"

    def easy_apply(
        self,
        page: Any,
        job_url: str,
        message: str = "",
        *,
        resume_path: Path | None = None,
        cancel: CancelToken | None = None,
    ) -> tuple[bool, str]:
        cancel = ensure_token(cancel)
        self._open(page, job_url, cancel)
        ok, msg = self.login_if_needed(page, cancel)
        if not ok:
            return False, msg

        easy = page.get_by_role("button", name="Easy Apply")
        if not _visible(easy):
            return False, "Easy Apply button not found"
        easy.first.click()
        cancel.sleep(self.step_delay)

        for _ in range(10):
            if resume_path:
                fi = page.locator('input[type="file"]')
                if _visible(fi):
                    fi.first.set_input_files(str(resume_path))
            if message:
                ta = page.locator("textarea")
                if _visible(ta):
                    ta.first.fill(message[:MESSAGE_LIMIT])
            submit = page.get_by_role("button", name="Submit application")
            if _visible(submit):
                submit.first.click()
                cancel.sleep(self.step_delay)
                return True, "Submitted via Easy Apply"
            nxt = page.get_by_role("button", name="Next").or_(page.get_by_role("button", name="Review"))
            if _visible(nxt):
                nxt.first.click()
                cancel.sleep(self.step_delay)
            else:
                break
        return False, "Easy Apply form incomplete"


def save_screenshot(page: Any, path: Path) -> Path | None:
    """Best effort; a failed screenshot never masks the error being reported."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        page.screenshot(path=str(path), full_page=True)
        return path
    except Exception as exc:
        log.debug("Screenshot failed: %s", exc)
        return None
