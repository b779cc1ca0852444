"""Best-effort notifications: always logged, optionally POSTed to a webhook."""
from __future__ import annotations

from typing import Any

import requests

from jobpilot.config import get_env
from jobpilot.log import get_logger

log = get_logger(__name__)


class Notifier:
    def __init__(self, webhook_url: str | None = None, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else get_env("NOTIFY_WEBHOOK_URL")
        self.timeout = timeout

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Deliver one event. Never raises; returns whether a webhook accepted it."""
        log.info("Notify %s: %s %s", user_id, event, payload)
        if not self.webhook_url:
            return False
        try:
            resp = requests.post(
                self.webhook_url,
                json={"user_id": user_id, "event": event, "payload": payload},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return True
        except requests.RequestException as exc:
            log.warning("Notification webhook failed for %s: %s", user_id, exc)
            return False

    def new_match(self, user_id: str, match_id: str, title: str, company: str, score: float) -> bool:
        return self.notify(
            user_id,
            "new_match",
            {"match_id": match_id, "title": title, "company": company, "score": score},
        )
