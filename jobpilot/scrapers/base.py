from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

from jobpilot.models import Posting, utcnow


def text_of(node: Any, selector: str, default: str = "") -> str:
    """Inner text of the first match under *node*, or *default*."""
    el = node.query_selector(selector)
    if el is None:
        return default
    value = (el.inner_text() or "").strip()
    return value or default


def strip_query(url: str) -> str:
    return url.split("?")[0]


class BoardScraper(ABC):
    """Board-specific knowledge: URLs, selectors and card parsing."""

    platform: str = ""
    results_selector: str = ""
    card_selector: str = ""
    detail_selector: str = ""
    id_pattern: re.Pattern[str] = re.compile(r"$^")
    scroll_steps: int = 3
    scroll_delay: float = 2.0

    @abstractmethod
    def search_url(self, keyword: str, location: str) -> str:
        pass

    @abstractmethod
    def parse_card(self, card: Any, location_hint: str) -> Posting | None:
        """Build a Posting from one result card; None when the card is malformed."""

    @abstractmethod
    def parse_detail(self, page: Any, url: str) -> Posting | None:
        pass

    def external_id(self, raw_id: str) -> str:
        return f"{self.platform.lower()}_{raw_id}"

    def match_id(self, url: str) -> str | None:
        m = self.id_pattern.search(url or "")
        return m.group(1) if m else None

    def new_posting(self, raw_id: str, url: str, **fields: Any) -> Posting:
        return Posting(
            external_id=self.external_id(raw_id),
            source_platform=self.platform,
            source_url=strip_query(url),
            scraped_at=utcnow(),
            is_active=True,
            **fields,
        )

    @staticmethod
    def encode(value: str) -> str:
        return quote(value, safe="")
