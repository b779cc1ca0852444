"""LinkedIn public job search (no login required).

Cards link to ``/jobs/view/<id>``; that numeric id becomes ``linkedin_<id>``.
"""
from __future__ import annotations

import json
import re
from typing import Any

from jobpilot.models import Posting
from jobpilot.scrapers.base import BoardScraper, text_of


class LinkedInScraper(BoardScraper):
    platform = "LinkedIn"
    results_selector = "ul.jobs-search__results-list"
    card_selector = "ul.jobs-search__results-list > li, li.jobs-search-results__list-item"
    detail_selector = "div.show-more-less-html__markup, div.description__text"
    id_pattern = re.compile(r"jobs/view/(?:[^/?]*-)?(\d+)")
    scroll_steps = 3
    scroll_delay = 2.0

    def search_url(self, keyword: str, location: str) -> str:
        # f_TPR=r86400: posted in the last 24 hours
        return (
            "https://www.linkedin.com/jobs/search/"
            f"?keywords={self.encode(keyword)}&location={self.encode(location)}&f_TPR=r86400"
        )

    def parse_card(self, card: Any, location_hint: str) -> Posting | None:
        link = card.query_selector("a.base-card__full-link")
        if link is None:
            return None
        url = link.get_attribute("href") or ""
        raw_id = self.match_id(url)
        if not raw_id:
            return None
        return self.new_posting(
            raw_id,
            url,
            title=text_of(card, "h3.base-search-card__title", "Unknown Title"),
            company_name=text_of(card, "h4.base-search-card__subtitle", "Unknown Company"),
            location=text_of(card, "span.job-search-card__location", location_hint),
            description="",
        )

    def parse_detail(self, page: Any, url: str) -> Posting | None:
        raw_id = self.match_id(url)
        if not raw_id:
            return None
        criteria = [
            (el.inner_text() or "").strip()
            for el in page.query_selector_all("li.description__job-criteria-item")
        ]
        salary = text_of(page, "span.compensation__salary, div.salary") or None
        return self.new_posting(
            raw_id,
            url,
            title=text_of(page, "h1.top-card-layout__title, h2.topcard__title", "Unknown Title"),
            company_name=text_of(page, "a.topcard__org-name-link, span.topcard__flavor", "Unknown Company"),
            location=text_of(page, "span.topcard__flavor--bullet"),
            description=text_of(page, self.detail_selector),
            salary_range=salary,
            requirements=json.dumps([c for c in criteria if c]),
        )
