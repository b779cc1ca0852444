"""Indeed job search. Ids come from ``data-jk`` or the ``jk=`` query parameter."""
from __future__ import annotations

import json
import re
from typing import Any

from jobpilot.models import Posting
from jobpilot.scrapers.base import BoardScraper, text_of


class IndeedScraper(BoardScraper):
    platform = "Indeed"
    results_selector = "div.job_seen_beacon, td.resultContent"
    card_selector = "div.job_seen_beacon, td.resultContent"
    detail_selector = "div#jobDescriptionText, div.jobsearch-jobDescriptionText"
    id_pattern = re.compile(r"jk=([a-zA-Z0-9]+)")
    scroll_steps = 2
    scroll_delay = 1.5

    def __init__(self, base_url: str = "https://www.indeed.com") -> None:
        self.base_url = base_url.rstrip("/")

    def search_url(self, keyword: str, location: str) -> str:
        # fromage=1: posted within a day
        return f"{self.base_url}/jobs?q={self.encode(keyword)}&l={self.encode(location)}&fromage=1"

    def parse_card(self, card: Any, location_hint: str) -> Posting | None:
        link = card.query_selector("h2.jobTitle a, h2 a.jcs-JobTitle")
        if link is None:
            return None
        url = link.get_attribute("href") or ""
        if not url:
            return None
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        raw_id = link.get_attribute("data-jk") or self.match_id(url)
        if not raw_id:
            return None
        posting = self.new_posting(
            raw_id,
            url,
            title=text_of(card, "h2.jobTitle span[title], h2 a.jcs-JobTitle span", "Unknown Title"),
            company_name=text_of(card, "span.companyName, span[data-testid='company-name']", "Unknown Company"),
            location=text_of(card, "div.companyLocation, div[data-testid='text-location']", location_hint),
            description=text_of(card, "div.job-snippet, div.jobCardShelfContainer"),
        )
        # The job key lives in the query string, keep it on the stored URL
        posting.source_url = f"{self.base_url}/viewjob?jk={raw_id}"
        return posting

    def parse_detail(self, page: Any, url: str) -> Posting | None:
        raw_id = self.match_id(url)
        if not raw_id:
            return None
        metadata = [
            (el.inner_text() or "").strip()
            for el in page.query_selector_all(
                "div.jobsearch-JobMetadataHeader-item, div.jobsearch-JobDescriptionSection-sectionItem"
            )
        ]
        posting = self.new_posting(
            raw_id,
            url,
            title=text_of(page, "h1.jobsearch-JobInfoHeader-title, h2.jobsearch-JobInfoHeader-title", "Unknown Title"),
            company_name=text_of(
                page, "div[data-company-name='true'], a[data-testid='inlineHeader-companyName']", "Unknown Company"
            ),
            location=text_of(page, "div[data-testid='inlineHeader-companyLocation'], div.jobsearch-JobInfoHeader-subtitle"),
            description=text_of(page, self.detail_selector),
            salary_range=text_of(page, "div#salaryInfoAndJobType, span.salary-snippet") or None,
            requirements=json.dumps([m for m in metadata if m]),
        )
        posting.source_url = f"{self.base_url}/viewjob?jk={raw_id}"
        return posting
