from __future__ import annotations

import logging
from typing import List

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .base import PollingFeed, Record
from .file import _unwrap

log = logging.getLogger(__name__)


def _should_retry(exc: BaseException) -> bool:
    """Client errors (4xx) are not transient; everything else is retried."""
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        if 400 <= exc.response.status_code < 500:
            return False
    return isinstance(exc, requests.RequestException)


class HttpFeed(PollingFeed):
    """Polls a JSON endpoint returning listing records.

    Retries cover a single request only; once they are exhausted the error is
    delivered to subscribers and the stream ends.
    """

    name = "http"

    def __init__(self, url: str, user_agent: str = "food-radar/0.1", timeout: float = 15.0) -> None:
        super().__init__()
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/json",
        })

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception(_should_retry),
        reraise=True,
    )
    def _get(self) -> requests.Response:
        resp = self.session.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def _load(self) -> List[Record]:
        log.info("[%s] Fetching %s", self.name, self.url)
        return _unwrap(self._get().json())
