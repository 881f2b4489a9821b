"""
fetcher.py -- Vulnerability feed fetching (NVD CVE API 2.0).

The feed is free. NVD optionally accepts an API key for higher rate limits.
Unlike a best-effort lookup, a failed window fetch is an error: the importer
must not write anything when the upstream call fails, so FeedError is raised
instead of returning an empty result.
"""

import logging
from datetime import datetime
from typing import Any, Optional

import requests

from core.config import get_settings

logger = logging.getLogger("cryptiomt.fetcher")

# NVD expects extended ISO-8601 with milliseconds and no zone designator.
_NVD_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.000"

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- NVD is a known public
# API and 3 hops protects against redirect chains.
_session = requests.Session()
_session.max_redirects = 3


class FeedError(Exception):
    """The vulnerability feed could not be fetched or decoded."""


def format_feed_time(moment: datetime) -> str:
    return moment.strftime(_NVD_TIME_FORMAT)


def _get_page(url: str, params: dict[str, Any], headers: dict[str, str], timeout: int) -> dict[str, Any]:
    try:
        resp = _session.get(url, params=params, headers=headers, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise FeedError(f"NVD request failed: {e}") from e
    try:
        payload = resp.json()
    except ValueError as e:
        raise FeedError("NVD returned a body that is not valid JSON") from e
    if not isinstance(payload, dict):
        raise FeedError("NVD returned an unexpected payload shape")
    return payload


def fetch_nvd_window(
    window_start: datetime,
    window_end: datetime,
    api_key: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Fetch every vulnerability published inside [window_start, window_end].

    Args:
        window_start: Inclusive lower bound on publication time (UTC).
        window_end:   Inclusive upper bound on publication time (UTC).
        api_key:      Optional NVD API key override. Falls back to
                      NVD_API_KEY from settings; unauthenticated when neither
                      is set.

    Returns the raw ``vulnerabilities`` items from every result page, in feed
    order. Raises FeedError on any network error, non-2xx status, or
    undecodable body; raises ValueError when the window is inverted.
    """
    if window_start > window_end:
        raise ValueError("window_start must not be after window_end")

    settings = get_settings()
    effective_key = api_key or settings.nvd_api_key
    headers: dict[str, str] = {}
    if effective_key:
        headers["apiKey"] = effective_key

    items: list[dict[str, Any]] = []
    start_index = 0
    while True:
        params: dict[str, Any] = {
            "pubStartDate": format_feed_time(window_start),
            "pubEndDate": format_feed_time(window_end),
            "startIndex": start_index,
            "resultsPerPage": settings.nvd_results_per_page,
        }
        payload = _get_page(settings.nvd_api_url, params, headers, settings.nvd_timeout_seconds)
        page = payload.get("vulnerabilities") or []
        items.extend(page)
        total = int(payload.get("totalResults") or 0)
        start_index += len(page)
        if not page or start_index >= total:
            break

    logger.info(
        "Fetched %d vulnerabilities published %s .. %s",
        len(items),
        format_feed_time(window_start),
        format_feed_time(window_end),
    )
    return items
