"""Unit tests for core/fetcher.py -- NVD window fetching with a mocked session.

Covers:
  - pagination until totalResults is reached
  - pubStartDate/pubEndDate formatting and the apiKey header
  - FeedError on network failure, HTTP error and undecodable body
  - ValueError on an inverted window
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.fetcher import FeedError, fetch_nvd_window, format_feed_time

START = datetime(2024, 3, 1, tzinfo=timezone.utc)
END = datetime(2024, 3, 8, 12, 30, tzinfo=timezone.utc)


def _response(payload=None, status_error=None, json_error=None):
    resp = MagicMock()
    if status_error is not None:
        resp.raise_for_status.side_effect = status_error
    if json_error is not None:
        resp.json.side_effect = json_error
    else:
        resp.json.return_value = payload
    return resp


def _page(ids, total):
    return {"totalResults": total, "vulnerabilities": [{"cve": {"id": i}} for i in ids]}


class TestFormatFeedTime:
    def test_millisecond_format_without_zone(self):
        assert format_feed_time(END) == "2024-03-08T12:30:00.000"


class TestFetchNvdWindow:
    def test_single_page(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_page(["CVE-2024-0001", "CVE-2024-0002"], 2))
            items = fetch_nvd_window(START, END)

        assert [i["cve"]["id"] for i in items] == ["CVE-2024-0001", "CVE-2024-0002"]
        params = session.get.call_args.kwargs["params"]
        assert params["pubStartDate"] == "2024-03-01T00:00:00.000"
        assert params["pubEndDate"] == "2024-03-08T12:30:00.000"
        assert params["startIndex"] == 0

    def test_follows_pages_until_total(self):
        pages = [
            _response(_page(["CVE-2024-0001", "CVE-2024-0002"], 3)),
            _response(_page(["CVE-2024-0003"], 3)),
        ]
        with patch("core.fetcher._session") as session:
            session.get.side_effect = pages
            items = fetch_nvd_window(START, END)

        assert len(items) == 3
        assert session.get.call_count == 2
        assert session.get.call_args_list[1].kwargs["params"]["startIndex"] == 2

    def test_empty_page_stops(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_page([], 10))
            assert fetch_nvd_window(START, END) == []
        assert session.get.call_count == 1

    def test_api_key_sent_as_header(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_page([], 0))
            fetch_nvd_window(START, END, api_key="k-123")
        assert session.get.call_args.kwargs["headers"] == {"apiKey": "k-123"}

    def test_no_key_no_header(self):
        with patch("core.fetcher._session") as session, patch("core.fetcher.get_settings") as settings:
            settings.return_value = MagicMock(
                nvd_api_key=None, nvd_api_url="https://nvd.test", nvd_results_per_page=2000, nvd_timeout_seconds=5
            )
            session.get.return_value = _response(_page([], 0))
            fetch_nvd_window(START, END)
        assert session.get.call_args.kwargs["headers"] == {}
        assert session.get.call_args.args[0] == "https://nvd.test"

    def test_network_error_raises_feed_error(self):
        with patch("core.fetcher._session") as session:
            session.get.side_effect = requests.ConnectionError("refused")
            with pytest.raises(FeedError, match="NVD request failed"):
                fetch_nvd_window(START, END)

    def test_http_error_raises_feed_error(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(status_error=requests.HTTPError("503"))
            with pytest.raises(FeedError):
                fetch_nvd_window(START, END)

    def test_invalid_json_raises_feed_error(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(json_error=ValueError("bad json"))
            with pytest.raises(FeedError, match="not valid JSON"):
                fetch_nvd_window(START, END)

    def test_non_object_payload_raises_feed_error(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(["not", "a", "dict"])
            with pytest.raises(FeedError, match="unexpected payload"):
                fetch_nvd_window(START, END)

    def test_inverted_window_rejected(self):
        with patch("core.fetcher._session") as session:
            with pytest.raises(ValueError):
                fetch_nvd_window(END, START)
        session.get.assert_not_called()
