"""
Fetcher tests: variant order, retry/back-off schedule and short-circuit rules.
requests is monkeypatched so nothing leaves the process.
"""

from typing import List

import pytest
import requests

from services import crawler
from services.crawler import PageFetcher, build_url_variants, fetch_html, head_image_size
from services.errors import FetchFailed


class FakeResponse:

    def __init__(self, status_code=200, text="", url=None, headers=None):
        self.status_code = status_code
        self.text = text
        self.url = url
        self.headers = headers or {}


class ScriptedGet:
    """Replays a list of responses/exceptions and records requested URLs."""

    def __init__(self, script):
        self.script = list(script)
        self.calls: List[str] = []
        self.headers = []
        self.kwargs = []

    def __call__(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append(url)
        self.headers.append(headers)
        self.kwargs.append(kwargs)
        item = self.script.pop(0) if self.script else FakeResponse(500)
        if isinstance(item, Exception):
            raise item
        if item.url is None:
            item.url = url
        return item


@pytest.fixture
def sleeps():
    return []


def _fetch(url, sleeps, **kwargs):
    return fetch_html(url, 1.0, sleep=sleeps.append, **kwargs)


class TestVariants:

    def test_adds_www(self):
        assert build_url_variants("https://example.com/a?b=1") == [
            "https://example.com/a?b=1",
            "https://www.example.com/a?b=1",
        ]

    def test_removes_www(self):
        assert build_url_variants("https://www.example.com/") == [
            "https://www.example.com/",
            "https://example.com/",
        ]

    def test_ip_hosts_are_not_toggled(self):
        assert build_url_variants("https://8.8.8.8/") == ["https://8.8.8.8/"]


class TestFetchHtml:

    def test_first_success_wins(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(200, "<html>ok</html>")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "<html>ok</html>"
        assert fake.calls == ["https://example.com/"]
        assert sleeps == []

    def test_sends_no_cache_headers(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(200, "ok")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        _fetch("https://example.com/", sleeps)
        assert fake.headers[0]["Cache-Control"] == "no-cache"
        assert fake.headers[0]["Pragma"] == "no-cache"

    def test_retries_then_succeeds(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(503), FakeResponse(200, "second")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "second"
        assert fake.calls == ["https://example.com/", "https://example.com/"]
        assert sleeps == [0.5]

    def test_exhaustion_makes_exactly_four_attempts(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(500)] * 4)
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed) as excinfo:
            _fetch("https://example.com/page", sleeps)

        assert fake.calls == [
            "https://example.com/page",
            "https://example.com/page",
            "https://www.example.com/page",
            "https://www.example.com/page",
        ]
        assert sleeps == [0.5, 0.5]
        assert excinfo.value.last_error == "HTTP 500"

    def test_timeouts_are_retried(self, monkeypatch, sleeps):
        fake = ScriptedGet([requests.Timeout("slow"), FakeResponse(200, "late")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "late"
        assert len(fake.calls) == 2

    def test_not_found_skips_to_next_variant(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(404), FakeResponse(200, "www copy")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "www copy"
        assert fake.calls == ["https://example.com/", "https://www.example.com/"]
        assert sleeps == []

    def test_gone_on_both_variants_fails_fast(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(410), FakeResponse(410)])
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed):
            _fetch("https://example.com/", sleeps)
        assert len(fake.calls) == 2

    def test_connection_error_skips_to_next_variant(self, monkeypatch, sleeps):
        fake = ScriptedGet([requests.ConnectionError("refused"), FakeResponse(200, "fine")])
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "fine"
        assert fake.calls == ["https://example.com/", "https://www.example.com/"]

    def test_redirects_are_followed_hop_by_hop(self, monkeypatch, sleeps):
        fake = ScriptedGet(
            [
                FakeResponse(301, headers={"Location": "/new-home"}),
                FakeResponse(302, headers={"Location": "https://cdn.example.com/landing"}),
                FakeResponse(200, "moved"),
            ]
        )
        monkeypatch.setattr(crawler.requests, "get", fake)

        assert _fetch("https://example.com/", sleeps) == "moved"
        assert fake.calls == [
            "https://example.com/",
            "https://example.com/new-home",
            "https://cdn.example.com/landing",
        ]
        assert all(kwargs["allow_redirects"] is False for kwargs in fake.kwargs)

    def test_blocked_redirect_target_is_never_requested(self, monkeypatch, sleeps):
        internal = "http://169.254.169.254/latest/meta-data"
        fake = ScriptedGet(
            [
                FakeResponse(302, headers={"Location": internal}),
                FakeResponse(302, headers={"Location": internal}),
            ]
        )
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed) as excinfo:
            _fetch("https://example.com/", sleeps, url_filter=lambda u: "169.254" not in u)

        assert internal not in fake.calls
        assert fake.calls == ["https://example.com/", "https://www.example.com/"]
        assert "disallowed" in excinfo.value.last_error

    def test_redirect_loop_gives_up(self, monkeypatch, sleeps):
        loop = [FakeResponse(302, headers={"Location": "/again"}) for _ in range(20)]
        fake = ScriptedGet(loop)
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed) as excinfo:
            _fetch("https://example.com/", sleeps)
        assert "too many redirects" in excinfo.value.last_error
        assert len(fake.calls) == 2 * (crawler.MAX_REDIRECTS + 1)

    def test_rejected_variant_is_not_requested(self, monkeypatch, sleeps):
        fake = ScriptedGet([FakeResponse(500), FakeResponse(500)])
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed):
            _fetch("https://example.com/", sleeps, url_filter=lambda u: "www." not in u)
        assert fake.calls == ["https://example.com/", "https://example.com/"]


class TestHeadImageSize:

    def test_reads_content_length(self, monkeypatch):
        monkeypatch.setattr(
            crawler.requests,
            "head",
            lambda url, **kwargs: FakeResponse(200, headers={"Content-Length": "409600"}),
        )
        assert head_image_size("https://example.com/a.png") == 409600

    def test_missing_header_is_unknown(self, monkeypatch):
        monkeypatch.setattr(crawler.requests, "head", lambda url, **kwargs: FakeResponse(200))
        assert head_image_size("https://example.com/a.png") is None

    def test_errors_are_unknown(self, monkeypatch):
        def boom(url, **kwargs):
            raise requests.ConnectionError("down")

        monkeypatch.setattr(crawler.requests, "head", boom)
        assert head_image_size("https://example.com/a.png") is None

    def test_filtered_url_is_not_requested(self, monkeypatch):
        def boom(url, **kwargs):
            raise AssertionError("should not be called")

        monkeypatch.setattr(crawler.requests, "head", boom)
        assert head_image_size("http://10.0.0.1/a.png", url_filter=lambda u: False) is None


class TestPageFetcher:

    def test_uses_settings(self, monkeypatch, settings):
        configured = settings.model_copy(update={"fetch_max_attempts": 3, "fetch_retry_delay_seconds": 1.0})
        fetcher = PageFetcher.from_settings(configured)
        recorded = []
        fetcher.sleep = recorded.append

        fake = ScriptedGet([FakeResponse(500)] * 6)
        monkeypatch.setattr(crawler.requests, "get", fake)

        with pytest.raises(FetchFailed):
            fetcher.fetch("https://example.com/")
        assert len(fake.calls) == 6
        assert recorded == [1.0, 2.0, 1.0, 2.0]
