"""
End-to-end pipeline tests with a fake fetcher and a recording recommender.
"""

import pytest

from app.graph.lg_workflow import SEOAnalysisPipeline
from models.analysis_models import ExternalPageData
from services.errors import AnalysisFailed, FetchFailed, InvalidURL
from services.url_guard import UrlGuard

from conftest import FakeFetcher, RecordingRecommender

PAGE_URL = "https://example.com/affordable-website-design"


def _pipeline(settings, html="", **kwargs):
    fetcher = kwargs.pop("fetcher", None) or FakeFetcher(html)
    recommender = kwargs.pop("recommender", None) or RecordingRecommender()
    return SEOAnalysisPipeline(settings=settings, fetcher=fetcher, recommender=recommender, **kwargs), fetcher


@pytest.mark.integration
class TestPipeline:

    def test_optimized_page_scores_100(self, settings, well_optimized_html):
        pipeline, fetcher = _pipeline(settings, well_optimized_html)
        result = pipeline.analyze("http://example.com/affordable-website-design", "affordable website")

        assert fetcher.fetched == [PAGE_URL]
        assert result.url == PAGE_URL
        assert result.score == 100
        assert result.passed_checks == 18
        assert result.failed_checks == 0
        assert result.api_data_used is False

    def test_bare_page_scores_low(self, settings, bare_html):
        pipeline, _ = _pipeline(settings, bare_html)
        result = pipeline.analyze("example.com/welcome", "affordable website")

        assert len(result.checks) == 18
        assert result.passed_checks + result.failed_checks == 18
        assert result.score == 11

    def test_progress_is_recorded(self, settings, well_optimized_html):
        pipeline, _ = _pipeline(settings, well_optimized_html)
        state = pipeline.run(PAGE_URL, "affordable website")

        nodes = [line.split("]")[0].lstrip("[") for line in state["progress_messages"]]
        assert nodes[0] == "url_guard"
        assert nodes[-1] == "result"
        assert state["current_node"] == "result"

    def test_secondary_keywords_reach_the_checks(self, settings, bare_html):
        pipeline, _ = _pipeline(settings, bare_html)
        state = pipeline.run("https://example.com/welcome", "affordable website", secondary_keywords="welcome")

        assert state["secondary_keywords"] == "welcome"
        checks = {c.title: c for c in state["result"].checks}
        assert checks["Keyphrase in Title"].passed
        assert checks["Keyphrase in URL"].passed

    def test_page_data_marks_result(self, settings, bare_html):
        pipeline, _ = _pipeline(settings, bare_html)
        page_data = ExternalPageData(title="Affordable website studio")
        result = pipeline.analyze("https://example.com/welcome", "affordable website", page_data=page_data)

        assert result.api_data_used is True
        assert next(c for c in result.checks if c.title == "Keyphrase in Title").passed

    def test_image_sizes_are_measured_when_enabled(self, settings, well_optimized_html):
        measuring = settings.model_copy(update={"measure_image_sizes": True})
        fetcher = FakeFetcher(
            well_optimized_html,
            image_sizes={"https://example.com/images/team.webp": 800 * 1024},
        )
        pipeline, _ = _pipeline(measuring, fetcher=fetcher)
        result = pipeline.analyze(PAGE_URL, "affordable website")

        assert fetcher.sized == [
            "https://example.com/images/team.webp",
            "https://example.com/images/office.avif?w=800",
        ]
        size_check = next(c for c in result.checks if c.title == "Image File Size")
        assert not size_check.passed
        assert "team.webp" in size_check.recommendation


    def test_malformed_image_src_is_left_unmeasured(self, settings, well_optimized_html):
        measuring = settings.model_copy(update={"measure_image_sizes": True})
        html = well_optimized_html.replace("</body>", '<img src="http://[bad/a.png" alt="broken"></body>')
        fetcher = FakeFetcher(html)
        pipeline, _ = _pipeline(measuring, fetcher=fetcher)
        result = pipeline.analyze(PAGE_URL, "affordable website")

        assert "http://[bad/a.png" not in fetcher.sized
        assert len(fetcher.sized) == 2
        assert len(result.checks) == 18


@pytest.mark.integration
class TestPipelineErrors:

    def test_invalid_url_never_fetches(self, settings):
        pipeline, fetcher = _pipeline(settings, "<html></html>")
        with pytest.raises(InvalidURL):
            pipeline.analyze("http://127.0.0.1/admin", "seo")
        assert fetcher.fetched == []

    def test_allow_list_is_enforced(self, settings):
        guard = UrlGuard(allowed_domains=["*.example.org"])
        pipeline, fetcher = _pipeline(settings, "<html></html>", guard=guard)
        with pytest.raises(InvalidURL):
            pipeline.analyze("https://example.com/", "seo")
        assert fetcher.fetched == []

    def test_fetch_failure_propagates(self, settings):
        fetcher = FakeFetcher(error=FetchFailed("https://example.com/", "HTTP 500"))
        pipeline, _ = _pipeline(settings, fetcher=fetcher)
        with pytest.raises(FetchFailed):
            pipeline.analyze("https://example.com/", "seo")

    def test_empty_keyphrase_is_rejected(self, settings):
        pipeline, fetcher = _pipeline(settings, "<html></html>")
        with pytest.raises(AnalysisFailed):
            pipeline.analyze("https://example.com/", "   ")
        assert fetcher.fetched == []

    def test_unexpected_errors_are_wrapped(self, settings):
        class BrokenExtractor:
            def extract(self, html, base_url):
                raise KeyError("boom")

        pipeline, _ = _pipeline(settings, "<html></html>", extractor=BrokenExtractor())
        with pytest.raises(AnalysisFailed) as excinfo:
            pipeline.analyze("https://example.com/", "seo")
        assert "boom" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, KeyError)
