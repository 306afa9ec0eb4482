"""
Pytest configuration and shared fixtures for the SEO analysis tests.

Network and LLM access are always faked: HTML comes from fixtures,
recommendations come from an in-process recorder.
"""

from typing import Dict, List, Optional

import pytest

from app.config import Settings


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: runs the whole pipeline with fakes for network and LLM"
    )


class RecordingRecommender:
    """Recommender fake that records every request and answers deterministically."""

    def __init__(self, answers: Optional[Dict[str, str]] = None):
        self.answers = answers or {}
        self.calls: List[tuple] = []

    def recommend(self, check_title, keyphrase, context=None, extra_context=None):
        self.calls.append((check_title, keyphrase, context, extra_context))
        return self.answers.get(check_title, f"AI suggestion for {check_title}")


class FakeFetcher:
    """Fetcher fake serving fixed HTML and image sizes."""

    def __init__(self, html: str = "", image_sizes: Optional[Dict[str, int]] = None, error: Exception = None):
        self.html = html
        self.image_sizes = image_sizes or {}
        self.error = error
        self.fetched: List[str] = []
        self.sized: List[str] = []

    def fetch(self, url):
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        return self.html

    def image_size(self, url):
        self.sized.append(url)
        return self.image_sizes.get(url)


@pytest.fixture
def settings():
    """Settings isolated from the developer's .env file."""
    return Settings(
        _env_file=None,
        openai_api_key=None,
        use_gpt_recommendations=True,
        recommendation_cache_enabled=True,
        allowed_domains=[],
        enforce_domain_allowlist=True,
        resolve_dns=False,
        measure_image_sizes=False,
    )


@pytest.fixture
def recommender():
    return RecordingRecommender()


@pytest.fixture
def well_optimized_html():
    """A page that passes every check for the keyphrase 'affordable website'."""
    body_filler = " ".join(["Our team builds fast pages that load quickly for every visitor."] * 45)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <title>Affordable Website Design for Small Business</title>
  <meta name="description" content="Get an affordable website that converts visitors into customers.">
  <meta property="og:title" content="Affordable Website Design">
  <meta property="og:description" content="Affordable website design for small business owners.">
  <meta property="og:image" content="https://cdn.example.com/og.webp">
  <link rel="stylesheet" href="https://example.com/assets/site.min.css">
  <script src="https://example.com/static/app.3f9a2b7c1d.js"></script>
  <script type="application/ld+json">{{"@context": "https://schema.org", "@type": "WebPage", "name": "Design"}}</script>
</head>
<body>
  <h1>Affordable Website Design</h1>
  <p>An affordable website does not have to look cheap. {body_filler}</p>
  <h2>Why an affordable website pays off</h2>
  <p>We keep every affordable website lean and readable for your customers.</p>
  <h3>Our process</h3>
  <p>Read the <a href="/pricing">pricing page</a> or the <a href="https://developers.google.com/search">search guide</a>.</p>
  <img src="/images/team.webp" alt="Our design team">
  <img src="/images/office.avif?w=800" alt="The office">
</body>
</html>"""


@pytest.fixture
def bare_html():
    """A page that fails most checks."""
    return """<html>
<head><title>Welcome</title></head>
<body>
  <h3>Hello</h3>
  <h3>World</h3>
  <p>Short text.</p>
  <img src="/photo.jpg">
  <script>
    // configure the widget
    var settings = {
        enabled: true,
        retries: 3
    };
    console.log("ready", settings);
  </script>
</body>
</html>"""
