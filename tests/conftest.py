"""
Shared test configuration for HybridCrawl.

Provides fixtures for sample pages, fast retry settings and fake Playwright
objects so engine components can be exercised without a real browser.
"""

# Standard library imports
import asyncio
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from hybridcrawl.cache import MemoryCache
from hybridcrawl.crawler.retry import RetryConfig
from hybridcrawl.protocols import PageData
from tests.helpers.fakes import FakePlaywright

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take more than a few seconds")
    config.addinivalue_line("markers", "browser: Tests requiring a real Chromium install")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test leaves behind so one test cannot hang the next."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Sample Pages
# ============================================================================


@pytest.fixture
def sample_html() -> str:
    """Static article page: 3 links, 1 image, metadata, no scripts."""
    return """<!DOCTYPE html>
<html>
<head>
    <title>Sample Article</title>
    <meta name="description" content="A sample article for testing">
    <meta property="og:title" content="Sample OG Title">
</head>
<body>
    <div class="header"><h1 id="headline">Sample Headline</h1></div>
    <div class="content">
        <p class="lead">First paragraph of the article.</p>
        <p>Second paragraph with <a href="/about">about</a> link.</p>
        <a href="https://example.com/contact">Contact</a>
        <a href="https://other.example.org/page">Elsewhere</a>
        <img src="/images/photo.jpg" alt="Photo">
    </div>
    <div class="footer">Footer text</div>
</body>
</html>"""


@pytest.fixture
def spa_html() -> str:
    """Client-rendered shell: a mount point and a bundle."""
    return """<!DOCTYPE html>
<html>
<head><title>App</title></head>
<body>
    <div id="root" data-reactroot></div>
    <script src="/static/js/main.js"></script>
</body>
</html>"""


@pytest.fixture
def hybrid_html() -> str:
    """Mostly static page that bootstraps data with one inline script."""
    return """<!DOCTYPE html>
<html>
<head><title>Catalogue</title></head>
<body>
    <div class="nav">Nav</div>
    <div class="list">Items</div>
    <div class="detail">Detail</div>
    <div class="footer">Footer</div>
    <script>window.pageConfig = {"page": 2};</script>
</body>
</html>"""


@pytest.fixture
def sample_page() -> PageData:
    return PageData(url="https://example.com/", status_code=200, title="Example", content="Hello", html="<p>Hello</p>")


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry schedule with millisecond backoffs."""
    return RetryConfig(max_attempts=3, initial_backoff=0.001, max_backoff=0.01, multiplier=2.0)


@pytest.fixture
def memory_cache():
    cache = MemoryCache(10 * 1024 * 1024, start_sweeper=False)
    yield cache
    cache.close()


@pytest.fixture
def fake_playwright() -> FakePlaywright:
    return FakePlaywright()
