import re
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from selectolax.parser import HTMLParser

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from letterboxd_crawl.config import CrawlerConfig  # noqa: E402
from letterboxd_crawl.database import Database, Store  # noqa: E402
from letterboxd_crawl.errors import NavigationTimeoutError  # noqa: E402


@pytest.fixture
def config(tmp_path):
    """Config with a temp database and no settle delays."""
    return CrawlerConfig(
        db_path=tmp_path / "test.db",
        max_pages=1,
        settle_delay=0.0,
        settle_jitter=0.0,
        navigation_timeout=None,
        silent=True,
    )


@pytest.fixture
def db(config):
    database = Database(config.db_path)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return Store(db)


def _without_pseudo(selector):
    return re.sub(r":[\w-]+(\([^)]*\))?", "", selector)


class FakeResponse:
    def __init__(self, status: int):
        self.status = status


class FakeTab:
    """Serves canned HTML from a FakeSite instead of driving a browser."""

    def __init__(self, site: "FakeSite", name: str):
        self.site = site
        self.name = name
        self.url = "about:blank"
        self.html = "<html></html>"
        self.status = None

    async def navigate(self, url):
        self.site.visits.append(url)
        queued = self.site.statuses.get(url)
        if queued:
            status = queued.pop(0)
        else:
            status = 200 if url in self.site.pages else 404
        self.url = url
        self.status = status
        self.html = self.site.pages.get(url, "<html></html>")
        return FakeResponse(status)

    async def wait_visible(self, selector, timeout_ms=None):
        # Error pages never render the markup a trigger waits for
        loaded = self.status is not None and 200 <= self.status < 300
        if not loaded or HTMLParser(self.html).css_first(_without_pseudo(selector)) is None:
            raise NavigationTimeoutError(f"'{selector}' never became visible on {self.url}", self.url)

    async def exists(self, selector):
        return HTMLParser(self.html).css_first(selector) is not None

    async def click(self, selector):
        self.site.clicks.append((self.url, selector))
        revealed = self.site.on_click.get((self.url, selector))
        if revealed is not None:
            self.html = revealed

    async def document(self, selector="html"):
        return HTMLParser(self.html)

    async def screenshot(self, path):
        self.site.screenshots.append(path)
        return path


class FakeSite:
    """Stands in for TabManager: hands out FakeTabs and tracks what they did."""

    def __init__(self, pages=None):
        self.pages: dict[str, str] = dict(pages or {})
        self.statuses: dict[str, list[int]] = {}
        self.on_click: dict[tuple[str, str], str] = {}
        self.visits: list[str] = []
        self.clicks: list[tuple[str, str]] = []
        self.screenshots: list[Path] = []
        self.opened = 0
        self.open_now = 0

    @asynccontextmanager
    async def open_tab(self, name="tab"):
        self.opened += 1
        self.open_now += 1
        try:
            yield FakeTab(self, name)
        finally:
            self.open_now -= 1


@pytest.fixture
def fake_site():
    return FakeSite()


MOVIE_PAGE = """
<html>
<body class="film backdrop-loaded">
  <div id="backdrop" data-backdrop="https://a.ltrbxd.com/resized/sm/upload/backdrop-1200.jpg">
    <div class="backdropimage" style="background-image: url('https://a.ltrbxd.com/resized/sm/upload/backdrop-1920.jpg?v=1')"></div>
  </div>
  <div id="content">
    <div id="js-poster-col">
      <img src="https://a.ltrbxd.com/resized/film-poster/perfect-blue-230.jpg" alt="Perfect Blue">
    </div>
    <section class="production-masthead">
      <h1 class="headline-1"><span class="name">Perfect Blue</span></h1>
    </section>
    <section class="production-synopsis">
      <div class="truncate"><p>A pop singer gives up her career to become an actress.</p></div>
    </section>
    <p class="trailer-link"><a href="//www.youtube.com/embed/abc123">Trailer</a></p>

    <div id="tab-cast">
      <p>
        <a href="/actor/junko-iwao/">Junko Iwao</a>
        <a href="/actor/rica-matsumoto/">Rica Matsumoto</a>
        <a href="#" id="has-cast-overflow">Show All...</a>
      </p>
    </div>

    <div id="tab-crew">
      <h3><span>Director</span></h3>
      <div class="text-sluglist"><p><a href="/director/satoshi-kon/">Satoshi Kon</a></p></div>
      <h3><span>Writer</span></h3>
      <div class="text-sluglist"><p><a href="/writer/sadayuki-murai/">Sadayuki Murai</a></p></div>
    </div>

    <div id="tab-details">
      <h3><span>Studio</span></h3>
      <div class="text-sluglist"><p><a href="/studio/madhouse/">Madhouse</a></p></div>
      <h3><span>Country</span></h3>
      <div class="text-sluglist"><p><a href="/films/country/japan/">Japan</a></p></div>
      <h3><span>Primary Language</span></h3>
      <div class="text-sluglist"><p><a href="/films/language/japanese/">Japanese</a></p></div>
      <h3><span>Spoken Languages</span></h3>
      <div class="text-sluglist"><p><a href="/films/language/french/">French</a><a href="/films/language/english/">English</a></p></div>
      <h3><span>Alternative Titles</span></h3>
      <div class="text-indentedlist"><p>Pāfekuto Burū</p></div>
    </div>

    <div id="tab-genres">
      <h3><span>Genres</span></h3>
      <div class="text-sluglist"><p><a href="/films/genre/animation/">Animation</a><a href="/films/genre/thriller/">Thriller</a></p></div>
      <h3><span>Themes</span></h3>
      <div class="text-sluglist">
        <p>
          <a href="/films/theme/surreal-and-thought-provoking/">Surreal and thought-provoking</a>
          <a href="/film/perfect-blue/themes/">Show All…</a>
        </p>
      </div>
    </div>

    <div id="tab-releases">
      <section class="release-table -theatrical">
        <h3>Theatrical</h3>
        <div class="listing">
          <div class="list-item">
            <h5 class="date">28 Feb 1998</h5>
            <ul>
              <li><span class="name">Japan</span><span class="label">PG12</span></li>
              <li><span class="name">Hong Kong</span></li>
            </ul>
          </div>
        </div>
      </section>
    </div>

    <section class="col-main">
      <p class="text-footer">81&nbsp;mins &nbsp; More at IMDb TMDB</p>
    </section>
  </div>
</body>
</html>
"""


@pytest.fixture
def movie_page():
    return MOVIE_PAGE
