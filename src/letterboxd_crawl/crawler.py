"""
Crawl orchestration.

Walks the popular-members listing, then for every member their films pages,
and for every film the movie page, the member's activity page for it and any
review it links to. Every page gets its own tab, every navigation goes through
the rate limiter and the retry policy, and everything extracted from one
movie page is persisted in a single transaction, parents first.
"""
import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

from tqdm import tqdm

from .config import BASE_URL, MEMBERS_PAGE_PATH, USER_FILMS_PAGE_PATH, CrawlerConfig
from .database import Store, UpsertOutcome
from .errors import CrawlError
from .extractors import (
    extract_activities,
    extract_casts,
    extract_countries,
    extract_crews,
    extract_genres_and_themes,
    extract_languages,
    extract_max_page,
    extract_movie,
    extract_movie_urls,
    extract_releases,
    extract_review_text,
    extract_studios,
    extract_users,
    merge_activities,
)
from .models import (
    CrewAndMovie,
    GenreAndMovie,
    Movie,
    StudioAndMovie,
    ThemeAndMovie,
    User,
    WatchActivity,
)
from .navigation import Action, RetryPolicy, delay, navigate_till_trigger
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

# Readiness selectors
LAST_MEMBER_ROW = "#content table tbody tr:last-child"
LAST_FILM = "div.poster-grid ul li:last-child"
ACTIVITY_TABLE = "#activity-table-body"
REVIEW_POSTER = "section.viewing-poster-container"
BACKDROP = "#backdrop"
BACKDROP_LOADED = "body.backdrop-loaded"
POSTER_IMAGE = "#js-poster-col img"
SPOILER_BUTTON = "div.js-spoiler-container a"


@dataclass
class CrawlFailure:
    unit: str
    error: str
    screenshot: Path | None = None


@dataclass
class CrawlSummary:
    users: int = 0
    movies: int = 0
    activities: int = 0
    failures: list[CrawlFailure] = field(default_factory=list)


def films_page_url(user: User, page: int) -> str:
    return user.url.rstrip("/") + "/" + USER_FILMS_PAGE_PATH.format(page=page)


def activity_url(user: User, movie: Movie) -> str:
    user_path = urlparse(user.url).path.strip("/")
    movie_path = urlparse(movie.url).path.strip("/")
    return f"{BASE_URL}/{user_path}/{movie_path}/activity/"


def _file_safe(name: str) -> str:
    return re.sub(r"[^\w.-]+", "_", name).strip("_") or "tab"


class Crawler:
    """
    Sequential crawl driver. Tabs come from the injected tab manager, so the
    same code runs against a real browser or an in-memory fake.

    With `config.fail_fast` off, a CrawlError aborts only the member being
    crawled; it is logged and recorded in the summary. Database errors and
    cancellation always abort the run.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        store: Store,
        tabs,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.config = config
        self.store = store
        self.tabs = tabs
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit_interval, config.rate_limit_cooldown)
        self.retry_policy = retry_policy or RetryPolicy(config.retries)
        self.summary = CrawlSummary()

    # -- navigation helpers --------------------------------------------------

    async def execute(self, tab, url: str, *triggers: Action):
        """
        Load `url` in `tab` and wait for its triggers, retrying on transient
        statuses. Each attempt is rate limited, runs the triggers against the
        page it loaded and gets its own deadline.
        """
        async def attempt():
            await self.rate_limiter.acquire()
            return await navigate_till_trigger(
                lambda: tab.navigate(url), *triggers, timeout=self.config.navigation_timeout,
            )

        return await self.retry_policy.run(attempt, url)

    def _visible(self, tab, selector: str) -> Action:
        return lambda: tab.wait_visible(selector)

    def _settle(self, scale: float = 1.0) -> Action:
        return delay(self.config.settle_delay * scale, self.config.settle_jitter * scale)

    def _backdrop_ready(self, tab) -> Action:
        async def _wait():
            if await tab.exists(BACKDROP):
                await tab.wait_visible(BACKDROP_LOADED)
                await tab.wait_visible(POSTER_IMAGE)
        return _wait

    @asynccontextmanager
    async def _open(self, name: str):
        """Open a tab; a CrawlError raised inside gets a screenshot of it when configured."""
        async with self.tabs.open_tab(name) as tab:
            try:
                yield tab
            except CrawlError as exc:
                if self.config.screenshot_dir is not None and exc.screenshot is None:
                    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
                    path = self.config.screenshot_dir / f"{stamp}-{_file_safe(name)}.png"
                    exc.screenshot = await tab.screenshot(path)
                raise

    # -- crawl ---------------------------------------------------------------

    async def run(self) -> CrawlSummary:
        """Crawl the configured number of popular-members pages."""
        db = self.store.db
        session_id = db.create_crawl_session()
        status = "failed"
        logger.info(f"Crawl session {session_id} started (max_pages={self.config.max_pages})")

        try:
            async with self._open("members") as members_tab:
                pages = tqdm(range(1, self.config.max_pages + 1), desc="Members pages", disable=self.config.silent)
                for page in pages:
                    url = BASE_URL + MEMBERS_PAGE_PATH.format(page=page)
                    await self.execute(
                        members_tab, url,
                        self._visible(members_tab, LAST_MEMBER_ROW),
                        self._settle(),
                    )
                    users = extract_users(await members_tab.document())
                    logger.info(f"Members page {page}: {len(users)} users")

                    for user in users:
                        self.store.users.upsert(user)
                        await self._crawl_user_isolated(user)
                        db.update_session_progress(
                            session_id, self.summary.users, self.summary.movies, len(self.summary.failures),
                        )
            status = "completed"
        except (asyncio.CancelledError, KeyboardInterrupt):
            status = "interrupted"
            raise
        finally:
            db.complete_crawl_session(session_id, status=status)
            logger.info(
                f"Crawl session {session_id} {status}: {self.summary.users} users, "
                f"{self.summary.movies} new movies, {self.summary.activities} activities, "
                f"{len(self.summary.failures)} failures"
            )

        return self.summary

    async def _crawl_user_isolated(self, user: User) -> None:
        try:
            await self.crawl_user(user)
        except CrawlError as exc:
            if self.config.fail_fast:
                raise
            logger.error(f"Crawl of {user.url} failed, moving on: {exc}")
            self.summary.failures.append(CrawlFailure(unit=user.url, error=str(exc), screenshot=exc.screenshot))
        else:
            self.summary.users += 1

    async def crawl_user(self, user: User) -> None:
        """Visit every films page of a member, in site order."""
        logger.info(f"Crawling {user.name}'s films...")
        progress = tqdm(desc=user.name, unit="page", leave=False, disable=self.config.silent)

        try:
            async with self._open(f"user {user.name}") as tab:
                page, max_page = 1, 1
                while page <= max_page:
                    await self.execute(
                        tab, films_page_url(user, page),
                        self._visible(tab, LAST_FILM),
                        self._settle(),
                    )
                    tree = await tab.document()
                    if page == 1:
                        max_page = extract_max_page(tree)
                        progress.total = max_page
                        progress.refresh()

                    movie_urls = extract_movie_urls(tree)
                    logger.debug(f"Films page user={user.name} page={page}/{max_page} movies={len(movie_urls)}")

                    for movie_url in movie_urls:
                        movie = await self.crawl_movie(movie_url)
                        self.summary.activities += await self.crawl_activities(user, movie)

                    progress.update(1)
                    page += 1
        finally:
            progress.close()

    async def crawl_movie(self, url: str) -> Movie:
        """
        Scrape a movie page and persist the movie with its credits, tags and
        releases. Movies already in the store are returned without a visit.
        """
        existing = self.store.movies.get(url=url)
        if existing is not None:
            logger.warning(f"Movie already in db, skipping url={url}")
            return existing

        async with self._open("movie") as tab:
            await self.execute(
                tab, url,
                self._settle(),
                self._backdrop_ready(tab),
                self._settle(0.5),
            )
            tree = await tab.document()

            movie = extract_movie(url, tree)
            casts = extract_casts(tree)
            crews = extract_crews(tree)
            genres, themes = extract_genres_and_themes(tree)
            studios = extract_studios(tree)

            store = self.store
            with store.db.transaction():
                movie, outcome = store.movies.upsert(movie)

                for crew in casts + crews:
                    stored, _ = store.crews.upsert(crew)
                    store.crews_and_movies.upsert(CrewAndMovie(crew_id=stored.id, movie_id=movie.id, role=crew.role))
                for genre in genres:
                    stored, _ = store.genres.upsert(genre)
                    store.genres_and_movies.upsert(GenreAndMovie(genre_id=stored.id, movie_id=movie.id))
                for theme in themes:
                    stored, _ = store.themes.upsert(theme)
                    store.themes_and_movies.upsert(ThemeAndMovie(theme_id=stored.id, movie_id=movie.id))
                for studio in studios:
                    stored, _ = store.studios.upsert(studio)
                    store.studios_and_movies.upsert(StudioAndMovie(studio_id=stored.id, movie_id=movie.id))

                # These need the movie id; an extraction error here rolls the movie back too
                for country in extract_countries(movie.id, tree):
                    store.countries_and_movies.upsert(country)
                for language in extract_languages(movie.id, tree):
                    store.languages_and_movies.upsert(language)
                for release in extract_releases(movie.id, tree):
                    store.releases.upsert(release)

        if outcome is UpsertOutcome.INSERTED:
            self.summary.movies += 1
        logger.info(f"Movie stored name={movie.name} id={movie.id} crews={len(casts) + len(crews)}")
        return movie

    async def crawl_activities(self, user: User, movie: Movie) -> int:
        """Store one row per activity date of the member on this movie; returns the row count."""
        url = activity_url(user, movie)

        async with self._open("activity") as tab:
            await self.execute(
                tab, url,
                self._settle(),
                self._visible(tab, ACTIVITY_TABLE),
                self._settle(0.5),
            )
            entries = merge_activities(extract_activities(await tab.document()))

        for entry in entries:
            review = await self.crawl_review(entry.review_url) if entry.review_url else None
            self.store.activities.upsert(WatchActivity(
                user_id=user.id,
                movie_id=movie.id,
                date=entry.date,
                is_watched=entry.is_watched,
                is_loved=entry.is_loved,
                rating=entry.rating,
                review=review,
            ))

        logger.debug(f"Activities stored user={user.name} movie={movie.name} count={len(entries)}")
        return len(entries)

    async def crawl_review(self, url: str) -> str | None:
        """Review text, revealing it first when it sits behind a spoiler warning."""
        async with self._open("review") as tab:
            await self.execute(
                tab, url,
                self._settle(),
                self._visible(tab, REVIEW_POSTER),
                self._settle(0.5),
            )
            if await tab.exists(SPOILER_BUTTON):
                logger.debug(f"Revealing spoiler url={url}")
                await tab.click(SPOILER_BUTTON)
                await self._settle(0.5)()
            text = extract_review_text(await tab.document())

        if not text:
            logger.warning(f"Review page has no text url={url}")
        return text or None
