import enum
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

from .models import (
    CountryAndMovie,
    Crew,
    CrewAndMovie,
    Genre,
    GenreAndMovie,
    LanguageAndMovie,
    Movie,
    Release,
    Studio,
    StudioAndMovie,
    Theme,
    ThemeAndMovie,
    User,
    WatchActivity,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS movies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        duration INTEGER,
        poster_url TEXT,
        backdrop_url TEXT,
        description TEXT,
        trailer_url TEXT
    );

    CREATE TABLE IF NOT EXISTS crews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL      -- role of the first observation
    );

    CREATE TABLE IF NOT EXISTS genres (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS themes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS studios (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS crews_and_movies (
        crew_id INTEGER NOT NULL REFERENCES crews(id),
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        role TEXT NOT NULL,
        PRIMARY KEY (crew_id, movie_id, role)
    );

    CREATE TABLE IF NOT EXISTS genres_and_movies (
        genre_id INTEGER NOT NULL REFERENCES genres(id),
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        PRIMARY KEY (genre_id, movie_id)
    );

    CREATE TABLE IF NOT EXISTS themes_and_movies (
        theme_id INTEGER NOT NULL REFERENCES themes(id),
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        PRIMARY KEY (theme_id, movie_id)
    );

    CREATE TABLE IF NOT EXISTS studios_and_movies (
        studio_id INTEGER NOT NULL REFERENCES studios(id),
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        PRIMARY KEY (studio_id, movie_id)
    );

    CREATE TABLE IF NOT EXISTS countries_and_movies (
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        country TEXT NOT NULL,
        PRIMARY KEY (movie_id, country)
    );

    CREATE TABLE IF NOT EXISTS languages_and_movies (
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        language TEXT NOT NULL,
        is_primary INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (movie_id, language, is_primary)
    );

    CREATE TABLE IF NOT EXISTS releases (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        date TEXT NOT NULL,
        country TEXT NOT NULL,
        release_type TEXT NOT NULL,
        age_rating TEXT
    );

    -- age_rating is nullable, so the natural key needs an expression index
    CREATE UNIQUE INDEX IF NOT EXISTS idx_releases_natural
        ON releases(movie_id, date, release_type, country, COALESCE(age_rating, ''));

    CREATE TABLE IF NOT EXISTS users_and_movies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        movie_id INTEGER NOT NULL REFERENCES movies(id),
        date TEXT NOT NULL,
        is_watched INTEGER NOT NULL DEFAULT 0,
        is_loved INTEGER NOT NULL DEFAULT 0,
        rating REAL,
        review TEXT,
        UNIQUE (user_id, movie_id, date)
    );

    CREATE INDEX IF NOT EXISTS idx_cm_movie ON crews_and_movies(movie_id);
    CREATE INDEX IF NOT EXISTS idx_gm_movie ON genres_and_movies(movie_id);
    CREATE INDEX IF NOT EXISTS idx_tm_movie ON themes_and_movies(movie_id);
    CREATE INDEX IF NOT EXISTS idx_sm_movie ON studios_and_movies(movie_id);
    CREATE INDEX IF NOT EXISTS idx_um_movie ON users_and_movies(movie_id);

    -- Crawl run tracking for visibility
    CREATE TABLE IF NOT EXISTS crawl_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT DEFAULT 'running',
        users_crawled INTEGER DEFAULT 0,
        movies_added INTEGER DEFAULT 0,
        failures INTEGER DEFAULT 0,
        last_activity TEXT
    );
"""

ENTITY_TABLES = (
    "users", "movies", "crews", "genres", "themes", "studios",
    "crews_and_movies", "genres_and_movies", "themes_and_movies", "studios_and_movies",
    "countries_and_movies", "languages_and_movies", "releases", "users_and_movies",
)


class Database:
    """
    One SQLite connection shared by the whole crawl.

    Writes are serialized through a single writer lock held by the outermost
    transaction, so a check-then-insert inside `transaction()` is atomic for
    every caller of this object.
    """

    def __init__(self, path: Path | str):
        self.path = path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(exist_ok=True, parents=True)

        # Transactions are issued explicitly by transaction()
        self._conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")

        self._write_lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self, read_only: bool = False):
        """
        Yield the connection inside a transaction.

        Handles nested calls correctly:
        - Only the outermost context begins and commits/rolls back
        - Inner contexts join the outer transaction
        """
        with self._write_lock:
            is_outermost = self._depth == 0
            if is_outermost and not read_only:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1

            try:
                yield self._conn
                if is_outermost and not read_only:
                    self._conn.execute("COMMIT")
            except BaseException:
                if is_outermost and not read_only:
                    self._conn.execute("ROLLBACK")
                raise
            finally:
                self._depth -= 1

    def init_schema(self) -> None:
        with self._write_lock:
            self._conn.executescript(SCHEMA)
        logger.debug(f"Schema ready at {self.path}")

    def table_counts(self) -> dict[str, int]:
        with self.transaction(read_only=True) as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ENTITY_TABLES
            }

    def create_crawl_session(self) -> int:
        """Create a new crawl session record and return its ID."""
        now = datetime.now().isoformat()
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO crawl_sessions (started_at, status, last_activity)
                VALUES (?, 'running', ?)
            """, (now, now))
            return cursor.lastrowid

    def update_session_progress(self, session_id: int, users_crawled: int, movies_added: int, failures: int) -> None:
        """Update session counters and heartbeat."""
        with self.transaction() as conn:
            conn.execute("""
                UPDATE crawl_sessions
                SET users_crawled = ?, movies_added = ?, failures = ?, last_activity = ?
                WHERE id = ?
            """, (users_crawled, movies_added, failures, datetime.now().isoformat(), session_id))

    def complete_crawl_session(self, session_id: int, status: str = "completed") -> None:
        """Mark a crawl session as completed/interrupted/failed."""
        now = datetime.now().isoformat()
        with self.transaction() as conn:
            conn.execute("""
                UPDATE crawl_sessions
                SET status = ?, completed_at = ?, last_activity = ?
                WHERE id = ?
            """, (status, now, now, session_id))

    def get_session_history(self, limit: int = 10) -> list[dict]:
        with self.transaction(read_only=True) as conn:
            rows = conn.execute("""
                SELECT id, started_at, completed_at, status, users_crawled, movies_added, failures, last_activity
                FROM crawl_sessions
                ORDER BY id DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [dict(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
        logger.debug("Database connection closed")


class UpsertMode(enum.Enum):
    # Existing rows are returned untouched; the crawler's policy
    FIRST_WRITE_WINS = "first_write_wins"
    # Existing rows get their non-key columns replaced
    OVERWRITE = "overwrite"


class UpsertOutcome(enum.Enum):
    INSERTED = "inserted"
    EXISTING = "existing"
    UPDATED = "updated"


class Repository(Generic[T]):
    """
    Natural-key upsert for one table.

    Args:
        db: Database the table lives in
        table: Table name
        columns: Columns written from the record (attribute names match)
        key: Extracts the natural key of a record as {column: value}
        load: Builds a record from a row
        has_id: Whether the table assigns a surrogate `id`
    """

    def __init__(
        self,
        db: Database,
        table: str,
        columns: tuple[str, ...],
        key: Callable[[T], dict[str, Any]],
        load: Callable[[sqlite3.Row], T],
        has_id: bool = True,
    ):
        self.db = db
        self.table = table
        self.columns = columns
        self.key = key
        self.load = load
        self.has_id = has_id

    def _select(self, conn: sqlite3.Connection, key: dict[str, Any]) -> T | None:
        # IS matches NULL key parts too (age_rating)
        where = " AND ".join(f"{col} IS ?" for col in key)
        row = conn.execute(f"SELECT * FROM {self.table} WHERE {where}", tuple(key.values())).fetchone()
        return self.load(row) if row is not None else None

    def get(self, **key) -> T | None:
        with self.db.transaction(read_only=True) as conn:
            return self._select(conn, key)

    def upsert(self, record: T, mode: UpsertMode = UpsertMode.FIRST_WRITE_WINS) -> tuple[T, UpsertOutcome]:
        """
        Insert the record unless its natural key is already stored.

        Returns the stored record (with its surrogate id) and what happened.
        The passed record gets the resolved id as well.
        """
        key = self.key(record)

        with self.db.transaction() as conn:
            stored = self._select(conn, key)

            if stored is None:
                values = tuple(getattr(record, col) for col in self.columns)
                placeholders = ", ".join("?" for _ in self.columns)
                try:
                    cursor = conn.execute(
                        f"INSERT INTO {self.table} ({', '.join(self.columns)}) VALUES ({placeholders})",
                        values,
                    )
                except sqlite3.IntegrityError:
                    # Lost a race on the unique key; anything else is a real error
                    stored = self._select(conn, key)
                    if stored is None:
                        raise
                else:
                    if self.has_id:
                        record.id = cursor.lastrowid
                    logger.info(f"Inserted into {self.table} key={key}")
                    return record, UpsertOutcome.INSERTED

            if mode is UpsertMode.OVERWRITE:
                updates = [col for col in self.columns if col not in key]
                if updates:
                    assignments = ", ".join(f"{col} = ?" for col in updates)
                    where = " AND ".join(f"{col} IS ?" for col in key)
                    conn.execute(
                        f"UPDATE {self.table} SET {assignments} WHERE {where}",
                        tuple(getattr(record, col) for col in updates) + tuple(key.values()),
                    )
                stored = self._select(conn, key)
                outcome = UpsertOutcome.UPDATED
                logger.info(f"Updated {self.table} key={key}")
            else:
                outcome = UpsertOutcome.EXISTING
                logger.info(f"Already present in {self.table} key={key}")

        if self.has_id:
            record.id = stored.id
        return stored, outcome


@dataclass
class Store:
    """Repositories for every table the crawler writes."""
    db: Database

    def __post_init__(self):
        db = self.db
        self.users = Repository(
            db, "users", ("url", "name"),
            key=lambda r: {"url": r.url},
            load=lambda row: User(url=row["url"], name=row["name"], id=row["id"]),
        )
        self.movies = Repository(
            db, "movies", ("url", "name", "duration", "poster_url", "backdrop_url", "description", "trailer_url"),
            key=lambda r: {"url": r.url},
            load=lambda row: Movie(
                url=row["url"], name=row["name"], duration=row["duration"],
                poster_url=row["poster_url"], backdrop_url=row["backdrop_url"],
                description=row["description"], trailer_url=row["trailer_url"], id=row["id"],
            ),
        )
        self.crews = Repository(
            db, "crews", ("url", "name", "role"),
            key=lambda r: {"url": r.url},
            load=lambda row: Crew(url=row["url"], name=row["name"], role=row["role"], id=row["id"]),
        )
        self.genres = Repository(
            db, "genres", ("url", "name"),
            key=lambda r: {"url": r.url},
            load=lambda row: Genre(url=row["url"], name=row["name"], id=row["id"]),
        )
        self.themes = Repository(
            db, "themes", ("url", "name"),
            key=lambda r: {"url": r.url},
            load=lambda row: Theme(url=row["url"], name=row["name"], id=row["id"]),
        )
        self.studios = Repository(
            db, "studios", ("url", "name"),
            key=lambda r: {"url": r.url},
            load=lambda row: Studio(url=row["url"], name=row["name"], id=row["id"]),
        )
        self.crews_and_movies = Repository(
            db, "crews_and_movies", ("crew_id", "movie_id", "role"),
            key=lambda r: {"crew_id": r.crew_id, "movie_id": r.movie_id, "role": r.role},
            load=lambda row: CrewAndMovie(crew_id=row["crew_id"], movie_id=row["movie_id"], role=row["role"]),
            has_id=False,
        )
        self.genres_and_movies = Repository(
            db, "genres_and_movies", ("genre_id", "movie_id"),
            key=lambda r: {"genre_id": r.genre_id, "movie_id": r.movie_id},
            load=lambda row: GenreAndMovie(genre_id=row["genre_id"], movie_id=row["movie_id"]),
            has_id=False,
        )
        self.themes_and_movies = Repository(
            db, "themes_and_movies", ("theme_id", "movie_id"),
            key=lambda r: {"theme_id": r.theme_id, "movie_id": r.movie_id},
            load=lambda row: ThemeAndMovie(theme_id=row["theme_id"], movie_id=row["movie_id"]),
            has_id=False,
        )
        self.studios_and_movies = Repository(
            db, "studios_and_movies", ("studio_id", "movie_id"),
            key=lambda r: {"studio_id": r.studio_id, "movie_id": r.movie_id},
            load=lambda row: StudioAndMovie(studio_id=row["studio_id"], movie_id=row["movie_id"]),
            has_id=False,
        )
        self.countries_and_movies = Repository(
            db, "countries_and_movies", ("movie_id", "country"),
            key=lambda r: {"movie_id": r.movie_id, "country": r.country},
            load=lambda row: CountryAndMovie(movie_id=row["movie_id"], country=row["country"]),
            has_id=False,
        )
        self.languages_and_movies = Repository(
            db, "languages_and_movies", ("movie_id", "language", "is_primary"),
            key=lambda r: {"movie_id": r.movie_id, "language": r.language, "is_primary": int(r.is_primary)},
            load=lambda row: LanguageAndMovie(
                movie_id=row["movie_id"], language=row["language"], is_primary=bool(row["is_primary"]),
            ),
            has_id=False,
        )
        self.releases = Repository(
            db, "releases", ("movie_id", "date", "country", "release_type", "age_rating"),
            key=lambda r: {
                "movie_id": r.movie_id, "date": r.date, "release_type": r.release_type,
                "country": r.country, "age_rating": r.age_rating,
            },
            load=lambda row: Release(
                movie_id=row["movie_id"], date=row["date"], country=row["country"],
                release_type=row["release_type"], age_rating=row["age_rating"],
            ),
            has_id=False,
        )
        self.activities = Repository(
            db, "users_and_movies", ("user_id", "movie_id", "date", "is_watched", "is_loved", "rating", "review"),
            key=lambda r: {"user_id": r.user_id, "movie_id": r.movie_id, "date": r.date},
            load=lambda row: WatchActivity(
                user_id=row["user_id"], movie_id=row["movie_id"], date=row["date"],
                is_watched=bool(row["is_watched"]), is_loved=bool(row["is_loved"]),
                rating=row["rating"], review=row["review"],
            ),
            has_id=False,
        )
