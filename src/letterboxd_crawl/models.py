"""
Records produced by the extractors and persisted by the store.

Field names match column names. `id` is the surrogate key assigned by the
store on first insert; join rows have none.
"""
from dataclasses import dataclass


@dataclass
class User:
    url: str
    name: str
    id: int | None = None


@dataclass
class Movie:
    url: str
    name: str
    duration: int | None = None
    poster_url: str | None = None
    backdrop_url: str | None = None
    description: str | None = None
    trailer_url: str | None = None
    id: int | None = None


@dataclass
class Crew:
    url: str
    name: str
    role: str
    id: int | None = None


@dataclass
class Genre:
    url: str
    name: str
    id: int | None = None


@dataclass
class Theme:
    url: str
    name: str
    id: int | None = None


@dataclass
class Studio:
    url: str
    name: str
    id: int | None = None


@dataclass
class CrewAndMovie:
    crew_id: int
    movie_id: int
    role: str


@dataclass
class GenreAndMovie:
    genre_id: int
    movie_id: int


@dataclass
class ThemeAndMovie:
    theme_id: int
    movie_id: int


@dataclass
class StudioAndMovie:
    studio_id: int
    movie_id: int


@dataclass
class CountryAndMovie:
    movie_id: int
    country: str


@dataclass
class LanguageAndMovie:
    movie_id: int
    language: str
    is_primary: bool


@dataclass
class Release:
    movie_id: int
    date: str
    country: str
    release_type: str
    age_rating: str | None = None


@dataclass
class WatchActivity:
    """One row per (user, movie, date); same-day actions are merged."""
    user_id: int
    movie_id: int
    date: str
    is_watched: bool = False
    is_loved: bool = False
    rating: float | None = None
    review: str | None = None


@dataclass
class ActivityEntry:
    """A single activity line before the review page is fetched and same-day entries merged."""
    date: str
    is_watched: bool = False
    is_loved: bool = False
    rating: float | None = None
    review_url: str | None = None
