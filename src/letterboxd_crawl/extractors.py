"""
Pure functions from scraped Letterboxd markup to records.

Missing-field policy, by field category:
- page-level required fields (user name, movie title, release date and
  country) and the href of any list member raise ExtractionError;
- an empty label on a list member (crew, genre, theme, studio, country,
  language) logs a warning and skips that member;
- optional fields (duration, poster, backdrop, description, trailer, age
  rating, rating glyphs, activity date) log a warning and stay unset.

Section headers are matched against closed sets of labels; anything else is
skipped. Output keeps DOM order.
"""
import logging
import re
from datetime import date
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

from .config import BASE_URL
from .errors import ExtractionError
from .models import (
    ActivityEntry,
    CountryAndMovie,
    Crew,
    Genre,
    LanguageAndMovie,
    Movie,
    Release,
    Studio,
    Theme,
    User,
)

logger = logging.getLogger(__name__)

GENRE_LABELS = {"Genre", "Genres"}
THEME_LABELS = {"Theme", "Themes"}
STUDIO_LABELS = {"Studio", "Studios"}
COUNTRY_LABELS = {"Country", "Countries"}
PRIMARY_LANGUAGE_LABELS = {"Language", "Languages", "Primary Language", "Primary Languages"}
SPOKEN_LANGUAGE_LABELS = {"Spoken Language", "Spoken Languages"}

FULL_STAR = "\u2605"  # ★
HALF_STAR = "\u00bd"  # ½

_ACTION_DELIMITERS = re.compile(r",|\band\b")
_LEADING_NUMBER = re.compile(r"^\s*(\d+)")
_BACKDROP_URL = re.compile(r"https://a\.ltrbxd\.com\S+?\.jpg")
_ISO_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def absolute_url(href: str) -> str:
    """Resolve a site-relative href against the site root."""
    if href.startswith("//"):
        return "https:" + href
    return urljoin(BASE_URL, href)


def normalize_label(text: str) -> str:
    return " ".join(text.split())


def _next_element(node: Node) -> Node | None:
    """Next sibling that is an element (skips text and comment nodes)."""
    sibling = node.next
    while sibling is not None and sibling.tag.startswith(("-", "_", "#")):
        sibling = sibling.next
    return sibling


def _header_label(header: Node) -> str:
    # Headers carry the full label in their first span, abbreviations after it
    span = header.css_first("span")
    return normalize_label((span or header).text())


def _labelled_sections(tree: HTMLParser | Node, header_selector: str):
    """Yield (label, body) for each header and the element that follows it."""
    for header in tree.css(header_selector):
        body = _next_element(header)
        if body is None:
            continue
        yield _header_label(header), body


def _named_links(section: Node, kind: str, skip_prefix: str | None = None) -> list[tuple[str, str]]:
    """(name, absolute url) for each anchor in a section; empty names are skipped."""
    links = []
    for anchor in section.css("p a"):
        href = anchor.attributes.get("href")
        name = anchor.text(strip=True)
        if not href:
            raise ExtractionError(f"{kind} url not found for '{name}'")
        if skip_prefix and href.startswith(skip_prefix):
            continue
        if not name:
            logger.warning(f"Empty {kind} name (href={href}), skipping")
            continue
        links.append((name, absolute_url(href)))
    return links


def _labelled_names(section: Node, kind: str) -> list[str]:
    names = []
    for anchor in section.css("p a"):
        name = anchor.text(strip=True)
        if not name:
            logger.warning(f"Empty {kind} name, skipping")
            continue
        names.append(name)
    return names


# ---------------------------------------------------------------------------
# Listing pages
# ---------------------------------------------------------------------------

def extract_users(tree: HTMLParser) -> list[User]:
    """Users from a popular-members page."""
    users = []
    for row in tree.css("#content table tbody tr"):
        anchor = row.css_first("h3 a")
        name = anchor.text(strip=True) if anchor else ""
        if not name:
            raise ExtractionError("user name can't be empty")

        href = anchor.attributes.get("href")
        if not href:
            raise ExtractionError(f"user url not found for user: {name}")

        user = User(url=absolute_url(href), name=name)
        logger.debug(f"User extracted name={user.name} url={user.url}")
        users.append(user)
    return users


def extract_movie_urls(tree: HTMLParser) -> list[str]:
    """Movie page URLs from one page of a user's films grid."""
    urls = []
    for item in tree.css("div.poster-grid ul li"):
        anchor = item.css_first("a[href]")
        href = anchor.attributes.get("href") if anchor else None
        if not href:
            react_comp = item.css_first("[data-target-link], [data-item-link]")
            if react_comp:
                href = react_comp.attributes.get("data-target-link") or react_comp.attributes.get("data-item-link")
        if not href:
            raise ExtractionError("film url not found")

        url = absolute_url(href)
        logger.debug(f"Movie url extracted url={url}")
        urls.append(url)
    return urls


def extract_max_page(tree: HTMLParser) -> int:
    """Last page number from the pagination bar; a page without one is page 1 of 1."""
    pages = tree.css("div.paginate-pages li")
    if not pages:
        return 1
    text = pages[-1].text(strip=True).replace(",", "")
    try:
        return int(text)
    except ValueError as exc:
        raise ExtractionError(f"unexpected last page label '{text}'") from exc


# ---------------------------------------------------------------------------
# Movie page
# ---------------------------------------------------------------------------

def _first_text(tree: HTMLParser, *selectors: str) -> str:
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None:
            text = node.text(strip=True)
            if text:
                return text
    return ""


def extract_movie(url: str, tree: HTMLParser) -> Movie:
    """Movie record from a film page; only the title is required."""
    name = _first_text(tree, "section.production-masthead h1 span", "h1.headline-1")
    if not name:
        raise ExtractionError(f"movie name can't be empty ({url})")
    movie = Movie(url=url, name=name)
    logger.debug(f"Movie name extracted url={url} name={name}")

    footer = tree.css_first("p.text-footer") or tree.css_first("section.col-main > p")
    footer_text = footer.text() if footer else ""
    match = _LEADING_NUMBER.match(footer_text.replace("\xa0", " "))
    if match:
        movie.duration = int(match.group(1))
    else:
        logger.warning(f"Unable to locate movie duration url={url} footer='{footer_text.strip()[:60]}'")

    poster = tree.css_first("#js-poster-col img")
    poster_src = poster.attributes.get("src") if poster else None
    if poster_src:
        movie.poster_url = absolute_url(poster_src)
    else:
        logger.warning(f"Movie does not have poster url={url}")

    backdrop_url = None
    backdrop = tree.css_first("#backdrop div.backdropimage")
    if backdrop:
        match = _BACKDROP_URL.search(backdrop.attributes.get("style") or "")
        if match:
            backdrop_url = match.group(0)
    if backdrop_url is None:
        container = tree.css_first("#backdrop")
        if container:
            backdrop_url = container.attributes.get("data-backdrop") or None
    if backdrop_url:
        movie.backdrop_url = backdrop_url
    else:
        logger.warning(f"Movie does not have backdrop url={url}")

    description = _first_text(tree, "section.production-synopsis div.truncate p", "div.review.body-text div.truncate p")
    if not description:
        meta = tree.css_first("meta[property='og:description']")
        description = (meta.attributes.get("content") or "").strip() if meta else ""
    if description:
        movie.description = description
    else:
        logger.warning(f"Movie does not have description url={url}")

    trailer = tree.css_first("p.trailer-link a[href], a.js-video-zoom[href]")
    if trailer:
        movie.trailer_url = absolute_url(trailer.attributes["href"])
    else:
        logger.warning(f"Movie does not have trailer url={url}")

    return movie


def extract_casts(tree: HTMLParser) -> list[Crew]:
    """Actors from the cast tab, including the ones behind the overflow toggle."""
    casts = []
    for anchor in tree.css("#tab-cast p a"):
        if anchor.attributes.get("id") == "has-cast-overflow":
            continue
        href = anchor.attributes.get("href")
        if not href:
            raise ExtractionError("cast url not found for this actor/actress")
        name = anchor.text(strip=True)
        if not name:
            logger.warning(f"Empty cast name (href={href}), skipping")
            continue
        casts.append(Crew(url=absolute_url(href), name=name, role="Actor"))
    return casts


def extract_crews(tree: HTMLParser) -> list[Crew]:
    """Crew members with the role taken from their section header."""
    crews = []
    for role, section in _labelled_sections(tree, "#tab-crew > h3"):
        logger.debug(f"Crew role role={role}")
        for name, url in _named_links(section, "crew"):
            crews.append(Crew(url=url, name=name, role=role))
    return crews


def extract_genres_and_themes(tree: HTMLParser) -> tuple[list[Genre], list[Theme]]:
    genres: list[Genre] = []
    themes: list[Theme] = []

    for label, section in _labelled_sections(tree, "#tab-genres > h3"):
        if label in GENRE_LABELS:
            genres.extend(Genre(url=url, name=name) for name, url in _named_links(section, "genre"))
        elif label in THEME_LABELS:
            # The "Show All..." link points back at the film itself
            themes.extend(
                Theme(url=url, name=name)
                for name, url in _named_links(section, "theme", skip_prefix="/film/")
            )
        else:
            logger.debug(f"Skipping genre tab section label={label}")

    return genres, themes


def extract_studios(tree: HTMLParser) -> list[Studio]:
    studios = []
    for label, section in _labelled_sections(tree, "#tab-details > h3"):
        if label in STUDIO_LABELS:
            studios.extend(Studio(url=url, name=name) for name, url in _named_links(section, "studio"))
    return studios


def extract_countries(movie_id: int, tree: HTMLParser) -> list[CountryAndMovie]:
    countries = []
    for label, section in _labelled_sections(tree, "#tab-details > h3"):
        if label in COUNTRY_LABELS:
            countries.extend(
                CountryAndMovie(movie_id=movie_id, country=name)
                for name in _labelled_names(section, "country")
            )
    return countries


def extract_languages(movie_id: int, tree: HTMLParser) -> list[LanguageAndMovie]:
    """
    Languages from the details tab. "Language"/"Primary Language" headers
    mark primary languages, "Spoken Languages" the rest.
    """
    languages = []
    for label, section in _labelled_sections(tree, "#tab-details > h3"):
        if label in PRIMARY_LANGUAGE_LABELS:
            is_primary = True
        elif label in SPOKEN_LANGUAGE_LABELS:
            is_primary = False
        else:
            continue
        languages.extend(
            LanguageAndMovie(movie_id=movie_id, language=name, is_primary=is_primary)
            for name in _labelled_names(section, "language")
        )
    return languages


def extract_releases(movie_id: int, tree: HTMLParser) -> list[Release]:
    """
    One Release per (release type, date, country). Each release-type header is
    followed by a list of date groups, each listing the countries released on
    that date with an optional age rating.
    """
    releases = []
    for header in tree.css("#tab-releases section > h3"):
        release_type = normalize_label(header.text())
        groups = _next_element(header)
        if groups is None:
            continue

        for group in groups.iter():
            release_date = _first_text(group, "h5")
            if not release_date:
                raise ExtractionError(f"release date can't be empty ({release_type})")

            for item in group.css("li"):
                country_node = item.css_first("span.name")
                country = country_node.text(strip=True) if country_node else ""
                if not country:
                    raise ExtractionError(f"release country can't be empty ({release_type} {release_date})")

                release = Release(
                    movie_id=movie_id, date=release_date, country=country, release_type=release_type,
                )
                rating_node = item.css_first("span.label")
                age_rating = rating_node.text(strip=True) if rating_node else ""
                if age_rating:
                    release.age_rating = age_rating
                else:
                    logger.warning(f"No age rating for release {release_type} {release_date} {country}")
                releases.append(release)
    return releases


# ---------------------------------------------------------------------------
# Activity and review pages
# ---------------------------------------------------------------------------

def split_actions(text: str) -> list[str]:
    """
    Split an activity phrase on commas and the word "and".

    >>> split_actions(" watched, liked and rated ")
    ['watched', 'liked', 'rated']
    """
    return [token.strip() for token in _ACTION_DELIMITERS.split(text) if token.strip()]


def parse_star_rating(text: str) -> float | None:
    """Count star glyphs: each ★ is 1.0, each ½ is 0.5. No glyphs means no rating."""
    full = text.count(FULL_STAR)
    half = text.count(HALF_STAR)
    if not full and not half:
        return None
    return full + half / 2


def _activity_date(raw: str | None) -> str | None:
    match = _ISO_DATE.search(raw or "")
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1)).isoformat()
    except ValueError:
        return None


def extract_activities(tree: HTMLParser) -> list[ActivityEntry]:
    """One entry per activity row, most recent first as the page lists them."""
    entries = []
    for node in tree.css("#activity-table-body section[data-activity-id]"):
        time_node = node.css_first("time")
        activity_date = _activity_date(time_node.attributes.get("datetime") if time_node else None)
        if activity_date is None:
            logger.warning(f"Activity date not found, skipping activity={node.attributes.get('data-activity-id')}")
            continue

        entry = ActivityEntry(date=activity_date)
        context = node.css_first("span.context")
        for token in split_actions(context.text() if context else ""):
            # The phrase may be prefixed with the member's name
            action = token.split()[-1].lower()
            if action == "liked":
                entry.is_loved = True
            elif action in ("watched", "rewatched"):
                entry.is_watched = True
            elif action == "rated":
                rating_node = node.css_first("span.rating")
                entry.rating = parse_star_rating(rating_node.text() if rating_node else "")
                if entry.rating is None:
                    logger.warning(f"Rated activity without rating glyphs date={activity_date}")
            elif action == "reviewed":
                target = node.css_first("a.target")
                href = target.attributes.get("href") if target else None
                if not href:
                    logger.warning(f"Review url is empty, skipping date={activity_date}")
                    continue
                entry.review_url = absolute_url(href)
            else:
                logger.debug(f"Ignoring activity action '{token}'")

        entries.append(entry)
    return entries


def merge_activities(entries: list[ActivityEntry]) -> list[ActivityEntry]:
    """
    Collapse entries that share a date: flags are OR-ed, and the first rating
    and review link seen (the most recent) are kept.
    """
    merged: dict[str, ActivityEntry] = {}
    for entry in entries:
        current = merged.get(entry.date)
        if current is None:
            merged[entry.date] = ActivityEntry(
                date=entry.date,
                is_watched=entry.is_watched,
                is_loved=entry.is_loved,
                rating=entry.rating,
                review_url=entry.review_url,
            )
            continue
        current.is_watched = current.is_watched or entry.is_watched
        current.is_loved = current.is_loved or entry.is_loved
        if current.rating is None:
            current.rating = entry.rating
        if current.review_url is None:
            current.review_url = entry.review_url
        elif entry.review_url and entry.review_url != current.review_url:
            logger.debug(f"Second review on {entry.date} dropped url={entry.review_url}")
    return list(merged.values())


def _inside(node: Node, css_class: str) -> bool:
    parent = node.parent
    while parent is not None:
        if css_class in (parent.attributes.get("class") or "").split():
            return True
        parent = parent.parent
    return False


def extract_review_text(tree: HTMLParser) -> str:
    """Review body paragraphs joined by blank lines, without the spoiler warning."""
    paragraphs = []
    for p in tree.css("div.review.body-text p"):
        if _inside(p, "js-spoiler-container"):
            continue
        text = p.text().strip()
        if text:
            paragraphs.append(text)
    return "\n\n".join(paragraphs)
