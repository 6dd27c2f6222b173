"""
Configuration for the Letterboxd crawler.

Site constants live at module level. Everything an operator can tune is read
once into an immutable CrawlerConfig and handed to each component; nothing
else in the package touches the process environment.
"""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "LETTERBOXD_"

# Site
BASE_URL = "https://letterboxd.com"
MEMBERS_PAGE_PATH = "/members/popular/page/{page}/"
USER_FILMS_PAGE_PATH = "films/by/date/page/{page}/"

# Navigation retry backoff (seconds): base + step * attempt
RETRY_BASE_COOLDOWN = 30.0
RETRY_COOLDOWN_STEP = 10.0
TRANSIENT_STATUSES = frozenset({500, 502, 503, 504})

# Playwright load state the transition waits for; triggers certify the rest
NAVIGATION_WAIT_UNTIL = "domcontentloaded"
WAIT_VISIBLE_TIMEOUT_MS = 30_000

# Log file rotation when running silently
LOG_FILE_MAX_BYTES = 500 * 1024 * 1024
LOG_FILE_BACKUPS = 3
DEFAULT_LOG_FILE = "/tmp/letterboxd_crawl.log"


def _get_float_env(environ: Mapping[str, str], key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        environ: Mapping to read from (usually os.environ)
        key: Environment variable name without prefix
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    name = ENV_PREFIX + key
    try:
        val = float(environ.get(name, default))
        if val < min_val:
            logger.warning(f"{name}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {name}='{environ.get(name)}', using default {default}")
        return default


def _get_int_env(environ: Mapping[str, str], key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        environ: Mapping to read from (usually os.environ)
        key: Environment variable name without prefix
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    name = ENV_PREFIX + key
    try:
        val = int(environ.get(name, default))
        if val < min_val:
            logger.warning(f"{name}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {name}='{environ.get(name)}', using default {default}")
        return default


def _get_bool_env(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(ENV_PREFIX + key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_str_env(environ: Mapping[str, str], key: str) -> str | None:
    raw = environ.get(ENV_PREFIX + key, "").strip()
    return raw or None


@dataclass(frozen=True)
class CrawlerConfig:
    """Process configuration, constructed once at startup."""

    db_path: Path = Path("data/letterboxd_crawl.db")
    proxy_url: str | None = None
    browser_addr: str | None = None
    headless: bool = True
    user_data_dir: Path | None = None

    max_pages: int = 10
    retries: int = 3
    rate_limit_interval: int = 50
    rate_limit_cooldown: float = 300.0
    navigation_timeout: float | None = 150.0

    # Jittered settle delay after navigation: base +/- jitter seconds
    settle_delay: float = 2.0
    settle_jitter: float = 0.3

    screenshot_dir: Path | None = None
    fail_fast: bool = False

    debug: bool = False
    silent: bool = False
    log_file: Path = Path(DEFAULT_LOG_FILE)

    def __post_init__(self):
        if self.settle_jitter > self.settle_delay:
            raise ValueError(
                f"settle_jitter ({self.settle_jitter}) can't exceed settle_delay ({self.settle_delay})"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CrawlerConfig":
        """Build a config from LETTERBOXD_* variables, validating each value."""
        env = os.environ if environ is None else environ

        user_data_dir = _get_str_env(env, "USER_DATA_DIR")
        screenshot_dir = _get_str_env(env, "SCREENSHOT_DIR")
        nav_timeout = _get_float_env(env, "NAV_TIMEOUT", 150.0, min_val=0.0)
        settle_delay = _get_float_env(env, "SETTLE_DELAY", 2.0, min_val=0.0)
        settle_jitter = _get_float_env(env, "SETTLE_JITTER", 0.3, min_val=0.0)
        if settle_jitter > settle_delay:
            logger.warning(
                f"{ENV_PREFIX}SETTLE_JITTER={settle_jitter} exceeds settle delay {settle_delay}, clamping"
            )
            settle_jitter = settle_delay

        return cls(
            db_path=Path(env.get(ENV_PREFIX + "DB", "data/letterboxd_crawl.db")),
            proxy_url=_get_str_env(env, "PROXY_URL"),
            browser_addr=_get_str_env(env, "BROWSER_ADDR"),
            headless=_get_bool_env(env, "HEADLESS", True),
            user_data_dir=Path(user_data_dir) if user_data_dir else None,
            max_pages=_get_int_env(env, "MAX_PAGE", 10, min_val=1),
            retries=_get_int_env(env, "RETRIES", 3, min_val=1),
            rate_limit_interval=_get_int_env(env, "INTERVAL", 50, min_val=1),
            rate_limit_cooldown=_get_float_env(env, "COOLDOWN", 300.0, min_val=0.0),
            # Deadline per attempt (goto plus triggers); 0 disables it
            navigation_timeout=nav_timeout or None,
            settle_delay=settle_delay,
            settle_jitter=settle_jitter,
            screenshot_dir=Path(screenshot_dir) if screenshot_dir else None,
            fail_fast=_get_bool_env(env, "FAIL_FAST", False),
            debug=_get_bool_env(env, "DEBUG", False),
            silent=_get_bool_env(env, "SILENT", False),
            log_file=Path(env.get(ENV_PREFIX + "LOG_FILE", DEFAULT_LOG_FILE)),
        )
