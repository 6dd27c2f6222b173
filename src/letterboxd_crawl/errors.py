"""Exception hierarchy for the crawler."""


class CrawlError(Exception):
    """Base class for errors that abort the current unit of crawl work."""

    # Set by the crawler when the failing tab could be captured
    screenshot = None


class ExtractionError(CrawlError):
    """A required field was missing or empty in the scraped markup."""


class NavigationError(CrawlError):
    """A page could not be loaded."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class NavigationStatusError(NavigationError):
    """The main document came back with a non-retryable HTTP status."""

    def __init__(self, status: int, url: str | None = None):
        super().__init__(f"HTTP {status} on {url}", url)
        self.status = status


class RetriesExhaustedError(NavigationError):
    """Every attempt ended with a transient server error."""

    def __init__(self, attempts: int, last_status: int, url: str | None = None):
        super().__init__(
            f"gave up on {url} after {attempts} attempts (last status {last_status})", url
        )
        self.attempts = attempts
        self.last_status = last_status


class NavigationTimeoutError(NavigationError):
    """Navigation plus its triggers did not finish before the deadline."""
