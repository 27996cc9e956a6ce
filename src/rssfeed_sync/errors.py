"""Classified errors for feed synchronization and storage."""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable classification of every failure the engine reports."""

    INVALID_URL = "invalid_url"
    CONNECTION = "connection_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    BODY_TOO_LARGE = "body_too_large"
    MALFORMED_DOCUMENT = "malformed_document"
    DUPLICATE_FEED = "duplicate_feed"
    NOT_FOUND = "not_found"
    STORE_IO = "store_io_error"
    UNEXPECTED = "unexpected_error"


class FeedSyncError(Exception):
    """Base class for all classified errors."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidUrlError(FeedSyncError):
    """Raised when a feed URL cannot be normalized to http(s)."""

    kind = ErrorKind.INVALID_URL


class FetchError(FeedSyncError):
    """Raised when a feed body cannot be retrieved."""


class FeedConnectionError(FetchError):
    """DNS, TLS, or connection failure."""

    kind = ErrorKind.CONNECTION


class FetchTimeoutError(FetchError):
    """No complete response within the configured timeout."""

    kind = ErrorKind.TIMEOUT


class HttpStatusError(FetchError):
    """The server answered with a non-2xx status."""

    kind = ErrorKind.HTTP_STATUS

    def __init__(self, status_code: int, url: str):
        super().__init__(http_status_message(status_code, url))
        self.status_code = status_code


class BodyTooLargeError(FetchError):
    """The response body exceeded the byte cap."""

    kind = ErrorKind.BODY_TOO_LARGE

    def __init__(self, url: str, limit: int):
        super().__init__(
            f"response from {url} exceeds the {limit} byte limit. "
            "the url may not point to a feed"
        )
        self.limit = limit


class ParseError(FeedSyncError):
    """Raised when a body cannot be decoded as a feed."""


class MalformedDocumentError(ParseError):
    """The document is not recognizable as RSS or Atom."""

    kind = ErrorKind.MALFORMED_DOCUMENT


class StoreError(FeedSyncError):
    """Raised by the persistent store."""


class DuplicateFeedError(StoreError):
    kind = ErrorKind.DUPLICATE_FEED

    def __init__(self, url: str):
        super().__init__(f"already subscribed to {url}")
        self.url = url


class FeedNotFoundError(StoreError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, feed_id: int):
        super().__init__(f"no feed with id {feed_id}")
        self.feed_id = feed_id


class EntryNotFoundError(StoreError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entry_id: int):
        super().__init__(f"no entry with id {entry_id}")
        self.entry_id = entry_id


class StoreIOError(StoreError):
    """Disk or transaction failure in the database."""

    kind = ErrorKind.STORE_IO


class UnexpectedRefreshError(FeedSyncError):
    """A refresh failed in a way none of the other kinds describe."""

    kind = ErrorKind.UNEXPECTED


def http_status_message(status: int, url: str) -> str:
    """Describe an HTTP failure status with a hint about what to do next."""
    if status == 400:
        return f"bad request (400) fetching feed {url}. the server rejected the request - check the url"
    if status == 401:
        return f"unauthorized (401) fetching feed {url}. authentication may be required"
    if status == 403:
        return f"forbidden (403) fetching feed {url}. access denied - the server refused the request"
    if status == 404:
        return (
            f"not found (404) fetching feed {url}. "
            "the feed url may be incorrect or the feed may have been removed"
        )
    if status == 408:
        return f"request timeout (408) fetching feed {url}. the server took too long to respond"
    if status == 429:
        return (
            f"too many requests (429) fetching feed {url}. "
            "rate limited - wait a moment and try again"
        )
    if 500 <= status <= 599:
        return (
            f"server error ({status}) fetching feed {url}. this could be temporary - "
            "check the site in a browser and try again later"
        )
    if 300 <= status <= 399:
        return f"redirect error ({status}). the server returned an unexpected redirect for feed {url}"
    return f"unexpected status code {status} fetching feed {url}"
