"""Bounded HTTP retrieval of feed documents using httpx."""

import asyncio
import logging
from dataclasses import dataclass
from http.cookiejar import CookieJar, DefaultCookiePolicy
from urllib.parse import urlsplit, urlunsplit

import httpx

from rssfeed_sync.config import DEFAULT_FETCH_TIMEOUT
from rssfeed_sync.errors import (
    BodyTooLargeError,
    FeedConnectionError,
    FetchTimeoutError,
    HttpStatusError,
    InvalidUrlError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "rssfeed-sync/0.1 (personal feed reader)"
ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.5"

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class FetchResponse:
    """A complete response body, or a not-modified marker."""

    url: str
    body: bytes = b""
    etag: str | None = None
    not_modified: bool = False


def normalize_url(raw: str) -> str:
    """Validate a feed URL and return its canonical form.

    A bare host or path such as ``example.com/feed`` is given the https
    scheme. Scheme and host are lowercased, default ports and fragments are
    dropped, and an empty path becomes ``/``.

    Raises:
        InvalidUrlError: If the URL is empty, malformed, or not http(s).
    """
    candidate = (raw or "").strip()
    if not candidate:
        raise InvalidUrlError("feed url cannot be empty")
    if any(ch.isspace() for ch in candidate):
        raise InvalidUrlError(f"invalid feed url {raw!r}: contains whitespace")

    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as exc:
        raise InvalidUrlError(f"invalid feed url {raw!r}: {exc}") from exc

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise InvalidUrlError(
            f"unsupported url scheme '{scheme}', only http and https are allowed"
        )
    if not parts.hostname:
        raise InvalidUrlError(f"invalid feed url {raw!r}: missing host")
    if parts.username is not None or parts.password is not None:
        raise InvalidUrlError(f"invalid feed url {raw!r}: credentials are not supported")

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port in (None, _DEFAULT_PORTS[scheme]) else f"{host}:{port}"
    normalized = urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))

    # httpx encodes and decodes the host with IDNA when it sends a request.
    try:
        httpx.URL(normalized).host
    except (httpx.InvalidURL, ValueError) as exc:
        raise InvalidUrlError(f"invalid feed url {raw!r}: bad host name ({exc})") from exc
    return normalized


def create_client(timeout: float = DEFAULT_FETCH_TIMEOUT) -> httpx.AsyncClient:
    """Build an AsyncClient that follows redirects and never keeps cookies."""
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
    )


async def fetch(
    url: str,
    timeout: float,
    max_bytes: int,
    *,
    etag: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> FetchResponse:
    """Fetch a feed body with a hard timeout and size cap.

    Args:
        url: Feed URL; normalized before any network access.
        timeout: Upper bound in seconds for the whole request, body included.
        max_bytes: Largest body accepted.
        etag: Validator from the previous fetch, sent as If-None-Match.
        client: Shared client; a private one is created when omitted.

    Returns:
        FetchResponse with the full body, or ``not_modified`` set on 304.

    Raises:
        InvalidUrlError, FeedConnectionError, FetchTimeoutError,
        HttpStatusError, BodyTooLargeError.
    """
    url = normalize_url(url)

    if client is None:
        async with create_client(timeout) as own_client:
            return await _fetch_bounded(own_client, url, timeout, max_bytes, etag)
    return await _fetch_bounded(client, url, timeout, max_bytes, etag)


async def _fetch_bounded(client, url, timeout, max_bytes, etag) -> FetchResponse:
    try:
        return await asyncio.wait_for(
            _fetch(client, url, timeout, max_bytes, etag), timeout
        )
    except asyncio.TimeoutError as exc:
        raise FetchTimeoutError(
            f"timed out after {timeout:g}s fetching feed {url}. "
            "the server may be slow or unreachable"
        ) from exc


async def _fetch(client, url, timeout, max_bytes, etag) -> FetchResponse:
    headers = {"If-None-Match": etag} if etag else {}
    logger.debug("GET %s", url)
    try:
        async with client.stream("GET", url, headers=headers, timeout=timeout) as response:
            if response.status_code == 304 and etag:
                return FetchResponse(url=url, etag=etag, not_modified=True)
            if not 200 <= response.status_code < 300:
                raise HttpStatusError(response.status_code, url)

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise BodyTooLargeError(url, max_bytes)

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    raise BodyTooLargeError(url, max_bytes)
                chunks.append(chunk)

            logger.debug("Fetched %s (%d bytes)", url, received)
            return FetchResponse(
                url=url,
                body=b"".join(chunks),
                etag=response.headers.get("ETag"),
            )
    except httpx.InvalidURL as exc:
        raise InvalidUrlError(f"invalid feed url {url!r}: {exc}") from exc
    except httpx.TimeoutException as exc:
        raise FetchTimeoutError(
            f"timed out fetching feed {url}. the server may be slow or unreachable"
        ) from exc
    except httpx.HTTPError as exc:
        raise FeedConnectionError(
            f"network error fetching feed {url}: {exc}. "
            "check your internet connection and verify the url is accessible"
        ) from exc
