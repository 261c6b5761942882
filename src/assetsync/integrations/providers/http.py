"""Shared HTTP plumbing for provider adapters.

Provides:
- HttpDefaults: adapter-level timeout, page size, and page cap
- build_url(): join a connection base URL and an endpoint (absolute endpoints pass through)
- open_client(): httpx.AsyncClient configured for one connection
- fetch_page(): GET with tenacity retry on transient failures, raise_for_status otherwise
- paginate(): page-number and next-link pagination with a hard page cap and cycle detection
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.assetsync.integrations.providers.field_mapping import dig
from src.assetsync.integrations.schemas import ConnectionRead

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PAGE_SIZE = 1000
DEFAULT_MAX_PAGES = 50

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Body keys vendors use for the next page link.
NEXT_LINK_PATHS = ("links.next", "next", "next_page_url", "nextPageUrl", "meta.next")


@dataclass(frozen=True)
class HttpDefaults:
    """Adapter defaults; each value can be overridden per connection settings."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES

    def timeout_for(self, connection: ConnectionRead) -> float:
        return float(connection.setting("timeout_seconds", self.timeout_seconds))

    def page_size_for(self, connection: ConnectionRead) -> int:
        return int(connection.setting("page_size", self.page_size))

    def max_pages_for(self, connection: ConnectionRead) -> int:
        return max(1, int(connection.setting("max_pages", self.max_pages)))


class TransientVendorError(httpx.HTTPStatusError):
    """Vendor answered with a status worth retrying (429/5xx)."""


def iso_utc(value: datetime) -> str:
    """ISO-8601 in UTC with an explicit offset, as used for incremental filters."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def build_url(connection: ConnectionRead, endpoint: str) -> str:
    """Resolve an endpoint against the connection base URL.

    Raises:
        ValueError: The endpoint is relative and the connection has no base URL.
    """
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    base_url = (connection.base_url or "").rstrip("/")
    if not base_url:
        raise ValueError(f"Integration connection {connection.id} has no base URL configured.")
    return f"{base_url}/{endpoint.lstrip('/')}"


def open_client(
    connection: ConnectionRead,
    headers: dict[str, str],
    defaults: HttpDefaults,
    transport: httpx.AsyncBaseTransport | None = None,
    auth: httpx.Auth | tuple[str, str] | None = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient for one connection. Caller owns closing it."""
    return httpx.AsyncClient(
        headers={"Accept": "application/json", **headers},
        auth=auth,
        timeout=defaults.timeout_for(connection),
        transport=transport,
        follow_redirects=True,
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.TransportError, TransientVendorError)),
    reraise=True,
)
async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    """GET one page, retrying connection errors, timeouts, 429 and 5xx.

    Raises:
        httpx.HTTPStatusError: Non-2xx response (after retries for transient codes).
        httpx.TransportError: Network failure after retries.
    """
    response = await client.get(url, params=params)
    if response.status_code in RETRYABLE_STATUS_CODES:
        logger.warning(
            "provider.transient_status",
            url=str(response.request.url),
            status_code=response.status_code,
        )
        raise TransientVendorError(
            f"Vendor returned {response.status_code}",
            request=response.request,
            response=response,
        )
    response.raise_for_status()
    return response


def next_link(response: httpx.Response, payload: Any) -> str | None:
    """Find a next-page URL in the body or the Link header, resolved to absolute."""
    candidate: Any = None
    if isinstance(payload, dict):
        for path in NEXT_LINK_PATHS:
            candidate = dig(payload, path)
            if isinstance(candidate, dict):
                candidate = candidate.get("href")
            if isinstance(candidate, str) and candidate:
                break
            candidate = None
    if candidate is None:
        candidate = response.links.get("next", {}).get("url")
    if not candidate:
        return None
    return str(response.url.join(candidate))


async def paginate(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, Any],
    extract: Callable[[Any], list[dict[str, Any]]],
    max_pages: int,
    page_param: str | None = None,
    page_size: int | None = None,
) -> AsyncIterator[list[dict[str, Any]]]:
    """Yield the raw items of each page.

    Next links (body or Link header) win over page numbers. With a
    ``page_param`` and no next link, the page number advances while pages
    come back full. Iteration stops at ``max_pages`` or when a next link
    repeats.

    Args:
        client: Connection-scoped AsyncClient.
        url: First page URL.
        params: Query params for the first (and page-numbered) requests.
        extract: Pulls the item list out of a decoded page body.
        max_pages: Hard cap on requests.
        page_param: Page-number query parameter, or None for link-only paging.
        page_size: Expected full-page size for page-number paging.
    """
    page = 1
    request_url = url
    request_params: dict[str, Any] | None = dict(params)
    if page_param:
        request_params[page_param] = page
    seen: set[str] = set()

    for fetched in range(1, max_pages + 1):
        response = await fetch_page(client, request_url, request_params)
        payload = response.json()
        items = extract(payload)
        yield items

        link = next_link(response, payload)
        if link:
            if link in seen or link == str(response.request.url):
                logger.warning("provider.pagination_cycle", url=link, pages=fetched)
                return
            seen.add(link)
            request_url, request_params = link, None
        elif page_param and page_size and len(items) >= page_size:
            page += 1
            request_url = url
            request_params = {**params, page_param: page}
        else:
            return
    else:
        logger.warning("provider.pagination_cap_reached", url=url, max_pages=max_pages)
