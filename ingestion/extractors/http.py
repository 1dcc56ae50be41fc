"""
Single HTTP request against a provider, mapped onto the fetch error taxonomy.

No retries happen here: one call is one attempt. Retrying, backoff and
window shrinking are the chunked fetcher's job.
"""

from typing import Any, Callable, Dict, Optional
import httpx
from core.exceptions import (
    AuthenticationError,
    FetchError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    WindowTooLargeError,
)
import logging

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form; fall back to the fetcher's own schedule
        return None


async def get(
    client: httpx.AsyncClient,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    too_large: Optional[Callable[[httpx.Response], bool]] = None
) -> httpx.Response:
    """
    GET ``url``, raising on anything but a success status.

    Args:
        client: Shared HTTP client
        url: Request URL
        params: Query parameters
        timeout: Read timeout in seconds
        headers: Extra request headers
        too_large: Predicate recognising the provider's "window holds
            too many items" response

    Raises:
        AuthenticationError: HTTP 401/403
        ResourceNotFoundError: HTTP 404
        RateLimitError: HTTP 429 (with Retry-After when given)
        WindowTooLargeError: ``too_large`` matched
        NetworkError: Timeouts, transport failures and HTTP 5xx
        FetchError: Any other non-success status
    """
    context = {"api_url": url}

    try:
        response = await client.get(url, params=params, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise NetworkError(
            f"Request timeout after {timeout}s",
            context={**context, "timeout": timeout},
            original_exception=e
        )
    except httpx.TransportError as e:
        raise NetworkError(
            f"Transport error: {type(e).__name__}",
            context=context,
            original_exception=e
        )

    status = response.status_code
    context["status_code"] = status

    if too_large is not None and too_large(response):
        raise WindowTooLargeError(
            "Provider refused the window as too large",
            context={**context, "response_body": response.text[:500]}
        )

    if status in (401, 403):
        raise AuthenticationError(f"Authentication failed for {url}", context=context)

    if status == 404:
        raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

    if status == 429:
        raise RateLimitError(
            f"Rate limit exceeded for {url}",
            context=context,
            retry_after=_retry_after(response)
        )

    if status >= 500:
        raise NetworkError(
            f"Server error {status}",
            context={**context, "response_body": response.text[:500]}
        )

    if status >= 400:
        raise FetchError(
            f"Request rejected with HTTP {status}",
            context={**context, "response_body": response.text[:500]}
        )

    logger.debug(f"GET {url} -> {status}")
    return response


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    too_large: Optional[Callable[[httpx.Response], bool]] = None
) -> Any:
    """GET ``url`` and decode its JSON body; an undecodable body is a FetchError"""
    response = await get(client, url, params=params, timeout=timeout, headers=headers, too_large=too_large)
    context = {"api_url": url, "status_code": response.status_code}

    try:
        return response.json()
    except ValueError as e:
        raise FetchError(
            "Failed to parse JSON response",
            context={**context, "response_body": response.text[:500]},
            original_exception=e
        )
