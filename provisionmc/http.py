"""HTTP primitive functions, all requests go through an asynchronous `httpx` client.
"""

from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
import json

import httpx

from . import LAUNCHER_VERSION

from typing import Optional, Any


__all__ = ["HttpResponse", "HttpError", "http_request", "new_client", "parse_retry_after"]


USER_AGENT = f"provisionmc/{LAUNCHER_VERSION}"


class HttpResponse:
    """An HTTP response containing the status, data and received headers.
    """

    def __init__(self, res: Optional[httpx.Response]) -> None:
        self.status = 0 if res is None else res.status_code
        self.data = b"null" if res is None else res.content
        self.headers = httpx.Headers() if res is None else res.headers

    def json(self) -> Any:
        """Parse the data as JSON. This may raise a JSONDecodeError.
        """
        return json.loads(self.data)

    def __repr__(self) -> str:
        return f"<HttpResponse {self.status}>"


class HttpError(Exception):
    """An HTTP error, raised when the status code of the response is not 2xx.

    If any network error happens and it's impossible to receive a response from the
    server, an instance of `HttpResponse` with status equal to 0 is used (also has no
    headers and `None` data). The original reason for this error is given in the `reason`
    attribute in any case.
    """

    def __init__(self, res: HttpResponse, method: str, url: str, reason: Optional[Exception]) -> None:
        super().__init__(res, method, url, reason)
        self.res = res
        self.method = method
        self.url = url
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.method} {self.url}: status {self.res.status} ({self.reason})"

    def __repr__(self) -> str:
        return f"<HttpError {self.res}, origin: {self.method} {self.url}, reason: {self.reason}>"


def new_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """Create an asynchronous client suitable for talking to content and runtime
    servers, redirections are followed.
    """
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=timeout,
        headers={"User-Agent": USER_AGENT})


async def http_request(method: str, url: str, *,
    client: Optional[httpx.AsyncClient] = None,
    headers: Optional[dict] = None,
    accept: Optional[str] = None,
    timeout: Optional[float] = None
) -> HttpResponse:
    """Make an asynchronous HTTP request. If no client is given, a temporary one is
    created for this request only.

    :return: The response returned should've a status of 2xx.
    :raises HttpError: An error wrapping a response that is not of status 2xx, or a
    response with status 0 if no response could be received.
    """

    if headers is None:
        headers = {}
    if accept is not None:
        headers["Accept"] = accept
    if "User-Agent" not in headers:
        headers["User-Agent"] = USER_AGENT

    if client is None:
        async with new_client(timeout) as own_client:
            return await _request(own_client, method, url, headers)
    else:
        return await _request(client, method, url, headers)


async def _request(client: httpx.AsyncClient, method: str, url: str, headers: dict) -> HttpResponse:

    try:
        res = await client.request(method, url, headers=headers)
    except httpx.RequestError as error:
        raise HttpError(HttpResponse(None), method, url, error)

    if not res.is_success:
        raise HttpError(HttpResponse(res), method, url, None)

    return HttpResponse(res)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse the value of a `Retry-After` header, given in seconds or as an HTTP date,
    into a delay in seconds. None is returned if absent or invalid.
    """

    if value is None:
        return None

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        date = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None

    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return max(0.0, (date - datetime.now(timezone.utc)).total_seconds())
