"""
HTTP fetcher for paginated JSON catalogue APIs.

Reads the common envelope shape::

    {"etag": "...", "data": {"offset": 0, "limit": 20, "total": 120,
                             "count": 20, "results": [...]}}

and sends the cached ETag / Last-Modified back as conditional headers so
unchanged pages cost a 304 instead of a full download.
"""

import logging
import time
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Dict, Optional, Sequence

try:
    import requests
except ImportError:
    requests = None

from ...core.exceptions import NotFoundError, TransientIOError, UpstreamError
from ...core.fetcher import RecordFetcher
from ...core.models import FetchedPage, PageRequest
from ...core.utils import ensure_utc


logger = logging.getLogger(__name__)


class HttpRecordFetcher(RecordFetcher):
    """
    Generic HTTP page fetcher.

    Supports:
    - Offset/limit pagination
    - Conditional requests (If-None-Match, If-Modified-Since)
    - Static auth parameters that are never logged
    - Error mapping onto the pipeline taxonomy (429/5xx/network are transient)
    """

    def __init__(
        self,
        name: str = "http",
        timeout: int = 30,
        user_agent: Optional[str] = None,
        results_path: Sequence[str] = ("data", "results"),
        offset_param: str = "offset",
        limit_param: str = "limit",
        auth_params: Optional[Dict[str, Any]] = None,
        session=None,
    ):
        """
        Initialize the HTTP fetcher.

        Args:
            name: Fetcher name
            timeout: Request timeout in seconds
            user_agent: Custom User-Agent header
            results_path: Path to the item list inside the JSON body
            offset_param: Query parameter carrying the offset
            limit_param: Query parameter carrying the page size
            auth_params: Credentials sent as query parameters (redacted in logs)
            session: Optional pre-configured requests.Session
        """
        if requests is None:
            raise ImportError(
                "requests library is required for HttpRecordFetcher. "
                "Install with: pip install requests"
            )

        if not results_path:
            raise ValueError("results_path must not be empty")

        self.name = name
        self.timeout = timeout
        self.user_agent = user_agent or "MarvelSemanticIndex/1.0"
        self.results_path = tuple(results_path)
        self.offset_param = offset_param
        self.limit_param = limit_param
        self.auth_params = dict(auth_params or {})
        self.session = session or requests.Session()

    def fetch_page(self, request: PageRequest) -> FetchedPage:
        """
        Fetch one page via HTTP GET.

        Args:
            request: The page request

        Returns:
            FetchedPage with items and the next offset
        """
        params = dict(self.auth_params)
        params.update(request.params)
        params[self.offset_param] = request.offset
        params[self.limit_param] = request.limit

        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if request.etag:
            headers["If-None-Match"] = request.etag
        if request.last_modified:
            headers["If-Modified-Since"] = format_datetime(ensure_utc(request.last_modified), usegmt=True)

        logger.debug(f"GET {request.uri} offset={request.offset} limit={request.limit}")

        start_time = time.time()
        try:
            response = self.session.get(
                request.uri,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            # The exception text embeds the full URL including auth params
            raise TransientIOError(
                f"Request to {request.uri} failed: {e.__class__.__name__}"
            ) from None
        duration_ms = int((time.time() - start_time) * 1000)

        status = response.status_code
        if status == 304:
            logger.debug(f"Not modified: {request.uri} offset={request.offset}")
            return FetchedPage(
                items=[],
                offset=request.offset,
                next_offset=request.offset,
                etag=request.etag,
                last_modified=request.last_modified,
                not_modified=True,
                status_code=status,
                duration_ms=duration_ms,
            )
        if status == 404:
            raise NotFoundError(f"Upstream endpoint not found: {request.uri}")
        if status == 429 or status >= 500:
            raise TransientIOError(f"Upstream returned HTTP {status} for {request.uri}")
        if status >= 400:
            raise UpstreamError(f"Upstream returned HTTP {status} for {request.uri}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(f"Upstream returned non-JSON body for {request.uri}", status_code=status) from e

        envelope = self._dig(body, self.results_path[:-1])
        items = envelope.get(self.results_path[-1]) if isinstance(envelope, dict) else None
        if not isinstance(items, list):
            raise UpstreamError(
                f"Upstream body for {request.uri} has no list at {'.'.join(self.results_path)}",
                status_code=status,
            )

        total = envelope.get("total")
        return FetchedPage(
            items=items,
            offset=request.offset,
            next_offset=request.offset + len(items),
            total=int(total) if total is not None else None,
            etag=response.headers.get("ETag") or (body.get("etag") if isinstance(body, dict) else None),
            last_modified=self._parse_http_date(response.headers.get("Last-Modified")),
            status_code=status,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _dig(body: Any, path: Sequence[str]) -> Any:
        """Walk a key path into a JSON body."""
        value = body
        for key in path:
            if not isinstance(value, dict):
                return None
            value = value.get(key)
        return value

    @staticmethod
    def _parse_http_date(value: Optional[str]):
        """Parse an RFC 7231 date header; unparseable values are ignored."""
        if not value:
            return None
        try:
            return ensure_utc(parsedate_to_datetime(value))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparseable Last-Modified header: {value!r}")
            return None

    def get_name(self) -> str:
        """Return the fetcher name."""
        return self.name

    def close(self) -> None:
        """Close the session."""
        if self.session:
            self.session.close()
