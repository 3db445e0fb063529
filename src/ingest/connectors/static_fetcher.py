"""
Static fetcher for local runs and tests.

Serves pages out of an in-memory dataset without any network access. The
dataset is fixed and deterministic so pipeline runs are reproducible.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..core.exceptions import NotFoundError, TransientIOError
from ..core.fetcher import RecordFetcher
from ..core.models import FetchedPage, PageRequest

logger = logging.getLogger(__name__)


SYNTHETIC_BASE_URI = "https://catalogue.example.com/v1/public"


def create_synthetic_comics(count: int = 25, character_id: int = 1009685) -> List[Dict[str, Any]]:
    """
    Create a predictable list of comic items for one character.

    Args:
        count: Number of comics to create
        character_id: Character the comics belong to

    Returns:
        List of comic dicts shaped like upstream results
    """
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
    comics = []
    for i in range(count):
        comics.append({
            "id": 40000 + i,
            "title": f"Synthetic Saga #{i + 1}",
            "issueNumber": i + 1,
            "description": (
                f"Issue {i + 1} of the synthetic saga. Character {character_id} "
                f"faces trial number {i + 1} across the city."
            ),
            "modified": (base_time + timedelta(days=i)).isoformat(),
            "characters": [character_id],
        })
    return comics


class StaticRecordFetcher(RecordFetcher):
    """
    Deterministic fetcher backed by a dict of URI to item list.

    Features:
    - Offset/limit slicing with a stable ETag per dataset
    - 304 emulation when a caller at the end presents the current ETag
    - Transient failure injection for the first N calls per URI
    - Request history for assertions
    """

    def __init__(
        self,
        datasets: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        etags: Optional[Dict[str, str]] = None,
        fail_first: int = 0,
        simulate_latency_ms: int = 0,
    ):
        """
        Initialize the static fetcher.

        Args:
            datasets: Items served per URI
            etags: Optional ETag per URI; enables 304 emulation
            fail_first: Number of leading calls per URI that raise TransientIOError
            simulate_latency_ms: Simulated latency in milliseconds
        """
        self.datasets = dict(datasets or {})
        self.etags = dict(etags or {})
        self.fail_first = fail_first
        self.simulate_latency_ms = simulate_latency_ms

        self.request_history: List[PageRequest] = []
        self._failures: Dict[str, int] = {}

        logger.debug(f"StaticRecordFetcher initialized with {len(self.datasets)} datasets")

    def fetch_page(self, request: PageRequest) -> FetchedPage:
        """Serve one page from the dataset registered for ``request.uri``."""
        start_time = time.time()
        self.request_history.append(request)

        if self.simulate_latency_ms > 0:
            time.sleep(self.simulate_latency_ms / 1000.0)

        failures = self._failures.get(request.uri, 0)
        if failures < self.fail_first:
            self._failures[request.uri] = failures + 1
            raise TransientIOError(f"Simulated transient failure for {request.uri}")

        if request.uri not in self.datasets:
            raise NotFoundError(f"No dataset registered for {request.uri}")

        items = self.datasets[request.uri]
        etag = self.etags.get(request.uri)
        duration_ms = int((time.time() - start_time) * 1000)

        # Unchanged dataset and the caller already holds every item
        if etag and request.etag == etag and request.offset >= len(items):
            return FetchedPage(
                items=[],
                offset=request.offset,
                next_offset=request.offset,
                total=len(items),
                etag=etag,
                not_modified=True,
                status_code=304,
                duration_ms=duration_ms,
            )

        page = items[request.offset:request.offset + request.limit]
        return FetchedPage(
            items=list(page),
            offset=request.offset,
            next_offset=request.offset + len(page),
            total=len(items),
            etag=etag,
            duration_ms=duration_ms,
        )

    def get_name(self) -> str:
        """Return fetcher name."""
        return "static"

    def reset(self) -> None:
        """Clear request history and injected failure counters."""
        self.request_history.clear()
        self._failures.clear()
