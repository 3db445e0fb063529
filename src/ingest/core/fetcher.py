"""
Fetcher interface for paging records out of the upstream source.
"""

from abc import ABC, abstractmethod

from .models import FetchedPage, PageRequest


class RecordFetcher(ABC):
    """
    Abstract base class for upstream record fetchers.

    Fetchers are responsible for authentication, pagination details and
    transport retries against the upstream API. The ingestion core only
    requires that every page comes back paired with a resumable position
    marker (``FetchedPage.next_offset``) and the upstream caching tokens.
    """

    @abstractmethod
    def fetch_page(self, request: PageRequest) -> FetchedPage:
        """
        Fetch one page of items.

        Args:
            request: The page request

        Returns:
            FetchedPage with items and position marker

        Raises:
            TransientIOError: On retryable network/upstream failures
            NotFoundError: If the endpoint does not exist
            UpstreamError: On other non-retryable upstream errors
        """
        pass

    @abstractmethod
    def get_name(self) -> str:
        """Return the fetcher name/identifier."""
        pass

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
