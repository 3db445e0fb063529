"""
Unit tests for the HTTP page fetcher.

The requests session is mocked; no network access is needed.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from ingest.connectors import HttpRecordFetcher
from ingest.core.exceptions import NotFoundError, TransientIOError, UpstreamError
from ingest.core.models import PageRequest


URI = "https://catalogue.example.com/v1/public/characters/1009685/comics"


def _response(status=200, body=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def _envelope(results, offset=0, total=None, etag=None):
    body = {"data": {"offset": offset, "limit": 20, "total": total, "count": len(results), "results": results}}
    if etag:
        body["etag"] = etag
    return body


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def fetcher(session):
    return HttpRecordFetcher(auth_params={"apikey": "secret-key"}, session=session)


class TestHttpRecordFetcher:
    """Tests for HttpRecordFetcher."""

    def test_fetch_page_parses_envelope(self, fetcher, session):
        session.get.return_value = _response(
            body=_envelope([{"id": 1}, {"id": 2}], offset=40, total=45, etag="abc"),
            headers={"Last-Modified": "Wed, 01 May 2024 10:00:00 GMT"},
        )

        page = fetcher.fetch_page(PageRequest(uri=URI, offset=40, limit=20))

        assert [item["id"] for item in page.items] == [1, 2]
        assert page.offset == 40
        assert page.next_offset == 42
        assert page.total == 45
        assert page.etag == "abc"
        assert page.last_modified == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert not page.is_last

    def test_request_carries_pagination_and_auth(self, fetcher, session):
        session.get.return_value = _response(body=_envelope([]))

        fetcher.fetch_page(PageRequest(uri=URI, offset=300, limit=100, params={"orderBy": "modified"}))

        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"apikey": "secret-key", "orderBy": "modified", "offset": 300, "limit": 100}
        assert kwargs["timeout"] == 30

    def test_conditional_headers(self, fetcher, session):
        session.get.return_value = _response(body=_envelope([]))
        modified = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

        fetcher.fetch_page(PageRequest(uri=URI, etag='"v1"', last_modified=modified))

        headers = session.get.call_args[1]["headers"]
        assert headers["If-None-Match"] == '"v1"'
        assert headers["If-Modified-Since"] == "Wed, 01 May 2024 10:00:00 GMT"

    def test_not_modified(self, fetcher, session):
        session.get.return_value = _response(status=304)

        page = fetcher.fetch_page(PageRequest(uri=URI, offset=20, etag='"v1"'))

        assert page.not_modified
        assert page.items == []
        assert page.next_offset == 20
        assert page.etag == '"v1"'
        assert page.is_last

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses(self, fetcher, session, status):
        session.get.return_value = _response(status=status)
        with pytest.raises(TransientIOError):
            fetcher.fetch_page(PageRequest(uri=URI))

    def test_not_found(self, fetcher, session):
        session.get.return_value = _response(status=404)
        with pytest.raises(NotFoundError):
            fetcher.fetch_page(PageRequest(uri=URI))

    def test_client_error(self, fetcher, session):
        session.get.return_value = _response(status=401)
        with pytest.raises(UpstreamError) as exc_info:
            fetcher.fetch_page(PageRequest(uri=URI))
        assert exc_info.value.status_code == 401

    def test_network_error_does_not_leak_credentials(self, fetcher, session):
        session.get.side_effect = requests.exceptions.ConnectionError(f"{URI}?apikey=secret-key refused")

        with pytest.raises(TransientIOError) as exc_info:
            fetcher.fetch_page(PageRequest(uri=URI))
        assert "secret-key" not in str(exc_info.value)
        assert "ConnectionError" in str(exc_info.value)

    def test_non_json_body(self, fetcher, session):
        session.get.return_value = _response(body=ValueError("no json"))
        with pytest.raises(UpstreamError):
            fetcher.fetch_page(PageRequest(uri=URI))

    def test_missing_results_list(self, fetcher, session):
        session.get.return_value = _response(body={"data": {"total": 3}})
        with pytest.raises(UpstreamError, match="data.results"):
            fetcher.fetch_page(PageRequest(uri=URI))

    def test_unparseable_last_modified_is_ignored(self, fetcher, session):
        session.get.return_value = _response(body=_envelope([{"id": 1}]), headers={"Last-Modified": "yesterday"})

        assert fetcher.fetch_page(PageRequest(uri=URI)).last_modified is None

    def test_custom_results_path(self, session):
        fetcher = HttpRecordFetcher(results_path=("items",), session=session)
        session.get.return_value = _response(body={"items": [{"id": 9}], "total": 1})

        page = fetcher.fetch_page(PageRequest(uri=URI))
        assert page.items == [{"id": 9}]
        assert page.total == 1
        assert page.is_last

    def test_close_closes_session(self, fetcher, session):
        fetcher.close()
        session.close.assert_called_once()
