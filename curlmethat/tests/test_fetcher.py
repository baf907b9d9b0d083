from __future__ import annotations

import threading
from collections.abc import Iterator

import httpx
import pytest

from curlmethat.src.directives import ParseError
from curlmethat.src.fetcher import FetchError, FetchResult, PageFetcher, build_http_client


def _client(routes: dict[str, httpx.Response], requested: list[str] | None = None) -> httpx.Client:
    lock = threading.Lock()

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        with lock:
            if requested is not None:
                requested.append(url)
        if url not in routes:
            raise httpx.ConnectError("connection refused", request=request)
        return routes[url]

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_from_string_parses_directives() -> None:
    fetcher = PageFetcher.from_string("foo=http://x/1,bar=http://x/2", client=_client({}))

    assert fetcher.directives == {"foo": "http://x/1", "bar": "http://x/2"}


def test_from_string_propagates_parse_error() -> None:
    with pytest.raises(ParseError):
        PageFetcher.from_string("foo", client=_client({}))


def test_rejects_non_positive_worker_count() -> None:
    with pytest.raises(ValueError, match="max_workers"):
        PageFetcher({"foo": "http://x/1"}, client=_client({}), max_workers=0)


def test_exclude_removes_existing_keys_and_is_idempotent() -> None:
    fetcher = PageFetcher({"foo": "http://x/1", "bar": "http://x/2"}, client=_client({}))

    fetcher.exclude({"foo": "hello", "unrelated": "value"})
    fetcher.exclude({"foo": "hello", "unrelated": "value"})

    assert fetcher.directives == {"bar": "http://x/2"}


def test_exclude_with_no_existing_data_keeps_everything() -> None:
    fetcher = PageFetcher({"foo": "http://x/1"}, client=_client({}))

    fetcher.exclude({})
    fetcher.exclude(None)

    assert fetcher.directives == {"foo": "http://x/1"}


def test_exclude_does_not_mutate_caller_mapping() -> None:
    directives = {"foo": "http://x/1"}
    fetcher = PageFetcher(directives, client=_client({}))

    fetcher.exclude({"foo": "hello"})

    assert directives == {"foo": "http://x/1"}


def test_fetch_all_succeed() -> None:
    client = _client(
        {
            "http://x/1": httpx.Response(200, text="hello"),
            "http://x/2": httpx.Response(200, text="world"),
        }
    )
    fetcher = PageFetcher({"foo": "http://x/1", "bar": "http://x/2"}, client=client)

    result = fetcher.fetch()

    assert result.data == {"foo": "hello", "bar": "world"}
    assert result.error is None


def test_fetch_is_best_effort_when_one_url_is_unreachable() -> None:
    client = _client({"http://x/1": httpx.Response(200, text="hello")})
    fetcher = PageFetcher({"foo": "http://x/1", "bar": "http://down/2"}, client=client)

    result = fetcher.fetch()

    assert result.data == {"foo": "hello"}
    assert isinstance(result.error, FetchError)
    assert set(result.error.failures) == {"bar"}
    assert "ConnectError" in result.error.failures["bar"]


def test_fetch_treats_http_error_status_as_failure() -> None:
    client = _client(
        {
            "http://x/1": httpx.Response(404, text="not found"),
            "http://x/2": httpx.Response(200, text="ok"),
        }
    )
    fetcher = PageFetcher({"missing": "http://x/1", "present": "http://x/2"}, client=client)

    result = fetcher.fetch()

    assert result.data == {"present": "ok"}
    assert result.error is not None
    assert result.error.failures == {"missing": "HTTP 404 from http://x/1"}


def test_fetch_treats_empty_body_as_failure() -> None:
    client = _client({"http://x/1": httpx.Response(200, text="")})
    fetcher = PageFetcher({"foo": "http://x/1"}, client=client)

    result = fetcher.fetch()

    assert result.data == {}
    assert result.error is not None
    assert "empty response body" in result.error.failures["foo"]


def test_fetch_rejects_oversized_body() -> None:
    client = _client({"http://x/1": httpx.Response(200, text="x" * 20)})
    fetcher = PageFetcher({"foo": "http://x/1"}, client=client, max_bytes=10)

    result = fetcher.fetch()

    assert result.data == {}
    assert result.error is not None
    assert "exceeds 10" in result.error.failures["foo"]


def test_fetch_stops_reading_once_body_exceeds_limit() -> None:
    chunks_sent = 0

    def endless_body() -> Iterator[bytes]:
        nonlocal chunks_sent
        for _ in range(1000):
            chunks_sent += 1
            yield b"x" * 1024

    client = _client({"http://x/1": httpx.Response(200, content=endless_body())})
    fetcher = PageFetcher({"foo": "http://x/1"}, client=client, max_bytes=10)

    result = fetcher.fetch()

    assert result.data == {}
    assert result.error is not None
    assert "exceeds 10 bytes" in result.error.failures["foo"]
    assert chunks_sent < 5


def test_fetch_decodes_streamed_body_with_declared_charset() -> None:
    client = _client(
        {
            "http://x/1": httpx.Response(
                200,
                content="café".encode("latin-1"),
                headers={"Content-Type": "text/plain; charset=latin-1"},
            )
        }
    )
    fetcher = PageFetcher({"foo": "http://x/1"}, client=client)

    assert fetcher.fetch().data == {"foo": "café"}


def test_fetch_all_fail_returns_empty_data_with_error() -> None:
    fetcher = PageFetcher({"foo": "http://down/1", "bar": "http://down/2"}, client=_client({}))

    result = fetcher.fetch()

    assert result.data == {}
    assert result.error is not None
    assert set(result.error.failures) == {"foo", "bar"}
    assert "Failed to fetch 2 URL(s)" in str(result.error)


def test_fetch_without_directives_issues_no_requests() -> None:
    requested: list[str] = []
    fetcher = PageFetcher({"foo": "http://x/1"}, client=_client({}, requested))
    fetcher.exclude({"foo": "already there"})

    result = fetcher.fetch()

    assert result == FetchResult()
    assert requested == []


def test_fetch_skips_excluded_keys() -> None:
    requested: list[str] = []
    client = _client(
        {
            "http://x/1": httpx.Response(200, text="hello"),
            "http://x/2": httpx.Response(200, text="world"),
        },
        requested,
    )
    fetcher = PageFetcher({"foo": "http://x/1", "bar": "http://x/2"}, client=client)
    fetcher.exclude({"foo": "hello"})

    result = fetcher.fetch()

    assert result.data == {"bar": "world"}
    assert requested == ["http://x/2"]


def test_build_http_client_follows_redirects_with_timeout() -> None:
    client = build_http_client(timeout_seconds=3, user_agent="test-agent")
    try:
        assert client.follow_redirects is True
        assert client.timeout.read == 3
        assert client.headers["User-Agent"] == "test-agent"
    finally:
        client.close()
