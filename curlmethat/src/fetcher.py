from __future__ import annotations

import logging
import time
from collections.abc import Collection, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import httpx

from curlmethat.src.directives import parse_directives
from curlmethat.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "curl-me-that-controller"


class FetchError(RuntimeError):
    """One or more directive URLs could not be retrieved.

    ``failures`` maps each failed key to a short human-readable reason.  This
    is diagnostic only: the keys that did succeed are still returned in the
    accompanying :class:`FetchResult`.
    """

    def __init__(self, failures: Mapping[str, str]) -> None:
        self.failures = dict(failures)
        details = "; ".join(f"{key}: {reason}" for key, reason in sorted(self.failures.items()))
        super().__init__(f"Failed to fetch {len(self.failures)} URL(s): {details}")


@dataclass(frozen=True)
class FetchResult:
    """Content fetched for one ConfigMap, plus the error for any failed keys."""

    data: dict[str, str] = field(default_factory=dict)
    error: FetchError | None = None


def build_http_client(
    timeout_seconds: float,
    user_agent: str = DEFAULT_USER_AGENT,
) -> httpx.Client:
    """Return the shared HTTP client used for every fetch.

    ``httpx.Client`` is safe to share between the fetch worker threads and
    keeps connections to the same host alive across reconciliations.
    """
    return httpx.Client(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=True,
        headers={"User-Agent": user_agent},
    )


class PageFetcher:
    """Fetches the content of every directive URL into a ConfigMap-ready mapping."""

    def __init__(
        self,
        directives: Mapping[str, str],
        *,
        client: httpx.Client,
        max_workers: int = 8,
        max_bytes: int = 1024 * 1024,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.directives = dict(directives)
        self.client = client
        self.max_workers = max_workers
        self.max_bytes = max_bytes

    @classmethod
    def from_string(
        cls,
        value: str,
        *,
        client: httpx.Client,
        max_workers: int = 8,
        max_bytes: int = 1024 * 1024,
    ) -> PageFetcher:
        """Parse an annotation value and build a fetcher for it.

        Raises :class:`~curlmethat.src.directives.ParseError` when the value
        is malformed.
        """
        return cls(
            parse_directives(value),
            client=client,
            max_workers=max_workers,
            max_bytes=max_bytes,
        )

    def exclude(self, existing: Collection[str] | None) -> None:
        """Drop every directive whose key is already present in *existing*.

        *existing* may be a data mapping or any collection of keys.
        """
        if not existing:
            return
        for key in list(self.directives):
            if key in existing:
                del self.directives[key]

    def _fetch_one(self, key: str, url: str) -> str:
        started = time.monotonic()
        body = bytearray()
        try:
            # Streamed so an oversized or endless body is cut off at max_bytes.
            with self.client.stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise ValueError(f"response exceeds {self.max_bytes} bytes")
                encoding = response.charset_encoding or "utf-8"
        finally:
            METRICS.fetch_duration_seconds.observe(time.monotonic() - started)
        content = body.decode(encoding, errors="replace")
        if not content:
            raise ValueError("empty response body")
        LOGGER.debug("Fetched %s for key %s (%d bytes)", url, key, len(body))
        return content

    def fetch(self) -> FetchResult:
        """Fetch every remaining directive concurrently.

        Failures are collected per key instead of aborting the batch; the
        returned :class:`FetchResult` carries whatever succeeded.  Nothing is
        requested when no directives remain.
        """
        if not self.directives:
            return FetchResult()

        workers = min(len(self.directives), self.max_workers)
        data: dict[str, str] = {}
        failures: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = {
                key: pool.submit(self._fetch_one, key, url)
                for key, url in self.directives.items()
            }
            for key, future in futures.items():
                try:
                    data[key] = future.result()
                except httpx.HTTPStatusError as exc:
                    failures[key] = f"HTTP {exc.response.status_code} from {self.directives[key]}"
                except (httpx.HTTPError, httpx.InvalidURL) as exc:
                    failures[key] = f"{type(exc).__name__} for {self.directives[key]}: {exc}"
                except ValueError as exc:
                    failures[key] = f"{exc} from {self.directives[key]}"

        METRICS.fetches_total.labels(result="success").inc(len(data))
        METRICS.fetches_total.labels(result="failure").inc(len(failures))
        return FetchResult(data=data, error=FetchError(failures) if failures else None)
