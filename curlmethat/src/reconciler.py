from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from curlmethat.src.directives import CURL_ANNOTATION, ParseError
from curlmethat.src.fetcher import PageFetcher
from curlmethat.src.metrics import METRICS
from curlmethat.src.watch import ConfigMapSnapshot, UpdateError

LOGGER = logging.getLogger(__name__)


class DataUpdater(Protocol):
    """Anything able to merge new data keys into an observed ConfigMap."""

    def update_data(self, snapshot: ConfigMapSnapshot, data: dict[str, str]) -> None: ...


FetcherFactory = Callable[[str], PageFetcher]


class ReconcileOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    PARSE_FAILED = "parse_failed"
    ALREADY_PROCESSED = "already_processed"
    UPDATE_FAILED = "update_failed"
    UPDATED = "updated"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single reconciliation.

    Returned by every :meth:`Reconciler.reconcile` call so tests and callers
    can inspect the decision without parsing log output.
    """

    namespace: str
    name: str
    outcome: ReconcileOutcome
    fetched_keys: tuple[str, ...] = ()
    failed_keys: tuple[str, ...] = ()


class Reconciler:
    """Curls annotated ConfigMap URLs into the ConfigMap's own data.

    Each call to :meth:`reconcile` is a single pass with no state kept between
    calls.  Keys already present in ``data`` are never fetched again, which is
    what makes the controller converge: once every directive is satisfied the
    fetch result is empty, no patch is sent and the resulting watch event is
    not generated.
    """

    def __init__(
        self,
        updater: DataUpdater,
        fetcher_factory: FetcherFactory,
        logger: logging.Logger | None = None,
    ) -> None:
        self.updater = updater
        self.fetcher_factory = fetcher_factory
        self.logger = logger or LOGGER

    def _log(self, level: int, message: str, snapshot: ConfigMapSnapshot, **fields: Any) -> None:
        self.logger.log(
            level,
            message,
            extra={"fields": {"namespace": snapshot.namespace, "name": snapshot.name, **fields}},
        )

    def _finish(
        self,
        snapshot: ConfigMapSnapshot,
        outcome: ReconcileOutcome,
        fetched_keys: Iterable[str] = (),
        failed_keys: Iterable[str] = (),
    ) -> ReconcileResult:
        METRICS.reconciliations_total.labels(outcome=outcome.value).inc()
        return ReconcileResult(
            namespace=snapshot.namespace,
            name=snapshot.name,
            outcome=outcome,
            fetched_keys=tuple(fetched_keys),
            failed_keys=tuple(sorted(failed_keys)),
        )

    def reconcile(self, snapshot: ConfigMapSnapshot) -> ReconcileResult:
        urls = snapshot.annotations.get(CURL_ANNOTATION)
        if urls is None:
            self._log(logging.INFO, "Skipping configmap without annotation", snapshot)
            return self._finish(snapshot, ReconcileOutcome.SKIPPED)

        try:
            fetcher = self.fetcher_factory(urls)
        except ParseError as exc:
            self._log(logging.ERROR, "Cannot parse URLs", snapshot, error=str(exc))
            return self._finish(snapshot, ReconcileOutcome.PARSE_FAILED)

        # Refetching existing keys would patch the ConfigMap, fire a new
        # MODIFIED event and loop forever.
        fetcher.exclude(snapshot.existing_keys)

        result = fetcher.fetch()
        failed_keys: tuple[str, ...] = ()
        if result.error is not None:
            failed_keys = tuple(result.error.failures)
            # Best effort: whatever did come back is still written.
            self._log(logging.ERROR, "Cannot fetch URLs", snapshot, error=str(result.error))

        if not result.data:
            self._log(logging.INFO, "Leaving configmap already processed", snapshot)
            return self._finish(
                snapshot, ReconcileOutcome.ALREADY_PROCESSED, failed_keys=failed_keys
            )

        try:
            self.updater.update_data(snapshot, result.data)
        except UpdateError as exc:
            METRICS.updates_total.labels(result="failure").inc()
            self._log(logging.ERROR, "Cannot add data", snapshot, error=str(exc))
            return self._finish(snapshot, ReconcileOutcome.UPDATE_FAILED, failed_keys=failed_keys)

        METRICS.updates_total.labels(result="success").inc()
        self._log(logging.INFO, "Curled data into ConfigMap", snapshot, data=result.data)
        return self._finish(
            snapshot,
            ReconcileOutcome.UPDATED,
            fetched_keys=result.data,
            failed_keys=failed_keys,
        )


def run_reconcile_loop(
    snapshots: Iterable[ConfigMapSnapshot],
    reconciler: Reconciler,
) -> int:
    """Reconcile snapshots one at a time until the sequence ends.

    A bug hit while reconciling one ConfigMap is logged and the loop moves on,
    so a single bad resource cannot take the controller down.  Returns the
    number of snapshots processed.
    """
    processed = 0
    for snapshot in snapshots:
        try:
            reconciler.reconcile(snapshot)
        except Exception:
            LOGGER.exception(
                "Unexpected error reconciling ConfigMap %s",
                snapshot.key,
                extra={"fields": {"namespace": snapshot.namespace, "name": snapshot.name}},
            )
        processed += 1
    return processed
