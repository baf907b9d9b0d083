from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError as TransportError

from curlmethat.src.kube import patch_config_map_data
from curlmethat.src.metrics import METRICS

_ACCESS_DENIED = {401, 403}
_MAX_BACKOFF_SECONDS = 30


class WatchError(RuntimeError):
    """Raised when the ConfigMap watch cannot be established."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpdateError(RuntimeError):
    """Raised when fetched data cannot be written back to a ConfigMap."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _string_map(raw: Any) -> Mapping[str, str]:
    """Coerce a Kubernetes string map into a read-only ``Mapping[str, str]``.

    ``None`` maps become empty and ``None`` values become ``""`` so callers
    never have to special-case a ConfigMap without data or annotations.
    """
    if not isinstance(raw, dict):
        return MappingProxyType({})
    return MappingProxyType(
        {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}
    )


@dataclass(frozen=True)
class ConfigMapSnapshot:
    """Immutable view of one observed ConfigMap."""

    namespace: str
    name: str
    annotations: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    data: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    resource_version: str | None = None
    binary_data: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def existing_keys(self) -> frozenset[str]:
        """Keys already stored in either ``data`` or ``binaryData``.

        The API server rejects a ``data`` key that also exists in
        ``binaryData``, so both count as already present.
        """
        return frozenset(self.data) | frozenset(self.binary_data)

    @classmethod
    def from_object(cls, config_map: Any) -> ConfigMapSnapshot:
        metadata = getattr(config_map, "metadata", None)
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            annotations=_string_map(getattr(metadata, "annotations", None)),
            data=_string_map(getattr(config_map, "data", None)),
            resource_version=getattr(metadata, "resource_version", None),
            binary_data=_string_map(getattr(config_map, "binary_data", None)),
        )


class ConfigMapWatchSource:
    """Streams ConfigMap snapshots from the cluster and writes fetched data back.

    ``start_watching`` lists ConfigMaps once (failing loudly if that is not
    possible) and returns a lazy, unbounded iterator: first every listed
    ConfigMap, then every ``ADDED``/``MODIFIED`` event from the list's
    ``resourceVersion``.  The iterator ends only after ``stop_watching`` or
    when the API server denies access.

    Reconnection is handled here so consumers see one continuous sequence:
    - a stream closed by the server-side timeout is simply reopened;
    - ``410 Gone`` (etcd compaction) triggers a re-list whose items are
      yielded again;
    - other errors reconnect with jittered exponential backoff capped at 30 s;
    - ``401`` / ``403`` end the sequence, since retrying cannot fix RBAC.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        if self.namespace:
            kwargs["namespace"] = self.namespace
            return self.core_api.list_namespaced_config_map, kwargs
        return self.core_api.list_config_map_for_all_namespaces, kwargs

    def _list(self) -> Any:
        func, kwargs = self._list_call()
        return func(**kwargs)

    @staticmethod
    def _snapshots_from_list(config_maps: Any) -> Iterator[ConfigMapSnapshot]:
        for config_map in getattr(config_maps, "items", None) or []:
            if getattr(config_map, "metadata", None) is None:
                continue
            yield ConfigMapSnapshot.from_object(config_map)

    @staticmethod
    def _list_resource_version(config_maps: Any) -> str | None:
        return getattr(getattr(config_maps, "metadata", None), "resource_version", None)

    def start_watching(self) -> Iterator[ConfigMapSnapshot]:
        """List ConfigMaps and return the live snapshot sequence.

        Raises :class:`WatchError` when the initial list fails, e.g. because
        of missing RBAC permissions or an unreachable API server.
        """
        scope = self.namespace or "all namespaces"
        try:
            initial = self._list()
        except ApiException as exc:
            raise WatchError(
                f"Cannot list ConfigMaps in {scope} (status={exc.status}): {exc.reason}",
                status=exc.status,
            ) from exc
        except TransportError as exc:
            raise WatchError(f"Cannot reach the Kubernetes API to list ConfigMaps: {exc}") from exc

        self.ready.set()
        resource_version = self._list_resource_version(initial)
        self.logger.info(
            "Watching ConfigMaps in %s from resourceVersion %s", scope, resource_version
        )
        return self._stream(initial, resource_version)

    def stop_watching(self) -> None:
        """Request the sequence to end and interrupt any open watch stream.

        Never blocks: the generator notices the stop after the event in flight,
        or at the latest when the server-side watch timeout expires.
        """
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def update_data(self, snapshot: ConfigMapSnapshot, data: dict[str, str]) -> None:
        """Merge *data* into the ConfigMap identified by *snapshot*.

        The patch is conditional on the snapshot's ``resourceVersion``; a
        ConfigMap changed since it was observed fails with a ``409`` raised as
        :class:`UpdateError`, and the newer watch event reconciles it again.
        """
        try:
            patch_config_map_data(
                self.core_api,
                namespace=snapshot.namespace,
                name=snapshot.name,
                data=data,
                resource_version=snapshot.resource_version,
            )
        except ApiException as exc:
            raise UpdateError(
                f"Cannot patch ConfigMap {snapshot.key} (status={exc.status}): {exc.reason}",
                status=exc.status,
            ) from exc
        except TransportError as exc:
            raise UpdateError(f"Cannot reach the Kubernetes API to patch {snapshot.key}: {exc}") from exc

    def _backoff(self, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)

    def _stream(self, initial: Any, resource_version: str | None) -> Iterator[ConfigMapSnapshot]:
        try:
            yield from self._snapshots_from_list(initial)

            func, kwargs = self._list_call()
            backoff_seconds = 1
            watch_stream_count = 0

            while not self._stop.is_set():
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                # stop_watching may have run before the watcher was registered.
                if self._stop.is_set():
                    break
                try:
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    stream = watcher.stream(
                        func,
                        resource_version=resource_version,
                        timeout_seconds=self.watch_timeout_seconds,
                        **kwargs,
                    )
                    for event in stream:
                        if self._stop.is_set():
                            break

                        obj = event.get("object")
                        if obj is None:
                            continue
                        metadata = getattr(obj, "metadata", None)
                        if metadata is not None and metadata.resource_version:
                            resource_version = metadata.resource_version

                        if event.get("type") not in {"ADDED", "MODIFIED"}:
                            continue
                        yield ConfigMapSnapshot.from_object(obj)

                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, re-listing")
                        try:
                            fresh = self._list()
                        except ApiException as relist_exc:
                            if relist_exc.status in _ACCESS_DENIED:
                                self.logger.error(
                                    "Kubernetes API access denied during 410 re-list (status=%s). "
                                    "Check controller RBAC and service account permissions.",
                                    relist_exc.status,
                                )
                                return
                            self.logger.exception("Failed to re-list after 410")
                            METRICS.watch_errors_total.inc()
                            resource_version = None
                            continue
                        resource_version = self._list_resource_version(fresh)
                        yield from self._snapshots_from_list(fresh)
                        continue

                    METRICS.watch_errors_total.inc()
                    if exc.status in _ACCESS_DENIED:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        return

                    self.logger.exception("Kubernetes API watch error")
                    backoff_seconds = self._backoff(backoff_seconds)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    backoff_seconds = self._backoff(backoff_seconds)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self.ready.clear()
            self.logger.info("ConfigMap watch stopped")
