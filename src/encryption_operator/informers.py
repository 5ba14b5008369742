"""List+watch caches feeding the controllers with change notifications.

Each Informer keeps an in-memory copy of the objects returned by a list
call and keeps it current with a watch stream. Registered handlers are
called for every observed change. Controllers only use the handlers to
enqueue their constant work key; the cached objects serve cheap reads for
preconditions and node lookups.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from . import metrics

logger = logging.getLogger(__name__)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

EventHandler = Callable[[str, Any], None]

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30.0


def object_meta(obj: Any) -> tuple[str, str, str | None]:
    """Return (namespace, name, resourceVersion) of a typed or dict object."""
    if isinstance(obj, dict):
        meta = obj.get("metadata") or {}
        return meta.get("namespace") or "", meta.get("name") or "", meta.get("resourceVersion")
    meta = getattr(obj, "metadata", None)
    if meta is None:
        return "", "", None
    return meta.namespace or "", meta.name or "", meta.resource_version


def object_labels(obj: Any) -> dict[str, str]:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("labels") or {}
    meta = getattr(obj, "metadata", None)
    return (getattr(meta, "labels", None) or {}) if meta is not None else {}


def _list_meta(result: Any) -> tuple[list[Any], str | None]:
    if isinstance(result, dict):
        return result.get("items") or [], (result.get("metadata") or {}).get("resourceVersion")
    meta = getattr(result, "metadata", None)
    return list(getattr(result, "items", None) or []), getattr(meta, "resource_version", None)


def matches_labels(obj: Any, selector: dict[str, str] | None) -> bool:
    if not selector:
        return True
    labels = object_labels(obj)
    return all(labels.get(k) == v for k, v in selector.items())


def parse_selector(selector: str) -> dict[str, str]:
    """Parse an equality based label selector (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            result[key.strip()] = value.strip()
    return result


class Informer:
    """Cache of one resource kind kept up to date with list+watch."""

    def __init__(self, name: str, list_fn: Callable[..., Any], **list_kwargs: Any):
        """Initialize the informer.

        Args:
            name: Name used in logs, e.g. "secrets/openshift-config-managed"
            list_fn: Kubernetes client list function, also used for watching
            **list_kwargs: Arguments passed to every list and watch call
        """
        self.name = name
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self._store: dict[tuple[str, str], Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, name: str, namespace: str = "") -> Any | None:
        with self._store_lock:
            return self._store.get((namespace, name))

    def list(self, label_selector: dict[str, str] | None = None) -> list[Any]:
        with self._store_lock:
            objects = list(self._store.values())
        return [o for o in objects if matches_labels(o, label_selector)]

    def _notify(self, event_type: str, obj: Any) -> None:
        for handler in self._handlers:
            try:
                handler(event_type, obj)
            except Exception:
                logger.exception(f"Event handler for {self.name} failed")

    def _apply(self, event_type: str, obj: Any) -> None:
        namespace, name, _ = object_meta(obj)
        with self._store_lock:
            if event_type == EVENT_DELETED:
                self._store.pop((namespace, name), None)
            else:
                self._store[(namespace, name)] = obj
        self._notify(event_type, obj)

    def _relist(self) -> str | None:
        """Replace the store with a fresh list and notify about the differences."""
        result = self.list_fn(**self.list_kwargs)
        items, resource_version = _list_meta(result)
        fresh = {object_meta(o)[:2]: o for o in items}
        with self._store_lock:
            old = self._store
            self._store = fresh
        for key, obj in fresh.items():
            if key not in old:
                self._notify(EVENT_ADDED, obj)
            elif object_meta(old[key])[2] != object_meta(obj)[2]:
                self._notify(EVENT_MODIFIED, obj)
        for key, obj in old.items():
            if key not in fresh:
                self._notify(EVENT_DELETED, obj)
        self._synced.set()
        return resource_version

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until stopped. Blocks the calling thread."""
        backoff = 1.0
        resource_version: str | None = None
        listed = False

        while not self._should_stop(stop_event):
            try:
                if not listed:
                    resource_version = self._relist()
                    listed = True
                    logger.info(f"Informer {self.name} synced at resourceVersion {resource_version}")

                watcher = watch.Watch()
                with self._watcher_lock:
                    self._watcher = watcher
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    _, _, rv = object_meta(obj)
                    if rv:
                        resource_version = rv
                    self._apply(str(event.get("type", "")), obj)
                backoff = 1.0
            except ApiException as e:
                if e.status == 410:
                    # resourceVersion compacted away; start over with a fresh list
                    logger.warning(f"Informer {self.name} watch expired, re-listing")
                    listed = False
                    continue
                metrics.api_call_total.labels(api_type="kubernetes", operation="watch", result="error").inc()
                logger.error(f"Informer {self.name} list/watch failed with status {e.status}")
                self._sleep(backoff, stop_event)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
            except Exception as e:
                metrics.api_call_total.labels(api_type="kubernetes", operation="watch", result="error").inc()
                logger.error(f"Informer {self.name} list/watch failed: {e}")
                self._sleep(backoff, stop_event)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
            finally:
                with self._watcher_lock:
                    self._watcher = None

    def _should_stop(self, stop_event: threading.Event | None) -> bool:
        return self._stop.is_set() or (stop_event is not None and stop_event.is_set())

    def _sleep(self, seconds: float, stop_event: threading.Event | None) -> None:
        jittered = seconds * (0.5 + random.random())  # noqa: S311
        if stop_event is not None:
            stop_event.wait(jittered)
        else:
            self._stop.wait(jittered)

    def stop(self) -> None:
        """Request a stop and interrupt an open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            watcher = self._watcher
        if watcher is not None:
            watcher.stop()


class InformerSet:
    """Named informers sharing a start and stop lifecycle."""

    def __init__(self) -> None:
        self._informers: dict[str, Informer] = {}
        self._threads: list[threading.Thread] = []

    def add(self, key: str, informer: Informer) -> Informer:
        self._informers[key] = informer
        return informer

    def __getitem__(self, key: str) -> Informer:
        return self._informers[key]

    def __contains__(self, key: str) -> bool:
        return key in self._informers

    def values(self) -> list[Informer]:
        return list(self._informers.values())

    def start(self, stop_event: threading.Event, run_in_context: Callable[..., Any] | None = None) -> None:
        for informer in self._informers.values():
            target = informer.run if run_in_context is None else run_in_context(informer.run)
            thread = threading.Thread(
                target=target,
                args=(stop_event,),
                name=f"informer-{informer.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def has_synced(self) -> bool:
        return all(i.has_synced() for i in self._informers.values())

    def stop(self) -> None:
        for informer in self._informers.values():
            informer.stop()
