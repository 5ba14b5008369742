"""Base controller with the work loop and reporting shared by all controllers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import EVENT_REASON_SYNC_FAILED
from ..logging import log_controller_event
from ..operatorclient import OperatorClient
from ..tracing import sync_span
from ..utils.conditions import set_degraded_condition
from ..utils.context import new_correlation_id, with_correlation_id
from ..utils.errors import EncryptionError, sanitize_exception
from ..utils.events import EventRecorder
from ..utils.rate_limit import handle_rate_limit_error
from ..utils.workqueue import RateLimitingQueue

# All controllers are level driven: every event maps to the same work item
WORK_KEY = "key"

RESYNC_INTERVAL = 60.0
TRANSITION_REQUEUE = 120.0
CACHE_SYNC_POLL = 0.1


class BaseController:
    """Base class for the encryption controllers.

    Subclasses implement ``sync``. It returns a delay in seconds to check
    again sooner than the periodic resync, or None. Raising requeues the work
    item with exponential backoff.
    """

    # Degraded condition type maintained on the operator status, if any
    degraded_condition: str | None = None
    # Whether the worker waits for the watched caches before the first sync
    wait_for_caches = True

    def __init__(
        self,
        name: str,
        operator_client: OperatorClient,
        event_recorder: EventRecorder,
        resync_interval: float = RESYNC_INTERVAL,
    ):
        """Initialize base controller.

        Args:
            name: Controller name used in logs, metrics and traces
            operator_client: Client for the operator status
            event_recorder: Recorder for events about the operator object
            resync_interval: Seconds between periodic syncs
        """
        self.name = name
        self.operator_client = operator_client
        self.event_recorder = event_recorder
        self.resync_interval = resync_interval
        self.queue = RateLimitingQueue()
        self.logger = logging.getLogger(f"{__name__}.{name}")
        self._synced_fns: list[Callable[[], bool]] = []

    def watch(self, *sources: Any) -> None:
        """Enqueue the work item on every change seen by the given sources.

        Sources are informers or anything else exposing ``add_event_handler``
        and ``has_synced``, such as a deployer.
        """
        for source in sources:
            source.add_event_handler(self.enqueue)
            self._synced_fns.append(source.has_synced)

    def enqueue(self, *_: Any) -> None:
        self.queue.add(WORK_KEY)

    def caches_synced(self) -> bool:
        return all(fn() for fn in self._synced_fns)

    def sync(self) -> float | None:
        raise NotImplementedError

    def log_info(self, message: str, event: str = "info", reason: str = "Info", **kwargs: Any) -> None:
        log_controller_event(
            self.logger,
            controller=self.name,
            event=event,
            reason=reason,
            message=message,
            **kwargs,
        )

    def log_warning(self, message: str, event: str = "warning", reason: str = "Warning", **kwargs: Any) -> None:
        log_controller_event(
            self.logger,
            controller=self.name,
            event=event,
            reason=reason,
            message=message,
            level=logging.WARNING,
            **kwargs,
        )

    def log_error(
        self,
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        log_data = kwargs.copy()
        if error is not None:
            log_data["error"] = sanitize_exception(error)
            log_data["error_type"] = type(error).__name__

        log_controller_event(
            self.logger,
            controller=self.name,
            event=event,
            reason=reason,
            message=message,
            level=logging.ERROR,
            **log_data,
        )

    def update_degraded(self, error: Exception | None) -> None:
        """Reflect the outcome of a sync in the controller's Degraded condition."""
        if self.degraded_condition is None:
            return
        message = None if error is None else sanitize_exception(error)

        def update(status: dict[str, Any]) -> None:
            conditions = status.setdefault("conditions", [])
            set_degraded_condition(conditions, self.degraded_condition, message)

        try:
            self.operator_client.update_status(update)
        except ApiException as e:
            handle_rate_limit_error(e)
            self.log_error("Failed to update degraded condition", error=e)

    def sync_with_metrics(self) -> float | None:
        """Run one sync with tracing, metrics, logging and condition reporting.

        Returns:
            Requeue delay requested by ``sync``

        Raises:
            Exception: Whatever ``sync`` raised
        """
        with with_correlation_id(new_correlation_id()), sync_span(self.name):
            start_time = time.time()
            try:
                requeue_after = self.sync()
            except Exception as e:
                handle_rate_limit_error(e)
                metrics.error_total.labels(controller=self.name, error_type=type(e).__name__).inc()
                metrics.reconcile_total.labels(controller=self.name, result="error").inc()
                self.log_error("Sync failed", error=e, reason="SyncFailed")
                if isinstance(e, EncryptionError):
                    self.event_recorder.warningf(
                        EVENT_REASON_SYNC_FAILED, "%s: %s", self.name, sanitize_exception(e)
                    )
                self.update_degraded(e)
                raise
            finally:
                metrics.reconcile_duration_seconds.labels(controller=self.name).observe(time.time() - start_time)

            metrics.reconcile_total.labels(controller=self.name, result="success").inc()
            self.update_degraded(None)
            return requeue_after

    def process_next_work_item(self, timeout: float = 1.0) -> bool:
        """Take one item off the queue and sync it.

        Returns:
            False once the queue has been shut down
        """
        item, shutdown = self.queue.get(timeout=timeout)
        if shutdown:
            return False
        if item is None:
            return True

        try:
            requeue_after = self.sync_with_metrics()
        except Exception:
            metrics.queue_requeues_total.labels(controller=self.name).inc()
            self.queue.add_rate_limited(item)
        else:
            self.queue.forget(item)
            self.queue.add_after(item, requeue_after if requeue_after else self.resync_interval)
        finally:
            self.queue.done(item)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Work until the stop event is set. Blocks the calling thread."""
        if self.wait_for_caches:
            while not self.caches_synced():
                if stop_event.wait(CACHE_SYNC_POLL):
                    return
        self.log_info("Caches synced, starting worker", event="started", reason="Started")

        self.queue.add(WORK_KEY)
        while not stop_event.is_set():
            if not self.process_next_work_item():
                break
        self.log_info("Worker stopped", event="stopped", reason="Stopped")

    def shut_down(self) -> None:
        self.queue.shut_down()
