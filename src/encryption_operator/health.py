"""Health check endpoints for the operator."""

from __future__ import annotations

import json
from typing import Any, Callable

from prometheus_client import make_wsgi_app
from werkzeug.wrappers import Request, Response

CheckFn = Callable[[], bool]


def _always_ok() -> bool:
    return True


def _check_response(ok: bool, ok_status: str, detail: str | None = None) -> Response:
    if ok:
        return Response(json.dumps({"status": ok_status}), mimetype="application/json", status=200)
    body: dict[str, Any] = {"status": "unavailable"}
    if detail:
        body["reason"] = detail
    return Response(json.dumps(body), mimetype="application/json", status=503)


def create_combined_wsgi_app(
    liveness_fn: CheckFn | None = None,
    readiness_fn: CheckFn | None = None,
    liveness_detail_fn: Callable[[], str | None] | None = None,
) -> Any:
    """Create a WSGI app that combines metrics and health check endpoints.

    Args:
        liveness_fn: Returns False when the process wants to be restarted
        readiness_fn: Returns False while the operator cannot serve yet
        liveness_detail_fn: Returns the reason of a failed liveness check

    Returns:
        Combined WSGI application
    """
    metrics_app = make_wsgi_app()
    liveness = liveness_fn or _always_ok
    readiness = readiness_fn or _always_ok

    def combined_app(environ: dict[str, Any], start_response: Any) -> list[bytes]:
        """WSGI app that routes /healthz and /readyz, delegates /metrics to prometheus."""
        path = Request(environ).path

        if path == "/healthz":
            detail = liveness_detail_fn() if liveness_detail_fn else None
            response = _check_response(liveness(), "ok", detail)
            return response(environ, start_response)
        if path == "/readyz":
            response = _check_response(readiness(), "ready")
            return response(environ, start_response)
        # Delegate all other paths (including /metrics) to prometheus app
        return metrics_app(environ, start_response)

    return combined_app
