from starlette.middleware.base import BaseHTTPMiddleware

from unlocks.core.metrics import http_requests_total

UNMATCHED_ROUTE = "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests labelled by route template, not raw URL."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        _record_request_metric(request, response)
        return response


def _route_label(request) -> str:
    # Set by the router once a route matched; raw paths would carry ids
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def _record_request_metric(request, response) -> None:
    try:
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": _route_label(request),
            "status": str(getattr(response, "status_code", None) or 0),
        })
    except Exception:
        # Do not fail the request on metrics errors
        return
