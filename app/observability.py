import logging
from time import perf_counter

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

HTTP_REQUESTS = Counter(
    "compliance_http_requests_total",
    "HTTP requests handled",
    ["method", "path", "status"],
)
HTTP_LATENCY = Histogram(
    "compliance_http_request_seconds",
    "HTTP request latency",
    ["method", "path"],
)
STATE_RECOMPUTATIONS = Counter(
    "compliance_state_recomputations_total",
    "Entity compliance state recomputations",
    ["outcome"],
)
NOTIFICATION_DELIVERIES = Counter(
    "compliance_notification_deliveries_total",
    "Notification channel delivery outcomes",
    ["channel", "status"],
)
QUEUE_ASSIGNMENTS = Counter(
    "compliance_queue_assignments_total",
    "Work queue items assigned",
    ["queue"],
)
OBLIGATIONS_CREATED = Counter(
    "compliance_obligation_instances_created_total",
    "Obligation instances created by the deadline scheduler",
)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            path = _route_path(request)
            elapsed = perf_counter() - start
            HTTP_REQUESTS.labels(request.method, path, str(status)).inc()
            HTTP_LATENCY.labels(request.method, path).observe(elapsed)
            logger.debug(
                "%s %s -> %s in %.3fs", request.method, path, status, elapsed
            )
