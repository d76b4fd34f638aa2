import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "order_store_http_requests_total",
    "Total HTTP requests served by the order store",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "order_store_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Order ids are opaque strings; collapse them so label cardinality stays bounded.
_PATH_PATTERNS = [
    (re.compile(r"^/orders/[^/]+/payment$"), "/orders/{order_id}/payment"),
    (re.compile(r"^/orders/[^/]+$"), "/orders/{order_id}"),
    (re.compile(r"^/shipments/[^/]+/refresh$"), "/shipments/{order_id}/refresh"),
]


def normalise_path(path: str) -> str:
    for pattern, replacement in _PATH_PATTERNS:
        if pattern.match(path):
            return replacement
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = normalise_path(request.url.path)
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            REQUEST_COUNT.labels(method=request.method, path=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, path=path).observe(
                time.perf_counter() - start
            )
