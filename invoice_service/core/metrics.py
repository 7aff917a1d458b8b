from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
import time

HTTP_REQUESTS = Counter(
    'invoice_http_requests_total',
    'HTTP requests handled by the invoice service',
    ['method', 'route', 'http_status']
)

HTTP_REQUEST_LATENCY = Histogram(
    'invoice_http_request_seconds',
    'HTTP request latency',
    ['method', 'route']
)

def route_label(request: Request) -> str:
    # Templated path keeps label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path

class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request counts and latencies per route"""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()
        http_status = 500
        try:
            response = await call_next(request)
            http_status = response.status_code
            return response
        finally:
            route = route_label(request)
            HTTP_REQUESTS.labels(method=request.method, route=route, http_status=http_status).inc()
            HTTP_REQUEST_LATENCY.labels(method=request.method, route=route).observe(
                time.monotonic() - start_time
            )
