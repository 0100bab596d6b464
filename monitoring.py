import time
import logging
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response as FastAPIResponse

logger = logging.getLogger(__name__)

# Prometheus metrics
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

job_count = Counter(
    'jobs_total',
    'Total page jobs executed',
    ['status']
)

job_duration = Histogram(
    'job_processing_duration_seconds',
    'Page job execution duration',
    ['status'],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, float("inf"))
)

class MonitoringMiddleware:
    """Count and time HTTP requests, labelled by route template

    Labelling with the template (``/job/{job_id}``) rather than the raw
    path keeps one series per route however many ids are requested.
    Requests that match no route share the ``unmatched`` label.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.monotonic()
        status = {"code": 500}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self._record(scope, status["code"], time.monotonic() - start)

    @staticmethod
    def _record(scope, status_code: int, duration: float):
        route = scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        method = scope["method"]

        request_count.labels(method=method, endpoint=endpoint, status=status_code).inc()
        request_duration.labels(method=method, endpoint=endpoint).observe(duration)
        logger.info(f"{method} {scope['path']} ({endpoint}) - {status_code} - {duration:.3f}s")

def setup_monitoring(app):
    """Setup monitoring middleware and the /metrics endpoint"""

    app.add_middleware(MonitoringMiddleware)

    @app.get("/metrics", include_in_schema=False)
    def get_metrics():
        """Prometheus metrics endpoint"""
        return FastAPIResponse(
            generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )
