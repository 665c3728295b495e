# perishable/obs/metrics.py
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "path", "code"])
http_request_duration = Histogram(
    "http_request_duration_seconds", "HTTP request duration seconds", ["method", "path"]
)

# 预留台账
reservation_holds_total = Counter(
    "reservation_holds_total", "Reservation hold attempts", ["outcome"]
)
reservation_releases_total = Counter(
    "reservation_releases_total", "Reservations released back to stock", ["reason"]
)
reservation_commits_total = Counter("reservation_commits_total", "Reservations committed")
reservation_race_lost_total = Counter(
    "reservation_race_lost_total", "Operations that observed an already-terminal reservation", ["op"]
)

# TTL 扫描
sweeper_runs_total = Counter("sweeper_runs_total", "Expiry sweeper runs")
sweeper_expired_total = Counter("sweeper_expired_total", "Reservations expired by the sweeper")

# 结算
settlement_events_total = Counter(
    "settlement_events_total", "Payment confirmation events handled", ["outcome"]
)
delivery_requests_total = Counter("delivery_requests_total", "Delivery requests emitted")

# 外部供应商
provider_errors_total = Counter("provider_errors_total", "External provider failures", ["provider"])
provider_latency = Histogram(
    "provider_latency_seconds", "External provider call latency", ["provider"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        http_requests_total.labels(
            request.method, request.url.path, str(response.status_code)
        ).inc()
        http_request_duration.labels(request.method, request.url.path).observe(elapsed)
        return response
