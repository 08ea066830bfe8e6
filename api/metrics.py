import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _monitoring_cfg():
    return config.section('monitoring')


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_cfg().get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_cfg().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.provider_requests = Counter(
            'provider_requests_total', 'Outbound market-data requests', ['endpoint', 'outcome']
        )
        self.provider_latency = Histogram(
            'provider_request_latency_seconds', 'Latency of outbound market-data requests', ['endpoint']
        )
        self.cache_hits = Counter('quote_cache_hits_total', 'Quote cache hits')
        self.cache_misses = Counter('quote_cache_misses_total', 'Quote cache misses')
        self.cache_size = Gauge('quote_cache_entries', 'Entries currently held by the quote cache')
        self.cache_clears = Counter('quote_cache_clears_total', 'Full quote cache invalidations')

        self.tokens_acquired = Counter('provider_tokens_acquired_total', 'Access tokens installed', ['source'])
        self.token_invalidations = Counter('provider_token_invalidations_total', 'Access tokens invalidated')

        self.ohlc_repairs = Counter('ohlc_payload_repairs_total', 'Malformed OHLC payloads', ['outcome'])

        self.transitions = Counter(
            'recommendation_transitions_total', 'Recommendation lifecycle transitions', ['action']
        )
        self.rejections = Counter(
            'recommendation_rejections_total', 'Rejected lifecycle operations', ['reason']
        )
        self.square_offs = Counter('intraday_square_offs_total', 'Intraday auto square-offs', ['tier'])
        self.scheduler_ticks = Counter('square_off_ticks_total', 'Scheduler ticks', ['in_window'])
        self.scheduler_errors = Counter('square_off_errors_total', 'Per-item square-off failures')

        self.basket_rebalances = Counter('basket_rebalances_total', 'Accepted basket rebalances')
        self.basket_rejections = Counter('basket_rebalance_rejections_total', 'Rejected basket rebalances')

        self.notifications = Counter('notifications_total', 'Outbound notifications', ['outcome'])

    def record_provider_request(self, endpoint: str, outcome: str, latency_seconds: Optional[float] = None):
        self.provider_requests.labels(endpoint=endpoint, outcome=outcome).inc()
        if latency_seconds is not None:
            self.provider_latency.labels(endpoint=endpoint).observe(latency_seconds)

    def record_cache_hit(self):
        self.cache_hits.inc()

    def record_cache_miss(self):
        self.cache_misses.inc()

    def update_cache_size(self, size: int):
        self.cache_size.set(size)

    def record_cache_clear(self):
        self.cache_clears.inc()

    def record_token_acquired(self, source: str):
        self.tokens_acquired.labels(source=source).inc()

    def record_token_invalidated(self):
        self.token_invalidations.inc()

    def record_ohlc_repair(self, outcome: str):
        self.ohlc_repairs.labels(outcome=outcome).inc()

    def record_transition(self, action: str):
        self.transitions.labels(action=action).inc()

    def record_rejection(self, reason: str):
        self.rejections.labels(reason=reason).inc()

    def record_square_off(self, tier: str):
        self.square_offs.labels(tier=tier).inc()

    def record_scheduler_tick(self, in_window: bool):
        self.scheduler_ticks.labels(in_window=str(bool(in_window)).lower()).inc()

    def record_scheduler_error(self):
        self.scheduler_errors.inc()

    def record_basket_rebalance(self, accepted: bool):
        if accepted:
            self.basket_rebalances.inc()
        else:
            self.basket_rejections.inc()

    def record_notification(self, outcome: str):
        self.notifications.labels(outcome=outcome).inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
