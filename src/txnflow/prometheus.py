"""Prometheus metrics of the ingestion pipeline.

Metrics are always collected; the HTTP exporter is started by `txnflow run` only when `TXNFLOW_METRICS_PORT` is set.
"""

import logging

from prometheus_client import Counter
from prometheus_client import Histogram
from prometheus_client import start_http_server

_logger = logging.getLogger(__name__)

_transitions = Counter(
    'txnflow_transitions_total',
    'Number of status transitions by new status',
    ['status'],
)
_rpc_requests = Counter(
    'txnflow_rpc_requests_total',
    'Number of JSON-RPC requests by endpoint',
    ['url'],
)
_rpc_time = Histogram(
    'txnflow_rpc_time_in_requests_seconds',
    'Time spent in JSON-RPC requests by endpoint',
    ['url'],
)
_http_errors = Counter(
    'txnflow_http_errors_total',
    'Number of HTTP errors by endpoint and status; status 0 means no response',
    ['url', 'status'],
)
_normalization_errors = Counter(
    'txnflow_normalization_errors_total',
    'Number of fields left unset because they failed to decode',
    ['field'],
)
_batch_size = Histogram(
    'txnflow_batch_size',
    'Number of transactions picked per tick',
    buckets=(0, 1, 2, 5, 10, 20, 50, 100),
)
_batch_duration = Histogram(
    'txnflow_batch_duration_seconds',
    'Time spent processing a batch',
)


class Metrics:
    @classmethod
    def set_transition(cls, status: str) -> None:
        _transitions.labels(status=status).inc()

    @classmethod
    def set_rpc_request(cls, url: str, duration: float) -> None:
        _rpc_requests.labels(url=url).inc()
        _rpc_time.labels(url=url).observe(duration)

    @classmethod
    def set_http_error(cls, url: str, status: int) -> None:
        _http_errors.labels(url=url, status=status).inc()

    @classmethod
    def set_normalization_error(cls, field: str) -> None:
        _normalization_errors.labels(field=field).inc()

    @classmethod
    def set_batch(cls, size: int, duration: float) -> None:
        _batch_size.observe(size)
        _batch_duration.observe(duration)


def start_exporter(port: int, host: str = '0.0.0.0') -> None:
    """Start Prometheus exporter in a background thread"""
    _logger.info('Starting Prometheus exporter on %s:%s', host, port)
    start_http_server(port, addr=host)
