"""
Prometheus metrics definitions for the storage pipeline.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram, Gauge

# Request metrics
storage_requests_total = Counter(
    'storage_requests_total',
    'Total authenticated storage requests that received a response',
    ['method', 'status']
)

storage_request_retries_total = Counter(
    'storage_request_retries_total',
    'Total request attempts discarded and retried',
    ['operation']
)

# Error metrics
storage_errors_total = Counter(
    'storage_errors_total',
    'Total terminal storage errors',
    ['error_type']
)

# Byte metrics
storage_bytes_transferred_total = Counter(
    'storage_bytes_transferred_total',
    'Total object bytes moved through streams',
    ['direction']
)

# Bulk delete metrics
storage_deletes_in_flight = Gauge(
    'storage_deletes_in_flight',
    'Number of delete requests currently in flight'
)

# Operation metrics
storage_operation_duration_seconds = Histogram(
    'storage_operation_duration_seconds',
    'Storage operation duration in seconds',
    ['operation', 'status'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0]
)
