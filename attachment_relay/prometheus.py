"""Prometheus metrics exposed by the attachment relay."""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest

from .strategy import DEFAULT_CHUNKED_THRESHOLD, DEFAULT_MULTIPART_THRESHOLD

UPLOAD_SECONDS_BUCKETS = (0.5, 1, 2.5, 5, 10, 20, 30, 45, 60, 120, 300)


def size_class(byte_length: int) -> str:
    """Bucket a file size into ``small`` / ``medium`` / ``large``."""
    if byte_length < DEFAULT_MULTIPART_THRESHOLD:
        return "small"
    if byte_length <= DEFAULT_CHUNKED_THRESHOLD:
        return "medium"
    return "large"


class UploadMetrics:
    """Wrapper around the Prometheus registry used by the relay."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters, gauges and the duration histogram inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.uploads = Counter("relay_uploads_total", "Finished upload entries", ["status"], registry=self.registry)
        self.upload_bytes = Counter("relay_upload_bytes_total", "Bytes stored successfully", registry=self.registry)
        self.strategy = Counter("relay_strategy_total", "Uploads per transfer strategy", ["strategy"], registry=self.registry)
        self.fallback = Counter("relay_fallback_total", "Uploads that went through the fallback path", registry=self.registry)
        self.size_class = Counter("relay_size_class_total", "Uploads per size class", ["size_class"], registry=self.registry)
        self.upload_seconds = Histogram(
            "relay_upload_seconds",
            "Duration of one upload attempt",
            buckets=UPLOAD_SECONDS_BUCKETS,
            registry=self.registry,
        )
        self.pending = Gauge("relay_pending_entries", "Entries waiting in the upload queue", registry=self.registry)

    def inc_strategy(self, strategy):
        """Count one upload attempt made with ``strategy``."""
        self.strategy.labels(strategy=getattr(strategy, "value", strategy)).inc()

    def inc_fallback(self):
        self.fallback.inc()

    def record_success(self, byte_length: int, seconds: float):
        """Record a stored file, its size and how long the attempt took."""
        self.uploads.labels(status="completed").inc()
        self.upload_bytes.inc(byte_length)
        self.size_class.labels(size_class=size_class(byte_length)).inc()
        self.upload_seconds.observe(seconds)

    def record_failure(self, seconds: float):
        self.uploads.labels(status="failed").inc()
        self.upload_seconds.observe(seconds)

    def record_retry(self):
        self.uploads.labels(status="retried").inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending entries."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
