"""Prometheus metrics shared by the service, the worker and the packager."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "crawler_request_count",
    "Number of requests received",
    labelnames=["endpoint", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "crawler_request_latency_seconds",
    "Request latency in seconds",
    labelnames=["endpoint"],
)

JOB_COUNT = Counter(
    "crawler_job_count",
    "Number of jobs processed",
    labelnames=["status"],
)
JOB_DURATION = Histogram(
    "crawler_job_duration_seconds",
    "Job processing duration in seconds",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1200],
)
QUEUE_SIZE = Gauge(
    "crawler_queue_size",
    "Jobs waiting in the queue",
)

PAGE_COUNT = Counter(
    "crawler_page_count",
    "Target pages visited",
    labelnames=["outcome"],  # ok | failed
)
RECORD_COUNT = Counter(
    "crawler_record_count",
    "Extracted records",
    labelnames=["outcome"],  # kept | dropped
)
DOWNLOAD_COUNT = Counter(
    "crawler_download_count",
    "Packaging downloads",
    labelnames=["kind", "outcome"],
)
DETECTION_CANDIDATES = Histogram(
    "crawler_detection_candidates",
    "Candidates returned per region detection",
    buckets=[0, 1, 2, 3, 5, 10, 20],
)
