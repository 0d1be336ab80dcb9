# Prometheus metrics for the target helper

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from .logging import get_logger

logger = get_logger(__name__)

# ===== Job metrics =====
jobs_total = Counter(
    "target_jobs_total",
    "Total target jobs finished",
    ["job_type", "outcome"],
)

job_duration_seconds = Histogram(
    "target_job_duration_seconds",
    "Wall time from dispatch to terminal outcome",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600, 7200),
)

jobs_in_flight = Gauge(
    "target_jobs_in_flight",
    "Jobs currently being handled",
)

pipeline_step_failures_total = Counter(
    "target_pipeline_step_failures_total",
    "Post-processing pipeline step failures",
    ["step"],
)

# ===== Signing & sharing =====
signatures_total = Counter(
    "target_signatures_total",
    "Signature attempts on result documents",
    ["outcome"],  # signed | skipped
)

share_jobs_posted_total = Counter(
    "target_share_jobs_posted_total",
    "Share jobs posted to trellis-shares",
    ["doctype"],
)

# ===== Ingestion =====
ingestion_submissions_total = Counter(
    "target_ingestion_submissions_total",
    "Jobs submitted by the ingestion watchers",
    ["source"],
)

ingestion_skips_total = Counter(
    "target_ingestion_skips_total",
    "Items seen by the ingestion watchers but not submitted",
    ["source", "reason"],
)

broken_job_links_removed_total = Counter(
    "target_broken_job_links_removed_total",
    "Broken pending job links removed by the reaper",
)

active_watches = Gauge(
    "target_active_watches",
    "Open watches on the resource store",
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on the given port"""
    start_http_server(port)
    logger.info("metrics_server_started", port=port)
