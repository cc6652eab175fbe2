"""
Prometheus metrics for the matchday core.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

ALLOWED LABELS (bounded sets):
- job:          periodic task names (reconcile, live_poll, recovery, ...)
- kind:         queue job kinds (data_refresh, forecast_generate, live_poll_trigger)
- event/status: short enums listed next to each helper
- provider:     "api_football", "forecast"
- endpoint:     "fixtures_live", "fixtures_ids", "chat"

FORBIDDEN AS LABELS: fixture ids, predictor ids/names, URLs, error messages.
Use logs for those.
"""

import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# PERIODIC JOBS
# =============================================================================

job_runs_total = Counter(
    "matchday_job_runs_total",
    "Periodic task executions",
    ["job", "status"],
)

job_duration_ms = Histogram(
    "matchday_job_duration_ms",
    "Periodic task duration in milliseconds",
    ["job"],
    buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000],
)

job_last_success_timestamp = Gauge(
    "matchday_job_last_success_timestamp",
    "Unix timestamp of the last successful run",
    ["job"],
)

# =============================================================================
# LIVE POLLER / SETTLEMENT
# =============================================================================

poll_cycles_total = Counter(
    "matchday_poll_cycles_total",
    "Live poll cycles by result",
    ["result"],  # idle, polled, skipped, error
)

poll_external_calls_total = Counter(
    "matchday_poll_external_calls_total",
    "External live-data calls issued by the poller",
    ["call"],  # live, by_ids
)

poll_fixture_errors_total = Counter(
    "matchday_poll_fixture_errors_total",
    "Per-fixture failures inside a poll cycle",
)

settlements_total = Counter(
    "matchday_settlements_total",
    "Fixture settlement attempts",
    ["status"],  # settled, rescored, already_settled, no_predictions, error
)

predictions_scored_total = Counter(
    "matchday_predictions_scored_total",
    "Predictions scored",
)

# =============================================================================
# PREDICTOR HEALTH
# =============================================================================

predictor_events_total = Counter(
    "matchday_predictor_events_total",
    "Predictor health events",
    ["event"],  # success, failure, disabled, recovered, manual_disable, manual_enable
)

# =============================================================================
# QUEUE / SCHEDULER
# =============================================================================

queue_events_total = Counter(
    "matchday_queue_events_total",
    "Queue job lifecycle events",
    ["kind", "event"],  # enqueued, duplicate, completed, retried, dead, removed, stalled
)

dead_letter_size = Gauge(
    "matchday_dead_letter_size",
    "Jobs currently in the dead-letter list",
)

scheduler_enqueue_failures_total = Counter(
    "matchday_scheduler_enqueue_failures_total",
    "Enqueue calls that failed (retried on next reconcile)",
    ["kind"],
)

# =============================================================================
# CACHE / PROVIDERS
# =============================================================================

cache_invalidations_total = Counter(
    "matchday_cache_invalidations_total",
    "Cache invalidation calls",
    ["reason", "status"],
)

provider_requests_total = Counter(
    "matchday_provider_requests_total",
    "Requests to external providers",
    ["provider", "endpoint", "status_code"],
)

provider_latency_ms = Histogram(
    "matchday_provider_latency_ms",
    "External request latency in milliseconds",
    ["provider", "endpoint"],
    buckets=[25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000],
)

provider_circuit_open = Gauge(
    "matchday_provider_circuit_open",
    "Circuit breaker state (1=open/tripped, 0=closed/healthy)",
    ["provider"],
)

provider_consecutive_failures = Gauge(
    "matchday_provider_consecutive_failures",
    "Current consecutive failure count for circuit breaker",
    ["provider"],
)


# =============================================================================
# HELPERS (never raise)
# =============================================================================


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def record_poll_cycle(result: str, live_calls: int = 0, id_calls: int = 0, fixture_errors: int = 0) -> None:
    try:
        poll_cycles_total.labels(result=result).inc()
        if live_calls:
            poll_external_calls_total.labels(call="live").inc(live_calls)
        if id_calls:
            poll_external_calls_total.labels(call="by_ids").inc(id_calls)
        if fixture_errors:
            poll_fixture_errors_total.inc(fixture_errors)
    except Exception as e:
        logger.warning(f"Failed to record poll metric: {e}")


def record_settlement(status: str, scored: int = 0) -> None:
    try:
        settlements_total.labels(status=status).inc()
        if scored:
            predictions_scored_total.inc(scored)
    except Exception as e:
        logger.warning(f"Failed to record settlement metric: {e}")


def record_predictor_event(event: str, count: int = 1) -> None:
    try:
        predictor_events_total.labels(event=event).inc(count)
    except Exception as e:
        logger.warning(f"Failed to record predictor metric: {e}")


def record_queue_event(kind: str, event: str) -> None:
    try:
        queue_events_total.labels(kind=kind, event=event).inc()
    except Exception as e:
        logger.warning(f"Failed to record queue metric: {e}")


def set_dead_letter_size(size: int) -> None:
    try:
        dead_letter_size.set(size)
    except Exception as e:
        logger.warning(f"Failed to set dead letter gauge: {e}")


def record_enqueue_failure(kind: str) -> None:
    try:
        scheduler_enqueue_failures_total.labels(kind=kind).inc()
    except Exception as e:
        logger.warning(f"Failed to record enqueue failure metric: {e}")


def record_cache_invalidation(reason: str, status: str) -> None:
    try:
        cache_invalidations_total.labels(reason=reason, status=status).inc()
    except Exception as e:
        logger.warning(f"Failed to record cache metric: {e}")


def record_provider_request(provider: str, endpoint: str, status_code: int, latency_ms: float) -> None:
    try:
        provider_requests_total.labels(
            provider=provider, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        provider_latency_ms.labels(provider=provider, endpoint=endpoint).observe(latency_ms)
    except Exception as e:
        logger.warning(f"Failed to record provider metric: {e}")


def set_circuit_breaker_state(provider: str, is_open: bool, consecutive_failures: int) -> None:
    try:
        provider_circuit_open.labels(provider=provider).set(1 if is_open else 0)
        provider_consecutive_failures.labels(provider=provider).set(consecutive_failures)
    except Exception as e:
        logger.warning(f"Failed to set circuit breaker metric: {e}")


def get_metrics_text() -> tuple[str, str]:
    """
    Generate Prometheus metrics text output.

    Returns:
        Tuple of (content, content_type)
    """
    return generate_latest(REGISTRY).decode("utf-8"), CONTENT_TYPE_LATEST
