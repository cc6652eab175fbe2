"""
Telemetry: Prometheus metrics and Sentry error tracking.
"""

from matchday.telemetry.metrics import get_metrics_text, record_job_run
from matchday.telemetry.sentry import capture_exception, init_sentry, sentry_job_context

__all__ = [
    "get_metrics_text",
    "record_job_run",
    "capture_exception",
    "init_sentry",
    "sentry_job_context",
]
