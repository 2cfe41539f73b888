"""OpenTelemetry instruments shared across the pipeline.

Instruments are created against the global proxy meter at import time and
start exporting once ``setup_telemetry`` installs a real meter provider.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import metrics

meter = metrics.get_meter("sniper")

poller_runs = meter.create_counter("poller_runs_total", description="Discovery runs by status")
poller_errors = meter.create_counter("poller_errors_total", description="Discovery failures by error type")
new_items_discovered = meter.create_counter("new_jobs_discovered_total", description="Items reported new by discovery")
schema_drift_errors = meter.create_counter(
    "schema_drift_errors_total",
    description="Catalog responses that did not match the expected shape",
)
catalog_requests = meter.create_counter("graphql_requests_total", description="Catalog requests by operation and status")
catalog_duration = meter.create_histogram("graphql_duration_seconds", unit="s", description="Catalog request duration")

claims_attempted = meter.create_counter("applications_attempted_total", description="Claim attempts that held the lock")
claims_succeeded = meter.create_counter("applications_success_total", description="Successful claims")
claims_failed = meter.create_counter("applications_failure_total", description="Failed claims by reason")
claims_skipped = meter.create_counter("applications_skipped_total", description="Claims skipped on lock contention")
claim_duration = meter.create_histogram("application_duration_seconds", unit="s", description="Claim duration")
workers_active = meter.create_up_down_counter("workers_active", description="Handlers currently running by worker type")

notifications_sent = meter.create_counter("notifications_sent_total", description="Notifications published")
notifications_failed = meter.create_counter("notifications_failure_total", description="Notifications that failed")

session_refreshes = meter.create_counter("session_refreshes_total", description="Session refreshes by type")
session_errors = meter.create_counter("session_errors_total", description="Session failures by type")
identity_rotations = meter.create_counter("identity_rotations_total", description="Identities selected for full login")
challenges_encountered = meter.create_counter("captcha_challenges_total", description="Challenges handed to the solver")

kms_cache_hits = meter.create_counter("kms_cache_hits_total", description="Data key cache hits")
kms_cache_misses = meter.create_counter("kms_cache_misses_total", description="Data key cache misses")

breaker_transitions = meter.create_counter(
    "circuit_breaker_transitions_total",
    description="Circuit breaker state changes by service and target state",
)
retry_failed_attempts = meter.create_counter("retry_failed_attempts_total", description="Failed attempts inside retry")

queue_enqueued = meter.create_counter("queue_enqueued_total", description="Tasks enqueued by queue name")


@contextmanager
def record_duration(histogram, attributes: dict[str, str] | None = None) -> Iterator[None]:
    started_at = time.perf_counter()
    try:
        yield
    finally:
        histogram.record(time.perf_counter() - started_at, attributes or {})
