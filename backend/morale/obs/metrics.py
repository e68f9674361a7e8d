"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


REQUEST_COUNTER = Counter(
	"morale_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"morale_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

ACTIVITIES_CREATED = Counter(
	"morale_activities_created_total",
	"Activities created",
	["event_type"],
)

ACTIVITIES_TRANSITIONS = Counter(
	"morale_activities_transitions_total",
	"Activity lifecycle transitions",
	["transition", "trigger"],
)

SWEEP_RUNS = Counter(
	"morale_sweep_runs_total",
	"Due-date sweep invocations",
	["outcome"],
)

SWEEP_ROW_FAILURES = Counter(
	"morale_sweep_row_failures_total",
	"Rows the sweep failed to process",
	["pass_name"],
)

POLL_VOTES = Counter(
	"morale_poll_votes_total",
	"Poll votes recorded",
	["new_option"],
)

VOTE_PURCHASES = Counter(
	"morale_vote_purchases_total",
	"Vote purchase attempts",
	["outcome"],
)

FORM_SUBMISSIONS = Counter(
	"morale_form_submissions_total",
	"Form submission attempts",
	["outcome"],
)

SIDE_EFFECT_FAILURES = Counter(
	"morale_side_effect_failures_total",
	"Best-effort side effects that failed",
	["kind"],
)


def observe_request(route: str, method: str, status_code: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status_code)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_activity_created(event_type: str) -> None:
	ACTIVITIES_CREATED.labels(event_type=event_type).inc()


def inc_transition(transition: str, trigger: str, count: int = 1) -> None:
	if count <= 0:
		return
	ACTIVITIES_TRANSITIONS.labels(transition=transition, trigger=trigger).inc(count)


def inc_sweep_run(outcome: str) -> None:
	SWEEP_RUNS.labels(outcome=outcome).inc()


def inc_sweep_row_failure(pass_name: str) -> None:
	SWEEP_ROW_FAILURES.labels(pass_name=pass_name).inc()


def inc_poll_vote(*, new_option: bool) -> None:
	POLL_VOTES.labels(new_option="yes" if new_option else "no").inc()


def inc_vote_purchase(outcome: str) -> None:
	VOTE_PURCHASES.labels(outcome=outcome).inc()


def inc_form_submission(outcome: str) -> None:
	FORM_SUBMISSIONS.labels(outcome=outcome).inc()


def inc_side_effect_failure(kind: str) -> None:
	SIDE_EFFECT_FAILURES.labels(kind=kind).inc()
