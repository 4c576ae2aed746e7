"""Centralised Prometheus metric definitions for the betting engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


ROUNDS_CREATED = Counter(
    "betbot_rounds_created_total",
    "Total number of rounds opened for betting",
    labelnames=["kind"],
)

ROUND_TRANSITIONS = Counter(
    "betbot_round_transitions_total",
    "Round status changes written by the lifecycle engine",
    labelnames=["kind", "status"],
)

WAGERS_PLACED = Counter(
    "betbot_wagers_placed_total",
    "Total number of wagers admitted",
    labelnames=["kind"],
)

WAGERS_REJECTED = Counter(
    "betbot_wagers_rejected_total",
    "Wager admissions refused by a business rule",
    labelnames=["kind", "reason"],
)

LEDGER_ADJUSTMENTS = Counter(
    "betbot_ledger_adjustments_total",
    "Balance adjustments applied by the ledger",
    labelnames=["reason"],
)

LEDGER_AUDIT_FAILURES = Counter(
    "betbot_ledger_audit_failures_total",
    "Balance adjustments whose audit row could not be written",
)

BATCH_FAILURES = Counter(
    "betbot_batch_failures_total",
    "Per-wager credits or outcome writes that failed during refund or payout batches",
    labelnames=["operation"],
)

TIMERS_FIRED = Counter(
    "betbot_timers_fired_total",
    "Auto-close timers that reached their deadline",
)

OPERATION_DURATION = Histogram(
    "betbot_operation_duration_seconds",
    "Latency distribution for lifecycle engine operations",
    labelnames=["operation"],
)


__all__ = [
    "BATCH_FAILURES",
    "LEDGER_ADJUSTMENTS",
    "LEDGER_AUDIT_FAILURES",
    "OPERATION_DURATION",
    "ROUNDS_CREATED",
    "ROUND_TRANSITIONS",
    "TIMERS_FIRED",
    "WAGERS_PLACED",
    "WAGERS_REJECTED",
]
