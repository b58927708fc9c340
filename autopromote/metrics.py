"""
Prometheus metrics for the promotion pipeline.

Defines and registers all metrics on a custom CollectorRegistry so that
test runs in the same process do not conflict with one another. The host
process decides whether and how to expose ``REGISTRY``.

Metrics:
  - operations_classified_total  counter  (classification)
  - candidates_detected_total    counter
  - gate_decisions_total         counter  (approved)
  - dry_runs_total               counter  (passed)
  - drift_checks_total           counter  (matched)
  - demotions_total              counter
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, generate_latest

REGISTRY: CollectorRegistry = CollectorRegistry()

OPERATIONS_CLASSIFIED_TOTAL: Counter = Counter(
    "operations_classified_total",
    "Operations scored by the determinism analyzer.",
    ["classification"],
    registry=REGISTRY,
)

CANDIDATES_DETECTED_TOTAL: Counter = Counter(
    "candidates_detected_total",
    "Promotion candidates produced by the detector.",
    registry=REGISTRY,
)

GATE_DECISIONS_TOTAL: Counter = Counter(
    "gate_decisions_total",
    "Gatekeeper decisions, by outcome.",
    ["approved"],
    registry=REGISTRY,
)

DRY_RUNS_TOTAL: Counter = Counter(
    "dry_runs_total",
    "Script dry runs, by outcome.",
    ["passed"],
    registry=REGISTRY,
)

DRIFT_CHECKS_TOTAL: Counter = Counter(
    "drift_checks_total",
    "Live drift checks of promoted scripts.",
    ["matched"],
    registry=REGISTRY,
)

DEMOTIONS_TOTAL: Counter = Counter(
    "demotions_total",
    "Promoted scripts demoted after sustained drift.",
    registry=REGISTRY,
)


def render_metrics() -> bytes:
    """Return the registry in Prometheus text exposition format."""
    return generate_latest(REGISTRY)
