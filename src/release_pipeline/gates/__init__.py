"""Quality and security gate evaluation."""

from release_pipeline.gates.evaluator import (
    GateEvaluator,
    count_by_severity,
    evaluate_policy,
)
from release_pipeline.gates.models import (
    Finding,
    FindingSource,
    GateDecision,
    GatePolicy,
    GateVerdict,
    MissingReportAction,
    Severity,
    SeverityCount,
)

__all__ = [
    "Finding",
    "FindingSource",
    "GateDecision",
    "GateEvaluator",
    "GatePolicy",
    "GateVerdict",
    "MissingReportAction",
    "Severity",
    "SeverityCount",
    "count_by_severity",
    "evaluate_policy",
]
