"""Gate evaluation.

Applies a stage's GatePolicy to normalized findings. Evaluation is a pure
function of (findings, policy): the only input that is not data is the
evaluation timestamp, which is injected so identical inputs always produce
identical verdicts.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, Mapping, Optional, Sequence

import structlog

from release_pipeline.clock import Clock, utcnow
from release_pipeline.gates.models import (
    Finding,
    GateDecision,
    GatePolicy,
    GateVerdict,
    MissingReportAction,
    Severity,
    SeverityCount,
)

logger = structlog.get_logger(__name__)


def count_by_severity(findings: Sequence[Finding]) -> Dict[Severity, int]:
    """Count findings per severity; every severity is present in the result."""
    counts = Counter(finding.severity for finding in findings)
    return {severity: counts.get(severity, 0) for severity in Severity}


def evaluate_policy(
    policy: GatePolicy,
    findings: Optional[Sequence[Finding]],
    evaluated_at: datetime,
) -> GateVerdict:
    """Apply a policy to findings.

    Args:
        policy: The stage's gate policy.
        findings: Normalized findings, or None when a report is missing.
        evaluated_at: Timestamp to record on the verdict.

    Returns:
        GateVerdict with FAIL if any severity exceeds its maximum, or if the
        report is missing and the policy fails closed.
    """
    if findings is None:
        if policy.on_missing_report == MissingReportAction.FAIL:
            return GateVerdict(
                decision=GateDecision.FAIL,
                policy_name=policy.name,
                report_missing=True,
                reason="scanner report missing; policy fails closed",
                evaluated_at=evaluated_at,
            )
        return GateVerdict(
            decision=GateDecision.PASS,
            policy_name=policy.name,
            report_missing=True,
            reason="scanner report missing; policy allows missing reports",
            evaluated_at=evaluated_at,
        )

    counts = count_by_severity(findings)
    violations = [
        SeverityCount(
            severity=severity,
            count=counts[severity],
            max_allowed=policy.max_counts[severity],
        )
        for severity in Severity
        if severity in policy.max_counts
        and counts[severity] > policy.max_counts[severity]
    ]

    if violations:
        summary = ", ".join(
            f"{v.severity.value}={v.count} (max {v.max_allowed})"
            for v in violations
        )
        return GateVerdict(
            decision=GateDecision.FAIL,
            violations=violations,
            policy_name=policy.name,
            reason=f"policy {policy.name} exceeded: {summary}",
            evaluated_at=evaluated_at,
        )

    return GateVerdict(
        decision=GateDecision.PASS,
        policy_name=policy.name,
        reason=f"{len(findings)} findings within policy {policy.name}",
        evaluated_at=evaluated_at,
    )


class GateEvaluator:
    """Evaluates stage gates against configured policies.

    Attributes:
        policies: Gate policy per stage name.
        default_policy: Policy used for stages without an explicit entry.
    """

    def __init__(
        self,
        policies: Mapping[str, GatePolicy],
        default_policy: Optional[GatePolicy] = None,
        clock: Clock = utcnow,
    ):
        self.policies = dict(policies)
        self.default_policy = default_policy or GatePolicy()
        self._clock = clock

    def policy_for(self, stage_name: str) -> GatePolicy:
        return self.policies.get(stage_name, self.default_policy)

    def evaluate(
        self,
        stage_name: str,
        findings: Optional[Sequence[Finding]],
        evaluated_at: Optional[datetime] = None,
        policy: Optional[GatePolicy] = None,
    ) -> GateVerdict:
        """Evaluate the gate for a stage.

        Args:
            stage_name: Stage whose policy applies.
            findings: Normalized findings, or None for a missing report.
            evaluated_at: Optional timestamp; defaults to the clock.
            policy: Policy captured with the run; overrides the configured one.

        Returns:
            The gate verdict.
        """
        policy = policy or self.policy_for(stage_name)
        verdict = evaluate_policy(
            policy, findings, evaluated_at or self._clock()
        )

        logger.info(
            "Gate evaluated",
            stage=stage_name,
            policy=policy.name,
            decision=verdict.decision.value,
            report_missing=verdict.report_missing,
            finding_count=None if findings is None else len(findings),
        )
        return verdict
