"""Tests for gate policy evaluation."""

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

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
    MissingReportAction,
    Severity,
)

EVALUATED_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

findings_strategy = st.lists(
    st.builds(
        Finding,
        severity=st.sampled_from(list(Severity)),
        source=st.sampled_from(list(FindingSource)),
        identifier=st.text(
            alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-", min_size=1, max_size=20
        ),
    ),
    max_size=30,
)

policy_strategy = st.builds(
    GatePolicy,
    name=st.sampled_from(["default", "strict", "lenient"]),
    max_counts=st.dictionaries(
        st.sampled_from(list(Severity)), st.integers(min_value=0, max_value=5)
    ),
    on_missing_report=st.sampled_from(list(MissingReportAction)),
)


def _finding(severity: Severity, identifier: str = "CVE-2026-0001") -> Finding:
    return Finding(
        severity=severity, source=FindingSource.CONTAINER, identifier=identifier
    )


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(
    findings=st.one_of(st.none(), findings_strategy),
    policy=policy_strategy,
)
def test_evaluation_is_deterministic(findings, policy):
    """Identical findings and policy always produce identical verdicts."""
    first = evaluate_policy(policy, findings, EVALUATED_AT)
    second = evaluate_policy(policy, findings, EVALUATED_AT)

    assert first == second


@settings(max_examples=100)
@given(findings=findings_strategy, policy=policy_strategy)
def test_fail_exactly_when_a_limit_is_exceeded(findings, policy):
    counts = count_by_severity(findings)
    exceeded = {
        severity
        for severity, limit in policy.max_counts.items()
        if counts[severity] > limit
    }

    verdict = evaluate_policy(policy, findings, EVALUATED_AT)

    assert verdict.passed == (not exceeded)
    assert {v.severity for v in verdict.violations} == exceeded


# ---------------------------------------------------------------------------
# Examples
# ---------------------------------------------------------------------------


class TestEvaluatePolicy:
    def test_single_critical_fails_zero_tolerance_policy(self):
        policy = GatePolicy(max_counts={Severity.CRITICAL: 0})

        verdict = evaluate_policy(policy, [_finding(Severity.CRITICAL)], EVALUATED_AT)

        assert verdict.decision == GateDecision.FAIL
        assert verdict.violations[0].severity == Severity.CRITICAL
        assert verdict.violations[0].count == 1
        assert "critical=1 (max 0)" in verdict.reason

    def test_unlimited_severities_never_fail(self):
        policy = GatePolicy(max_counts={Severity.CRITICAL: 0})
        findings = [_finding(Severity.LOW, f"L-{i}") for i in range(50)]

        verdict = evaluate_policy(policy, findings, EVALUATED_AT)

        assert verdict.passed
        assert verdict.reason == "50 findings within policy default"

    def test_empty_report_passes(self):
        verdict = evaluate_policy(GatePolicy(), [], EVALUATED_AT)

        assert verdict.passed
        assert verdict.report_missing is False

    def test_missing_report_fails_closed_by_default(self):
        verdict = evaluate_policy(GatePolicy(), None, EVALUATED_AT)

        assert verdict.decision == GateDecision.FAIL
        assert verdict.report_missing is True

    def test_missing_report_can_pass_when_configured(self):
        policy = GatePolicy(on_missing_report=MissingReportAction.PASS)

        verdict = evaluate_policy(policy, None, EVALUATED_AT)

        assert verdict.passed
        assert verdict.report_missing is True

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            GatePolicy(max_counts={Severity.HIGH: -1})


class TestGateEvaluator:
    def test_uses_stage_policy_and_clock(self):
        strict = GatePolicy(name="strict", max_counts={Severity.HIGH: 0})
        evaluator = GateEvaluator({"production": strict}, clock=lambda: EVALUATED_AT)

        verdict = evaluator.evaluate("production", [_finding(Severity.HIGH)])

        assert verdict.policy_name == "strict"
        assert verdict.evaluated_at == EVALUATED_AT
        assert not verdict.passed

    def test_unknown_stage_falls_back_to_default_policy(self):
        evaluator = GateEvaluator({}, clock=lambda: EVALUATED_AT)

        verdict = evaluator.evaluate("dev", [_finding(Severity.HIGH)])

        assert verdict.policy_name == "default"
        assert verdict.passed

    def test_explicit_policy_overrides_configured_one(self):
        evaluator = GateEvaluator(
            {"dev": GatePolicy(name="configured")}, clock=lambda: EVALUATED_AT
        )

        verdict = evaluator.evaluate("dev", [], policy=GatePolicy(name="captured"))

        assert verdict.policy_name == "captured"
