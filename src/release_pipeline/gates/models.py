"""Gate policy and verdict models.

This module defines the data models for quality and security gates:
- Severity / FindingSource: Normalized finding classification
- Finding: One issue reported by a SAST, SCA or container scanner
- GatePolicy: Per-stage maximum allowed count for each severity
- GateVerdict: Immutable result of applying a policy to findings

A missing scanner report is not the same as an empty one. Callers pass
``None`` for the findings to signal that at least one report is absent,
and the policy decides what that means through ``on_missing_report``.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    """Normalized finding severity, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FindingSource(str, Enum):
    """Scanner family that produced a finding.

    Attributes:
        SAST: Static analysis of the source (e.g. SonarQube).
        SCA: Dependency / software composition analysis (e.g. OWASP
            Dependency-Check).
        CONTAINER: Container image scan (e.g. Trivy).
    """

    SAST = "sast"
    SCA = "sca"
    CONTAINER = "container"


class MissingReportAction(str, Enum):
    """What a gate does when a scanner produced no report."""

    FAIL = "fail"
    PASS = "pass"


class GateDecision(str, Enum):
    """Outcome of a gate evaluation."""

    PASS = "pass"
    FAIL = "fail"


class Finding(BaseModel):
    """A single normalized scanner finding.

    Attributes:
        severity: Normalized severity.
        source: Scanner family that reported it.
        identifier: Scanner-specific identifier (CVE id, rule key, ...).
        title: Optional short human-readable description.
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    source: FindingSource
    identifier: str = Field(..., min_length=1)
    title: Optional[str] = None


def _default_max_counts() -> Dict[Severity, int]:
    return {Severity.CRITICAL: 0}


class GatePolicy(BaseModel):
    """Pass/fail policy for one stage.

    Severities absent from ``max_counts`` are unlimited. The default policy
    tolerates no critical findings and fails closed when a report is
    missing.

    Attributes:
        name: Policy name recorded on every verdict.
        max_counts: Maximum allowed number of findings per severity.
        on_missing_report: Verdict to produce when a scanner report is absent.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="default", min_length=1)
    max_counts: Dict[Severity, int] = Field(default_factory=_default_max_counts)
    on_missing_report: MissingReportAction = MissingReportAction.FAIL

    @field_validator("max_counts")
    @classmethod
    def validate_max_counts(cls, v: Dict[Severity, int]) -> Dict[Severity, int]:
        """Reject negative limits."""
        for severity, limit in v.items():
            if limit < 0:
                raise ValueError(
                    f"max count for {severity.value} must be >= 0, got {limit}"
                )
        return v


class SeverityCount(BaseModel):
    """A severity whose observed count exceeded the policy maximum."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    count: int = Field(..., ge=0)
    max_allowed: int = Field(..., ge=0)


class GateVerdict(BaseModel):
    """Immutable result of evaluating a gate for one stage.

    Attributes:
        decision: PASS or FAIL.
        violations: Severities whose counts triggered a FAIL.
        policy_name: Name of the policy that was applied.
        report_missing: True if the verdict was made without a full report.
        reason: Human-readable explanation.
        evaluated_at: When the verdict was produced (UTC).
    """

    model_config = ConfigDict(frozen=True)

    decision: GateDecision
    violations: List[SeverityCount] = Field(default_factory=list)
    policy_name: str
    report_missing: bool = False
    reason: str = ""
    evaluated_at: datetime

    @property
    def passed(self) -> bool:
        return self.decision == GateDecision.PASS
