"""Scanner report readers.

Each scanner reads the JSON report its tool wrote for an artifact and
normalizes it into Findings. Reports live under one directory per
artifact:

    <report_dir>/<artifact key>/trivy-report.json
    <report_dir>/<artifact key>/dependency-check-report.json
    <report_dir>/<artifact key>/sonarqube-issues.json

A report that does not exist (or cannot be parsed) yields None, which the
gate treats as the Unknown state. An empty report yields [].
"""

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import structlog

from release_pipeline.gates.models import Finding, FindingSource, Severity

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def report_key(artifact_ref: str) -> str:
    """Directory name for an artifact's reports.

    Digest-pinned references use the digest hex; anything else is the
    reference with unsafe characters replaced.
    """
    if "@" in artifact_ref:
        digest = artifact_ref.rsplit("@", 1)[1]
        return digest.split(":", 1)[-1]
    return _UNSAFE_CHARS.sub("_", artifact_ref)


@runtime_checkable
class Scanner(Protocol):
    """Source of findings for an artifact."""

    name: str

    async def get_findings(self, artifact_ref: str) -> Optional[List[Finding]]:
        ...


class ReportScanner(ABC):
    """Reads one JSON report per artifact from a directory tree.

    Attributes:
        report_dir: Root directory of per-artifact report directories.
    """

    name = "report"
    report_filename = "report.json"
    source = FindingSource.SAST

    def __init__(self, report_dir: str):
        self.report_dir = Path(report_dir)

    def report_path(self, artifact_ref: str) -> Path:
        return self.report_dir / report_key(artifact_ref) / self.report_filename

    async def get_findings(self, artifact_ref: str) -> Optional[List[Finding]]:
        path = self.report_path(artifact_ref)
        if not path.is_file():
            logger.info(
                "Scanner report not available",
                scanner=self.name,
                artifact_ref=artifact_ref,
                path=str(path),
            )
            return None

        try:
            report = json.loads(path.read_text())
            findings = self.parse(report)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(
                "Unreadable scanner report treated as missing",
                scanner=self.name,
                path=str(path),
                error=str(e),
            )
            return None

        logger.info(
            "Scanner report read",
            scanner=self.name,
            artifact_ref=artifact_ref,
            findings=len(findings),
        )
        return findings

    @abstractmethod
    def parse(self, report: Dict[str, Any]) -> List[Finding]:
        """Normalize a decoded report into findings."""


class TrivyReportScanner(ReportScanner):
    """Container image scan results from ``trivy image --format json``."""

    name = "trivy"
    report_filename = "trivy-report.json"
    source = FindingSource.CONTAINER

    SEVERITY_MAP = {
        "CRITICAL": Severity.CRITICAL,
        "HIGH": Severity.HIGH,
        "MEDIUM": Severity.MEDIUM,
        "LOW": Severity.LOW,
        "UNKNOWN": Severity.LOW,
    }

    def parse(self, report: Dict[str, Any]) -> List[Finding]:
        findings = []
        for result in report.get("Results") or []:
            for vuln in result.get("Vulnerabilities") or []:
                findings.append(
                    Finding(
                        severity=self.SEVERITY_MAP.get(
                            str(vuln.get("Severity", "")).upper(), Severity.LOW
                        ),
                        source=self.source,
                        identifier=vuln["VulnerabilityID"],
                        title=vuln.get("Title") or vuln.get("PkgName"),
                    )
                )
        return findings


class DependencyCheckReportScanner(ReportScanner):
    """Dependency scan results from OWASP Dependency-Check's JSON format."""

    name = "dependency-check"
    report_filename = "dependency-check-report.json"
    source = FindingSource.SCA

    SEVERITY_MAP = {
        "CRITICAL": Severity.CRITICAL,
        "HIGH": Severity.HIGH,
        "MEDIUM": Severity.MEDIUM,
        "MODERATE": Severity.MEDIUM,
        "LOW": Severity.LOW,
        "INFO": Severity.LOW,
    }

    def parse(self, report: Dict[str, Any]) -> List[Finding]:
        findings = []
        for dependency in report.get("dependencies") or []:
            for vuln in dependency.get("vulnerabilities") or []:
                findings.append(
                    Finding(
                        severity=self.SEVERITY_MAP.get(
                            str(vuln.get("severity", "")).upper(), Severity.LOW
                        ),
                        source=self.source,
                        identifier=vuln["name"],
                        title=dependency.get("fileName"),
                    )
                )
        return findings


class SonarQubeReportScanner(ReportScanner):
    """Static analysis issues as returned by SonarQube's issues search API."""

    name = "sonarqube"
    report_filename = "sonarqube-issues.json"
    source = FindingSource.SAST

    SEVERITY_MAP = {
        "BLOCKER": Severity.CRITICAL,
        "CRITICAL": Severity.HIGH,
        "MAJOR": Severity.MEDIUM,
        "MINOR": Severity.LOW,
        "INFO": Severity.LOW,
    }

    def parse(self, report: Dict[str, Any]) -> List[Finding]:
        findings = []
        for issue in report.get("issues") or []:
            if issue.get("status") in ("CLOSED", "RESOLVED"):
                continue
            findings.append(
                Finding(
                    severity=self.SEVERITY_MAP.get(
                        str(issue.get("severity", "")).upper(), Severity.LOW
                    ),
                    source=self.source,
                    identifier=issue.get("rule") or issue["key"],
                    title=issue.get("message"),
                )
            )
        return findings


def default_scanners(report_dir: str) -> List[ReportScanner]:
    return [
        SonarQubeReportScanner(report_dir),
        DependencyCheckReportScanner(report_dir),
        TrivyReportScanner(report_dir),
    ]
