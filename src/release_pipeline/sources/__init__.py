"""Collaborator adapters for artifacts and scanner findings."""

from release_pipeline.sources.artifacts import (
    ArtifactInfo,
    ArtifactResolutionError,
    ArtifactResolver,
    RegistryArtifactResolver,
    StaticArtifactResolver,
)
from release_pipeline.sources.scanners import (
    DependencyCheckReportScanner,
    Scanner,
    SonarQubeReportScanner,
    TrivyReportScanner,
    default_scanners,
)

__all__ = [
    "ArtifactInfo",
    "ArtifactResolutionError",
    "ArtifactResolver",
    "DependencyCheckReportScanner",
    "RegistryArtifactResolver",
    "Scanner",
    "SonarQubeReportScanner",
    "StaticArtifactResolver",
    "TrivyReportScanner",
    "default_scanners",
]
