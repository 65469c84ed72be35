"""Deployment tool adapters behind one Deployer capability."""

from release_pipeline.deploy.base import (
    Deployer,
    DeployerError,
    HealthMetrics,
    TransientInfraError,
)
from release_pipeline.deploy.commands import HelmDeployer, KustomizeDeployer
from release_pipeline.deploy.http import HttpClusterDeployer
from release_pipeline.deploy.prometheus import PrometheusHealthSource
from release_pipeline.deploy.retry import RetryPolicy

__all__ = [
    "Deployer",
    "DeployerError",
    "HealthMetrics",
    "HelmDeployer",
    "HttpClusterDeployer",
    "KustomizeDeployer",
    "PrometheusHealthSource",
    "RetryPolicy",
    "TransientInfraError",
]
