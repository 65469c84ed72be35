"""Dependency wiring shared by the HTTP service and the CLI.

open_services() builds every collaborator from PipelineSettings, yields them
as a PipelineServices bundle and closes connections and HTTP clients on exit.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import structlog

from release_pipeline.approval.coordinator import ApprovalCoordinator
from release_pipeline.config import DeployerKind, PipelineSettings
from release_pipeline.definition import PipelineDefinition, load_pipeline_definition
from release_pipeline.deploy.base import Deployer
from release_pipeline.deploy.commands import HelmDeployer, KustomizeDeployer
from release_pipeline.deploy.http import HttpClusterDeployer
from release_pipeline.deploy.prometheus import PrometheusHealthSource
from release_pipeline.deploy.retry import RetryPolicy
from release_pipeline.events.emitter import EventEmitter, create_event_emitter
from release_pipeline.gates.evaluator import GateEvaluator
from release_pipeline.locks import EnvironmentLeaseManager
from release_pipeline.orchestrator import PipelineOrchestrator
from release_pipeline.rollback.manager import RollbackManager
from release_pipeline.rollout.controller import RolloutController, RolloutPolicy
from release_pipeline.scheduler import ReconcileLoop
from release_pipeline.sources.artifacts import (
    ArtifactResolver,
    RegistryArtifactResolver,
    StaticArtifactResolver,
)
from release_pipeline.sources.scanners import default_scanners
from release_pipeline.state.machine import PipelineStateMachine
from release_pipeline.state.memory import InMemoryStateRepository
from release_pipeline.state.repository import PostgresStateRepository

logger = structlog.get_logger(__name__)

Repository = Union[PostgresStateRepository, InMemoryStateRepository]


@dataclass
class PipelineServices:
    """Fully wired pipeline components."""

    settings: PipelineSettings
    definition: PipelineDefinition
    repository: Repository
    deployer: Deployer
    artifact_resolver: ArtifactResolver
    event_emitter: EventEmitter
    orchestrator: PipelineOrchestrator
    reconcile_loop: ReconcileLoop

    async def is_ready(self) -> bool:
        try:
            return await self.repository.health_check()
        except Exception as e:
            logger.warning("Readiness check failed", error=str(e))
            return False


def create_repository(settings: PipelineSettings) -> Repository:
    if settings.database_url:
        return PostgresStateRepository(settings.database_url)
    logger.warning(
        "No database configured; using in-memory state, runs will not survive "
        "a restart"
    )
    return InMemoryStateRepository()


def create_deployer(settings: PipelineSettings) -> Deployer:
    """Build the deployer adapter selected by ``settings.deployer``."""
    retry_policy = RetryPolicy(
        max_attempts=settings.deploy_max_attempts,
        base_delay=settings.deploy_retry_base_delay_seconds,
    )

    if settings.deployer == DeployerKind.HTTP:
        return HttpClusterDeployer(
            base_url=settings.cluster_api_url,
            token=settings.cluster_api_token,
            retry_policy=retry_policy,
        )

    health_source = PrometheusHealthSource(base_url=settings.prometheus_url)

    if settings.deployer == DeployerKind.HELM:
        return HelmDeployer(
            chart_path=settings.helm_chart_path,
            release_name=settings.helm_release_name,
            health_source=health_source,
            helm_path=settings.helm_path,
            timeout_seconds=settings.deploy_timeout_seconds,
            retry_policy=retry_policy,
        )

    return KustomizeDeployer(
        overlays_dir=settings.kustomize_overlays_dir,
        image_name=settings.kustomize_image_name,
        health_source=health_source,
        canary_image_name=settings.kustomize_canary_image_name,
        kustomize_path=settings.kustomize_path,
        kubectl_path=settings.kubectl_path,
        timeout_seconds=settings.deploy_timeout_seconds,
        retry_policy=retry_policy,
    )


def create_artifact_resolver(settings: PipelineSettings) -> ArtifactResolver:
    if settings.registry_url:
        return RegistryArtifactResolver(
            registry_url=settings.registry_url,
            token=settings.registry_token,
        )
    logger.warning(
        "No registry configured; only digest-pinned references will resolve"
    )
    return StaticArtifactResolver()


def build_services(
    settings: PipelineSettings,
    definition: Optional[PipelineDefinition] = None,
    repository: Optional[Repository] = None,
    deployer: Optional[Deployer] = None,
    artifact_resolver: Optional[ArtifactResolver] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> PipelineServices:
    """Wire the orchestrator and its collaborators.

    Any collaborator passed in is used instead of the one the settings
    describe.
    """
    definition = definition or load_pipeline_definition(
        settings.pipeline_definition_path
    )
    repository = repository or create_repository(settings)
    deployer = deployer or create_deployer(settings)
    artifact_resolver = artifact_resolver or create_artifact_resolver(settings)
    event_emitter = event_emitter or create_event_emitter(
        settings.sink_types, settings.notification_webhook_url
    )

    rollout_policy = RolloutPolicy(
        absolute_error_threshold=settings.rollout_absolute_error_threshold,
        relative_multiple=settings.rollout_relative_multiple,
        min_sample_size=settings.rollout_min_sample_size,
        observation_window=settings.rollout_observation_window,
        max_window_extensions=settings.rollout_max_window_extensions,
        sample_window_seconds=float(settings.poll_interval_seconds),
    )

    orchestrator = PipelineOrchestrator(
        state_machine=PipelineStateMachine(repository=repository),
        definition=definition,
        artifact_resolver=artifact_resolver,
        scanners=default_scanners(settings.scanner_report_dir),
        gate_evaluator=GateEvaluator(
            {stage.name: stage.gate_policy for stage in definition.stages}
        ),
        approval_coordinator=ApprovalCoordinator(event_emitter),
        rollout_controller=RolloutController(deployer, policy=rollout_policy),
        rollback_manager=RollbackManager(
            repository,
            deployer,
            event_emitter,
            retry_policy=RetryPolicy(
                max_attempts=settings.rollback_max_attempts,
                base_delay=settings.rollback_base_delay_seconds,
            ),
        ),
        lease_manager=EnvironmentLeaseManager(
            repository, ttl_seconds=settings.lease_ttl_seconds
        ),
        event_emitter=event_emitter,
        gate_timeout_seconds=settings.gate_timeout_seconds,
    )

    return PipelineServices(
        settings=settings,
        definition=definition,
        repository=repository,
        deployer=deployer,
        artifact_resolver=artifact_resolver,
        event_emitter=event_emitter,
        orchestrator=orchestrator,
        reconcile_loop=ReconcileLoop(
            orchestrator, poll_interval=settings.poll_interval_seconds
        ),
    )


@asynccontextmanager
async def open_services(
    settings: PipelineSettings, **overrides
) -> AsyncIterator[PipelineServices]:
    """Build services, connect the store, and clean everything up on exit."""
    services = build_services(settings, **overrides)

    if isinstance(services.repository, PostgresStateRepository):
        await services.repository.connect()

    try:
        yield services
    finally:
        services.reconcile_loop.stop()
        await services.event_emitter.close()
        await services.deployer.close()
        close_resolver = getattr(services.artifact_resolver, "close", None)
        if close_resolver is not None:
            await close_resolver()
        if isinstance(services.repository, PostgresStateRepository):
            await services.repository.disconnect()
