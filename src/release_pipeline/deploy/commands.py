"""Deployers that drive Helm or Kustomize as subprocesses.

Both tools are wrapped behind the same Deployer capability so the
orchestrator never branches on the deployment tool. Health comes from
Prometheus.

A traffic shift is one or more commands. A command that times out is a
transient failure: the whole shift is re-run with exponential backoff, and
TransientInfraError is raised only once the retry budget is spent. Commands
that cannot start or exit non-zero fail immediately.
"""

import asyncio
from abc import abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog
import yaml

from release_pipeline.deploy.base import (
    Deployer,
    DeployerError,
    HealthMetrics,
    TransientInfraError,
    validate_weight,
)
from release_pipeline.deploy.prometheus import PrometheusHealthSource
from release_pipeline.deploy.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class CommandDeployer(Deployer):
    """Base class for deployers that shell out to a CLI tool.

    Attributes:
        health_source: Where health metrics come from.
        timeout_seconds: Maximum run time of each command.
        retry_policy: Attempts per traffic shift.
    """

    def __init__(
        self,
        health_source: PrometheusHealthSource,
        timeout_seconds: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.health_source = health_source
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def build_commands(
        self, environment: str, artifact_ref: str, weight: int
    ) -> List[Sequence[str]]:
        """Commands that apply the traffic weight, run in order."""

    def working_directory(self, environment: str) -> Optional[Path]:
        return None

    def prepare(self, environment: str, artifact_ref: str, weight: int) -> None:
        """Write any files the commands read. Runs before every attempt."""

    async def set_traffic_weight(
        self, environment: str, artifact_ref: str, weight: int
    ) -> None:
        validate_weight(weight)
        cwd = self.working_directory(environment)
        attempts = self.retry_policy.max_attempts

        for attempt in range(attempts):
            try:
                self.prepare(environment, artifact_ref, weight)
                for argv in self.build_commands(environment, artifact_ref, weight):
                    await self._run(argv, environment, cwd)
                return
            except TransientInfraError as e:
                if attempt == attempts - 1:
                    logger.error(
                        "Traffic shift failed after all retries",
                        environment=environment,
                        weight=weight,
                        max_attempts=attempts,
                        error=str(e),
                    )
                    raise TransientInfraError(
                        f"traffic shift on {environment} failed after "
                        f"{attempts} attempts: {e}",
                        environment=environment,
                        original_error=e,
                    ) from e
                delay = self.retry_policy.backoff(attempt)
                logger.warning(
                    "Transient deploy command failure, retrying",
                    environment=environment,
                    error=str(e),
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                )
                await asyncio.sleep(delay)

    async def get_health_metrics(
        self, environment: str, window_seconds: float
    ) -> HealthMetrics:
        return await self.health_source.sample(environment, window_seconds)

    async def close(self) -> None:
        await self.health_source.close()

    async def _run(
        self, argv: Sequence[str], environment: str, cwd: Optional[Path]
    ) -> str:
        """Run one command with a timeout.

        Raises:
            TransientInfraError: If the command timed out.
            DeployerError: If it could not start or exited non-zero.
        """
        logger.info("Running deploy command", argv=list(argv), environment=environment)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DeployerError(
                f"failed to start {argv[0]}: {e}",
                environment=environment,
                original_error=e,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise TransientInfraError(
                f"{argv[0]} timed out after {self.timeout_seconds}s",
                environment=environment,
                original_error=e,
            ) from e

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()[:500]
            logger.error(
                "Deploy command failed",
                argv=list(argv),
                exit_code=process.returncode,
                stderr=message,
            )
            raise DeployerError(
                f"{argv[0]} exited with code {process.returncode}: {message}",
                environment=environment,
            )

        return stdout.decode(errors="replace")


class HelmDeployer(CommandDeployer):
    """Deploys with ``helm upgrade --install``.

    Per-environment values come from ``values-{environment}.yaml`` next to
    the chart, and the release is installed into a namespace named after the
    environment. The chart turns ``canary.weight`` into a weighted route.
    """

    def __init__(
        self,
        chart_path: str,
        release_name: str,
        health_source: PrometheusHealthSource,
        helm_path: str = "helm",
        timeout_seconds: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(health_source, timeout_seconds, retry_policy)
        self.chart_path = chart_path
        self.release_name = release_name
        self.helm_path = helm_path

    def build_commands(
        self, environment: str, artifact_ref: str, weight: int
    ) -> List[Sequence[str]]:
        return [
            [
                self.helm_path,
                "upgrade",
                "--install",
                self.release_name,
                self.chart_path,
                "--namespace",
                environment,
                "--create-namespace",
                "--set",
                f"image.ref={artifact_ref}",
                "--set",
                f"canary.weight={weight}",
                "--set",
                f"global.environment={environment}",
                "-f",
                str(Path(self.chart_path) / f"values-{environment}.yaml"),
                "--wait",
                "--timeout",
                f"{self.timeout_seconds}s",
            ]
        ]


class KustomizeDeployer(CommandDeployer):
    """Deploys an overlay per environment with kustomize and kubectl.

    Each overlay carries two Deployments and a weighted route between them:
    the stable Deployment uses ``image_name`` and the canary Deployment uses
    ``canary_image_name``. The overlay's kustomization lists
    ``traffic-weight.yaml`` as a JSON 6902 patch on the route, with the
    stable destination at index 0 and the canary destination at index 1.

    - 0 < weight < 100: the canary image becomes the artifact and receives
      ``weight`` percent.
    - weight 100: the stable image becomes the artifact and receives all
      traffic.
    - weight 0: images are left alone and all traffic goes to stable, so a
      failed canary serves nothing.
    """

    ROUTE_PATCH_FILE = "traffic-weight.yaml"

    def __init__(
        self,
        overlays_dir: str,
        image_name: str,
        health_source: PrometheusHealthSource,
        canary_image_name: Optional[str] = None,
        kustomize_path: str = "kustomize",
        kubectl_path: str = "kubectl",
        timeout_seconds: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(health_source, timeout_seconds, retry_policy)
        self.overlays_dir = Path(overlays_dir)
        self.image_name = image_name
        self.canary_image_name = canary_image_name or f"{image_name}-canary"
        self.kustomize_path = kustomize_path
        self.kubectl_path = kubectl_path

    def working_directory(self, environment: str) -> Optional[Path]:
        return self.overlays_dir / environment

    def route_patch(self, weight: int) -> List[Dict[str, Any]]:
        """JSON 6902 operations setting the stable/canary split."""
        return [
            {"op": "replace", "path": "/spec/http/0/route/0/weight", "value": 100 - weight},
            {"op": "replace", "path": "/spec/http/0/route/1/weight", "value": weight},
        ]

    def prepare(self, environment: str, artifact_ref: str, weight: int) -> None:
        # A promoted artifact serves from stable, so the canary takes no traffic
        canary_weight = 0 if weight == 100 else weight
        path = self.overlays_dir / environment / self.ROUTE_PATCH_FILE
        try:
            path.write_text(
                yaml.safe_dump(self.route_patch(canary_weight), sort_keys=False)
            )
        except OSError as e:
            raise DeployerError(
                f"failed to write {path}: {e}",
                environment=environment,
                original_error=e,
            ) from e

    def build_commands(
        self, environment: str, artifact_ref: str, weight: int
    ) -> List[Sequence[str]]:
        overlay = str(self.overlays_dir / environment)
        commands: List[Sequence[str]] = []
        if weight == 100:
            image = self.image_name
        elif weight > 0:
            image = self.canary_image_name
        else:
            image = None
        if image is not None:
            commands.append(
                [
                    self.kustomize_path,
                    "edit",
                    "set",
                    "image",
                    f"{image}={artifact_ref}",
                ]
            )
        commands.append([self.kubectl_path, "apply", "-k", overlay, "-n", environment])
        return commands
