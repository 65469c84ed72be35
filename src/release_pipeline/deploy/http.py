"""Cluster control-plane adapter over HTTP.

Talks to a traffic-management API that fronts the cluster (a service mesh
controller or an internal deploy service):

- PUT  /environments/{env}/traffic   {"artifact_ref": ..., "weight": ...}
- GET  /environments/{env}/health?window_seconds=N
       -> {"error_rate": .., "latency_ms": .., "sample_count": ..}
       or {"failed_requests": .., "total_requests": .., "latency_ms": ..}

Transient failures (timeouts, connection errors, 408/429/5xx) are retried
with exponential backoff; exhaustion raises TransientInfraError.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
import structlog

from release_pipeline.deploy.base import (
    Deployer,
    DeployerError,
    HealthMetrics,
    TransientInfraError,
    validate_weight,
)
from release_pipeline.deploy.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class HttpClusterDeployer(Deployer):
    """Deployer backed by an HTTP control-plane API.

    Attributes:
        base_url: Control-plane API base URL.
        token: Optional bearer token.
        retry_policy: Retry budget for each call.
        timeout: Request timeout in seconds.

    Example:
        >>> deployer = HttpClusterDeployer("https://mesh.internal/api")
        >>> await deployer.set_traffic_weight("production", "reg/app@sha256:ab", 10)
        >>> await deployer.close()
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "release-pipeline/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        environment: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make a request with retry on transient failures.

        Raises:
            DeployerError: On a non-retryable error response.
            TransientInfraError: When all attempts failed transiently.
        """
        last_error: Optional[str] = None
        attempts = self.retry_policy.max_attempts

        for attempt in range(attempts):
            try:
                response = await self.client.request(
                    method=method, url=path, json=json_data, params=params
                )
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
            except httpx.RequestError as e:
                last_error = f"request error: {e}"
            else:
                if response.status_code in self.RETRYABLE_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    logger.error(
                        "Control-plane API error",
                        status_code=response.status_code,
                        path=path,
                        method=method,
                        response_body=response.text[:500],
                    )
                    raise DeployerError(
                        f"control plane returned {response.status_code} for {method} {path}",
                        environment=environment,
                    )
                else:
                    return response

            if attempt < attempts - 1:
                delay = self.retry_policy.backoff(attempt)
                logger.warning(
                    "Transient control-plane failure, retrying",
                    error=last_error,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                    path=path,
                )
                await asyncio.sleep(delay)

        logger.error(
            "Control-plane request failed after all retries",
            path=path,
            method=method,
            max_attempts=attempts,
            last_error=last_error,
        )
        raise TransientInfraError(
            f"{method} {path} failed after {attempts} attempts: {last_error}",
            environment=environment,
        )

    async def set_traffic_weight(
        self, environment: str, artifact_ref: str, weight: int
    ) -> None:
        validate_weight(weight)
        logger.info(
            "Setting traffic weight",
            environment=environment,
            artifact_ref=artifact_ref,
            weight=weight,
        )
        await self._request(
            "PUT",
            f"/environments/{environment}/traffic",
            environment,
            json_data={"artifact_ref": artifact_ref, "weight": weight},
        )

    async def get_health_metrics(
        self, environment: str, window_seconds: float
    ) -> HealthMetrics:
        response = await self._request(
            "GET",
            f"/environments/{environment}/health",
            environment,
            params={"window_seconds": int(window_seconds)},
        )
        try:
            body = response.json()
            if "error_rate" in body:
                return HealthMetrics(
                    error_rate=float(body["error_rate"]),
                    latency_ms=float(body.get("latency_ms", 0.0)),
                    sample_count=int(body.get("sample_count", 0)),
                )
            return HealthMetrics.from_counts(
                failed=float(body["failed_requests"]),
                total=float(body["total_requests"]),
                latency_ms=float(body.get("latency_ms", 0.0)),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise DeployerError(
                f"malformed health response for {environment}: {e}",
                environment=environment,
                original_error=e,
            ) from e
