"""Environment health sampled from Prometheus.

Used by the command-line deployers, which can shift traffic but cannot
observe it. Queries are PromQL templates formatted with ``environment``
and ``window`` (e.g. ``30s``); each must return a single scalar-like
vector.
"""

from typing import Optional

import httpx
import structlog

from release_pipeline.deploy.base import HealthMetrics, TransientInfraError

logger = structlog.get_logger(__name__)

DEFAULT_TOTAL_QUERY = (
    'sum(increase(http_server_requests_seconds_count{{namespace="{environment}"}}[{window}]))'
)
DEFAULT_FAILED_QUERY = (
    'sum(increase(http_server_requests_seconds_count{{namespace="{environment}",status=~"5.."}}[{window}]))'
)
DEFAULT_LATENCY_QUERY = (
    'histogram_quantile(0.95, sum by (le) (rate(http_server_requests_seconds_bucket{{namespace="{environment}"}}[{window}]))) * 1000'
)


class PrometheusHealthSource:
    """Reads request counts and latency from the Prometheus HTTP API.

    Attributes:
        base_url: Prometheus server URL.
        total_query: PromQL for total requests in the window.
        failed_query: PromQL for failed requests in the window.
        latency_query: PromQL for latency in milliseconds.
    """

    def __init__(
        self,
        base_url: str,
        total_query: str = DEFAULT_TOTAL_QUERY,
        failed_query: str = DEFAULT_FAILED_QUERY,
        latency_query: str = DEFAULT_LATENCY_QUERY,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.total_query = total_query
        self.failed_query = failed_query
        self.latency_query = latency_query
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _scalar(self, query: str) -> float:
        try:
            response = await self.client.get("/api/v1/query", params={"query": query})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientInfraError(f"prometheus query failed: {e}", original_error=e) from e

        if payload.get("status") != "success":
            raise TransientInfraError(
                f"prometheus query error: {payload.get('error', 'unknown')}"
            )

        result = payload.get("data", {}).get("result", [])
        if not result:
            # No series means no traffic in the window
            return 0.0

        value = float(result[0]["value"][1])
        return 0.0 if value != value else value  # NaN from empty histograms

    async def sample(self, environment: str, window_seconds: float) -> HealthMetrics:
        """Sample health for an environment over the trailing window."""
        window = f"{max(1, int(window_seconds))}s"
        fmt = {"environment": environment, "window": window}

        total = await self._scalar(self.total_query.format(**fmt))
        failed = await self._scalar(self.failed_query.format(**fmt))
        latency = await self._scalar(self.latency_query.format(**fmt))

        metrics = HealthMetrics.from_counts(failed=failed, total=total, latency_ms=latency)
        logger.debug(
            "Sampled environment health",
            environment=environment,
            window=window,
            error_rate=metrics.error_rate,
            sample_count=metrics.sample_count,
        )
        return metrics
