"""Tests for the Deployer adapters: HTTP control plane, Prometheus, Helm, Kustomize."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import yaml

from release_pipeline.bootstrap import create_deployer
from release_pipeline.config import DeployerKind, PipelineSettings
from release_pipeline.deploy.base import (
    DeployerError,
    HealthMetrics,
    TransientInfraError,
    validate_weight,
)
from release_pipeline.deploy.commands import HelmDeployer, KustomizeDeployer
from release_pipeline.deploy.http import HttpClusterDeployer
from release_pipeline.deploy.prometheus import PrometheusHealthSource
from release_pipeline.deploy.retry import RetryPolicy

REF = "registry.local/shop/web@sha256:" + "b" * 64

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, jitter=False)


def _make_http_deployer(handler) -> HttpClusterDeployer:
    client = httpx.AsyncClient(
        base_url="https://mesh.internal/api", transport=httpx.MockTransport(handler)
    )
    return HttpClusterDeployer(
        "https://mesh.internal/api", retry_policy=NO_WAIT, client=client
    )


def _make_process(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b""):
    process = AsyncMock()
    process.returncode = returncode
    process.kill = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock()
    return process


# ---------------------------------------------------------------------------
# Shared primitives
# ---------------------------------------------------------------------------


class TestPrimitives:
    @pytest.mark.parametrize("weight", [-1, 101])
    def test_weight_out_of_range(self, weight):
        with pytest.raises(ValueError):
            validate_weight(weight)

    def test_health_from_counts(self):
        metrics = HealthMetrics.from_counts(failed=5, total=200, latency_ms=12.5)

        assert metrics.error_rate == 0.025
        assert metrics.sample_count == 200

    def test_health_from_zero_traffic(self):
        metrics = HealthMetrics.from_counts(failed=0, total=0)

        assert metrics.sample_count == 0
        assert metrics.error_rate == 0.0

    @pytest.mark.parametrize(
        "attempt, expected", [(0, 1.0), (1, 2.0), (2, 4.0), (10, 30.0)]
    )
    def test_backoff_doubles_up_to_cap(self, attempt, expected):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=False)

        assert policy.backoff(attempt) == expected

    def test_jittered_backoff_stays_within_cap(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)

        assert all(0 <= policy.backoff(3) <= 8.0 for _ in range(50))

    def test_retry_policy_requires_an_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


# ---------------------------------------------------------------------------
# HttpClusterDeployer
# ---------------------------------------------------------------------------


class TestHttpClusterDeployer:
    def test_set_traffic_weight_puts_weight(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        asyncio.run(_make_http_deployer(handler).set_traffic_weight("production", REF, 10))

        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/api/environments/production/traffic"
        assert json.loads(requests[0].content) == {"artifact_ref": REF, "weight": 10}

    def test_health_from_rate_payload(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["window_seconds"] == "30"
            return httpx.Response(
                200, json={"error_rate": 0.02, "latency_ms": 55, "sample_count": 400}
            )

        metrics = asyncio.run(
            _make_http_deployer(handler).get_health_metrics("production", 30)
        )

        assert metrics == HealthMetrics(error_rate=0.02, latency_ms=55.0, sample_count=400)

    def test_health_from_count_payload(self):
        handler = lambda request: httpx.Response(  # noqa: E731
            200, json={"failed_requests": 3, "total_requests": 300}
        )

        metrics = asyncio.run(
            _make_http_deployer(handler).get_health_metrics("production", 30)
        )

        assert metrics.error_rate == 0.01
        assert metrics.sample_count == 300

    def test_malformed_health_raises_deployer_error(self):
        handler = lambda request: httpx.Response(200, json={"unexpected": True})  # noqa: E731

        with pytest.raises(DeployerError, match="malformed health response"):
            asyncio.run(_make_http_deployer(handler).get_health_metrics("production", 30))

    def test_transient_failures_are_retried(self):
        responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200)])

        asyncio.run(
            _make_http_deployer(lambda request: next(responses)).set_traffic_weight(
                "production", REF, 50
            )
        )

    def test_exhausted_retries_raise_transient_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(TransientInfraError) as exc_info:
            asyncio.run(_make_http_deployer(handler).set_traffic_weight("production", REF, 50))

        assert exc_info.value.environment == "production"
        assert "after 3 attempts" in str(exc_info.value)

    def test_client_error_is_permanent(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(422, text="unknown artifact")

        with pytest.raises(DeployerError) as exc_info:
            asyncio.run(_make_http_deployer(handler).set_traffic_weight("production", REF, 50))

        assert not isinstance(exc_info.value, TransientInfraError)
        assert len(calls) == 1


# ---------------------------------------------------------------------------
# PrometheusHealthSource
# ---------------------------------------------------------------------------


def _vector(value: str) -> dict:
    return {
        "status": "success",
        "data": {"resultType": "vector", "result": [{"metric": {}, "value": [0, value]}]},
    }


def _make_source(handler) -> PrometheusHealthSource:
    client = httpx.AsyncClient(
        base_url="http://prometheus:9090", transport=httpx.MockTransport(handler)
    )
    return PrometheusHealthSource(
        "http://prometheus:9090",
        total_query="total{{env='{environment}'}}[{window}]",
        failed_query="failed{{env='{environment}'}}[{window}]",
        latency_query="latency{{env='{environment}'}}[{window}]",
        client=client,
    )


class TestPrometheusHealthSource:
    def test_sample_combines_queries(self):
        values = {"total": "400", "failed": "8", "latency": "NaN"}
        queries = []

        def handler(request: httpx.Request) -> httpx.Response:
            query = request.url.params["query"]
            queries.append(query)
            return httpx.Response(200, json=_vector(values[query.split("{")[0]]))

        metrics = asyncio.run(_make_source(handler).sample("staging", 30))

        assert metrics.error_rate == 0.02
        assert metrics.sample_count == 400
        assert metrics.latency_ms == 0.0
        assert queries[0] == "total{env='staging'}[30s]"

    def test_empty_result_means_no_traffic(self):
        handler = lambda request: httpx.Response(  # noqa: E731
            200, json={"status": "success", "data": {"result": []}}
        )

        metrics = asyncio.run(_make_source(handler).sample("staging", 30))

        assert metrics.sample_count == 0

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503),
            httpx.Response(200, json={"status": "error", "error": "bad query"}),
        ],
    )
    def test_failures_are_transient(self, response):
        with pytest.raises(TransientInfraError):
            asyncio.run(_make_source(lambda request: response).sample("staging", 30))


# ---------------------------------------------------------------------------
# Command deployers
# ---------------------------------------------------------------------------


class TestHelmDeployer:
    def _make(self, timeout_seconds: float = 300) -> HelmDeployer:
        return HelmDeployer(
            "charts/web",
            "web",
            health_source=AsyncMock(),
            timeout_seconds=timeout_seconds,
            retry_policy=NO_WAIT,
        )

    def test_build_commands(self):
        (argv,) = self._make().build_commands("staging", REF, 50)

        assert argv[:5] == ["helm", "upgrade", "--install", "web", "charts/web"]
        assert f"image.ref={REF}" in argv
        assert "canary.weight=50" in argv
        assert "charts/web/values-staging.yaml" in argv
        assert argv[argv.index("--namespace") + 1] == "staging"

    def test_successful_command(self):
        process = _make_process()

        with patch("asyncio.create_subprocess_exec", return_value=process) as exec_mock:
            asyncio.run(self._make().set_traffic_weight("staging", REF, 100))

        assert exec_mock.call_args.args[0] == "helm"
        process.communicate.assert_awaited_once()

    def test_non_zero_exit_raises(self):
        process = _make_process(returncode=1, stderr=b"Error: UPGRADE FAILED")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(DeployerError, match="UPGRADE FAILED"):
                asyncio.run(self._make().set_traffic_weight("staging", REF, 100))

    def test_timeout_is_retried_then_raised(self):
        process = _make_process()

        async def hang():
            await asyncio.sleep(10)

        process.communicate = hang

        with patch("asyncio.create_subprocess_exec", return_value=process) as exec_mock:
            with pytest.raises(TransientInfraError, match="after 3 attempts.*timed out"):
                asyncio.run(self._make(timeout_seconds=0.01).set_traffic_weight("staging", REF, 100))

        assert exec_mock.call_count == 3
        assert process.kill.call_count == 3

    def test_timeout_then_success(self):
        slow = _make_process()

        async def hang():
            await asyncio.sleep(10)

        slow.communicate = hang
        fast = _make_process()

        with patch("asyncio.create_subprocess_exec", side_effect=[slow, fast]) as exec_mock:
            asyncio.run(self._make(timeout_seconds=0.01).set_traffic_weight("staging", REF, 50))

        assert exec_mock.call_count == 2
        fast.communicate.assert_awaited_once()

    def test_non_zero_exit_is_not_retried(self):
        process = _make_process(returncode=1, stderr=b"Error: UPGRADE FAILED")

        with patch("asyncio.create_subprocess_exec", return_value=process) as exec_mock:
            with pytest.raises(DeployerError) as exc_info:
                asyncio.run(self._make().set_traffic_weight("staging", REF, 100))

        assert not isinstance(exc_info.value, TransientInfraError)
        assert exec_mock.call_count == 1

    def test_missing_binary_raises(self):
        with patch(
            "asyncio.create_subprocess_exec", side_effect=FileNotFoundError("helm")
        ):
            with pytest.raises(DeployerError, match="failed to start helm"):
                asyncio.run(self._make().set_traffic_weight("staging", REF, 100))

    def test_health_comes_from_prometheus(self):
        deployer = self._make()
        deployer.health_source.sample.return_value = HealthMetrics(
            error_rate=0.0, sample_count=10
        )

        metrics = asyncio.run(deployer.get_health_metrics("staging", 30))

        assert metrics.sample_count == 10
        deployer.health_source.sample.assert_awaited_once_with("staging", 30)


class TestKustomizeDeployer:
    def _make(self, tmp_path) -> KustomizeDeployer:
        (tmp_path / "production").mkdir()
        return KustomizeDeployer(
            str(tmp_path), "shop/web", health_source=AsyncMock(), retry_policy=NO_WAIT
        )

    def _shift(self, deployer, weight):
        process = _make_process()
        with patch("asyncio.create_subprocess_exec", return_value=process) as exec_mock:
            asyncio.run(deployer.set_traffic_weight("production", REF, weight))
        return exec_mock.call_args_list

    def _route_weights(self, tmp_path):
        patch_ops = yaml.safe_load((tmp_path / "production" / "traffic-weight.yaml").read_text())
        return [op["value"] for op in patch_ops]

    def test_canary_step_sets_canary_image_and_split(self, tmp_path):
        calls = self._shift(self._make(tmp_path), 10)

        argvs = [call.args for call in calls]
        assert argvs == [
            ("kustomize", "edit", "set", "image", f"shop/web-canary={REF}"),
            ("kubectl", "apply", "-k", str(tmp_path / "production"), "-n", "production"),
        ]
        assert self._route_weights(tmp_path) == [90, 10]
        assert all(call.kwargs["cwd"] == str(tmp_path / "production") for call in calls)

    def test_full_weight_promotes_to_stable(self, tmp_path):
        calls = self._shift(self._make(tmp_path), 100)

        assert calls[0].args == ("kustomize", "edit", "set", "image", f"shop/web={REF}")
        assert self._route_weights(tmp_path) == [100, 0]

    def test_zero_weight_routes_everything_to_stable_without_deploying(self, tmp_path):
        deployer = self._make(tmp_path)

        assert deployer.build_commands("production", REF, 0) == [
            ["kubectl", "apply", "-k", str(tmp_path / "production"), "-n", "production"]
        ]
        calls = self._shift(deployer, 0)

        assert all("image" not in call.args for call in calls)
        assert self._route_weights(tmp_path) == [100, 0]

    def test_custom_canary_image_name(self, tmp_path):
        deployer = KustomizeDeployer(
            str(tmp_path), "shop/web", health_source=AsyncMock(), canary_image_name="web-next"
        )

        (argv, _) = deployer.build_commands("production", REF, 50)

        assert argv[-1] == f"web-next={REF}"

    def test_missing_overlay_is_a_deploy_error(self, tmp_path):
        deployer = KustomizeDeployer(str(tmp_path), "shop/web", health_source=AsyncMock())

        with patch("asyncio.create_subprocess_exec") as exec_mock:
            with pytest.raises(DeployerError, match="traffic-weight.yaml"):
                asyncio.run(deployer.set_traffic_weight("production", REF, 10))

        exec_mock.assert_not_called()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestCreateDeployer:
    @pytest.mark.parametrize(
        "kind, expected",
        [
            (DeployerKind.HTTP, HttpClusterDeployer),
            (DeployerKind.HELM, HelmDeployer),
            (DeployerKind.KUSTOMIZE, KustomizeDeployer),
        ],
    )
    def test_every_adapter_gets_the_deploy_retry_budget(self, kind, expected):
        settings = PipelineSettings(
            deployer=kind,
            deploy_max_attempts=5,
            deploy_retry_base_delay_seconds=0.5,
            rollback_max_attempts=2,
        )

        deployer = create_deployer(settings)

        assert isinstance(deployer, expected)
        assert deployer.retry_policy.max_attempts == 5
        assert deployer.retry_policy.base_delay == 0.5

    def test_kustomize_canary_image_defaults_from_stable_name(self):
        settings = PipelineSettings(
            deployer=DeployerKind.KUSTOMIZE, kustomize_image_name="shop/web"
        )

        assert create_deployer(settings).canary_image_name == "shop/web-canary"
