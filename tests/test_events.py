"""Tests for pipeline event emitters and Prometheus metrics."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from prometheus_client import CollectorRegistry

from release_pipeline.events.emitter import (
    CompositeEventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    WebhookEventEmitter,
    create_event_emitter,
)
from release_pipeline.events.metrics import MetricsEventEmitter, PipelineMetrics
from release_pipeline.events.models import EventType, PipelineEvent

from conftest import START


def _make_event(event_type: EventType = EventType.ALERT, **details) -> PipelineEvent:
    return PipelineEvent(
        event_type=event_type,
        run_id="run-1",
        artifact_ref="registry.local/shop/web@sha256:abc",
        stage_name="production",
        environment="production",
        timestamp=START,
        details=details,
    )


def _make_metrics_emitter():
    registry = CollectorRegistry()
    return MetricsEventEmitter(metrics=PipelineMetrics(registry=registry)), registry


# ---------------------------------------------------------------------------
# PipelineEvent
# ---------------------------------------------------------------------------


class TestPipelineEvent:
    def test_log_dict_flattens_details(self):
        event = _make_event(alert="rollback_failed", severity="fatal")

        flat = event.to_log_dict()

        assert flat["event_type"] == "alert"
        assert flat["alert"] == "rollback_failed"
        assert flat["timestamp"] == START.isoformat()
        assert flat["stage_name"] == "production"


# ---------------------------------------------------------------------------
# Emitters
# ---------------------------------------------------------------------------


class TestCompositeEventEmitter:
    def test_failing_child_does_not_stop_others(self):
        broken = AsyncMock()
        broken.emit.side_effect = RuntimeError("sink down")
        healthy = AsyncMock()
        composite = CompositeEventEmitter([broken, healthy])
        event = _make_event()

        asyncio.run(composite.emit(event))

        healthy.emit.assert_awaited_once_with(event)

    def test_close_reaches_every_child(self):
        first, second = AsyncMock(), AsyncMock()
        first.close.side_effect = RuntimeError("already closed")

        asyncio.run(CompositeEventEmitter([first, second]).close())

        second.close.assert_awaited_once()


class TestWebhookEventEmitter:
    def _make(self, handler) -> WebhookEventEmitter:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return WebhookEventEmitter("https://hooks.local/release", client=client)

    def test_posts_human_facing_events(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(202)

        emitter = self._make(handler)
        asyncio.run(emitter.emit(_make_event(EventType.APPROVAL_REQUESTED, stage_id="run-1:production")))
        asyncio.run(emitter.emit(_make_event(EventType.STATE_TRANSITION)))

        assert len(bodies) == 1
        assert bodies[0]["event_type"] == "approval_requested"
        assert bodies[0]["stage_id"] == "run-1:production"

    @pytest.mark.parametrize("outcome", ["reject", "raise"])
    def test_delivery_failures_are_swallowed(self, outcome):
        def handler(request: httpx.Request) -> httpx.Response:
            if outcome == "raise":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(500)

        asyncio.run(self._make(handler).emit(_make_event()))


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_webhook_without_url_is_skipped(self):
        emitter = create_event_emitter([EventSinkType.WEBHOOK])

        assert isinstance(emitter, LoggingEventEmitter)

    def test_multiple_sinks_compose(self):
        emitter = create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.WEBHOOK],
            webhook_url="https://hooks.local/release",
        )

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [
            LoggingEventEmitter,
            WebhookEventEmitter,
        ]

    def test_logging_and_null_emitters_accept_every_type(self):
        for event_type in EventType:
            asyncio.run(LoggingEventEmitter().emit(_make_event(event_type)))
            asyncio.run(NullEventEmitter().emit(_make_event(event_type)))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetricsEventEmitter:
    def test_transition_moves_stage_between_buckets(self):
        emitter, registry = _make_metrics_emitter()

        asyncio.run(emitter.emit(_make_event(
            EventType.STATE_TRANSITION, from_status=None, to_status="pending"
        )))
        asyncio.run(emitter.emit(_make_event(
            EventType.STATE_TRANSITION, from_status="pending", to_status="awaiting_gate"
        )))

        gauge = "release_pipeline_stages_by_status"
        assert registry.get_sample_value(gauge, {"status": "pending"}) == 0
        assert registry.get_sample_value(gauge, {"status": "awaiting_gate"}) == 1

    def test_gauge_never_goes_negative(self):
        emitter, registry = _make_metrics_emitter()

        asyncio.run(emitter.emit(_make_event(
            EventType.STATE_TRANSITION, from_status="deploying", to_status="failed"
        )))

        assert registry.get_sample_value(
            "release_pipeline_stages_by_status", {"status": "deploying"}
        ) == 0

    def test_completion_and_rollback_are_counted(self):
        emitter, registry = _make_metrics_emitter()

        asyncio.run(emitter.emit(_make_event(
            EventType.COMPLETION, status="rolled_back", duration_seconds=420
        )))
        asyncio.run(emitter.emit(_make_event(EventType.ROLLBACK, outcome="restored")))
        asyncio.run(emitter.emit(_make_event(EventType.ERROR, reason="canary aborted")))

        assert registry.get_sample_value(
            "release_pipeline_runs_completed_total", {"status": "rolled_back"}
        ) == 1
        assert registry.get_sample_value(
            "release_pipeline_run_duration_seconds_sum"
        ) == 420
        assert registry.get_sample_value(
            "release_pipeline_rollbacks_total",
            {"environment": "production", "outcome": "restored"},
        ) == 1
        assert registry.get_sample_value(
            "release_pipeline_stage_failures_total",
            {"stage": "production", "environment": "production"},
        ) == 1

    def test_alerts_are_counted_by_severity(self):
        emitter, registry = _make_metrics_emitter()

        asyncio.run(emitter.emit(_make_event(alert="rollback_failed", severity="fatal")))

        assert registry.get_sample_value(
            "release_pipeline_alerts_total",
            {"alert": "rollback_failed", "severity": "fatal"},
        ) == 1
