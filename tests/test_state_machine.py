"""Tests for stage transitions, invariants and the in-memory repository."""

import asyncio
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from release_pipeline.approval.models import ApprovalDecision, ApprovalRecord
from release_pipeline.definition import StageConfig
from release_pipeline.gates.models import GateDecision, GateVerdict
from release_pipeline.state.machine import (
    InvalidTransitionError,
    PipelineStateMachine,
    StageNotFoundError,
    VersionConflictError,
    check_invariants,
)
from release_pipeline.state.memory import InMemoryStateRepository
from release_pipeline.state.models import (
    VALID_TRANSITIONS,
    PipelineRun,
    RunStatus,
    StageStatus,
    is_valid_transition,
    make_stage_id,
    parse_stage_id,
)

from conftest import START, FixedClock

REF = "registry.local/shop/web@sha256:" + "b" * 64


def _verdict(decision: GateDecision = GateDecision.PASS) -> GateVerdict:
    return GateVerdict(decision=decision, policy_name="default", evaluated_at=START)


def _approval(decision: ApprovalDecision) -> ApprovalRecord:
    return ApprovalRecord(
        stage_id="run-1:production",
        requested_at=START,
        deadline=START + timedelta(hours=1),
        decision=decision,
        actor="alice" if decision != ApprovalDecision.PENDING else None,
    )


def _make_machine():
    repository = InMemoryStateRepository()
    return PipelineStateMachine(repository, clock=FixedClock()), repository


async def _started_run(machine, requires_approval: bool = False) -> PipelineRun:
    run = await machine.create(
        "run-1",
        REF,
        "sha256:" + "b" * 64,
        [
            StageConfig(
                name="production",
                environment="production",
                requires_approval=requires_approval,
            )
        ],
    )
    return await machine.start_next_stage(run)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitionTable:
    def test_terminal_statuses_have_no_way_out_except_rollback(self):
        assert VALID_TRANSITIONS[StageStatus.SUCCEEDED] == frozenset()
        assert VALID_TRANSITIONS[StageStatus.ROLLED_BACK] == frozenset()
        assert VALID_TRANSITIONS[StageStatus.FAILED] == frozenset(
            {StageStatus.ROLLED_BACK}
        )

    @pytest.mark.parametrize(
        "status",
        [
            StageStatus.PENDING,
            StageStatus.AWAITING_GATE,
            StageStatus.AWAITING_APPROVAL,
            StageStatus.DEPLOYING,
            StageStatus.CANARYING,
        ],
    )
    def test_every_live_status_can_fail(self, status):
        assert is_valid_transition(status, StageStatus.FAILED)

    def test_approval_cannot_be_skipped_backwards(self):
        assert not is_valid_transition(StageStatus.DEPLOYING, StageStatus.AWAITING_GATE)
        assert not is_valid_transition(StageStatus.PENDING, StageStatus.DEPLOYING)


class TestStageIds:
    def test_round_trip(self):
        assert parse_stage_id(make_stage_id("run-7", "staging")) == ("run-7", "staging")

    @pytest.mark.parametrize("stage_id", ["", "run-1", ":staging", "run-1:"])
    def test_malformed_ids_rejected(self, stage_id):
        with pytest.raises(ValueError):
            parse_stage_id(stage_id)


# ---------------------------------------------------------------------------
# PipelineStateMachine
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_start_next_stage_marks_run_running(self):
        machine, repository = _make_machine()

        run = asyncio.run(_started_run(machine))

        assert run.status == RunStatus.RUNNING
        assert run.version == 2
        assert run.current_stage.stage_id == "run-1:production"
        assert run.current_stage.status == StageStatus.PENDING

    def test_transition_records_history_and_audit_trail(self):
        machine, repository = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            return await machine.transition(
                run, "run-1:production", StageStatus.AWAITING_GATE, reason="scanning"
            )

        run = asyncio.run(scenario())

        stage = run.current_stage
        assert stage.status == StageStatus.AWAITING_GATE
        assert stage.started_at == START
        assert stage.history[-1].details["reason"] == "scanning"
        trail = repository.transitions_for("run-1")
        assert [(sid, t.to_status) for sid, t in trail] == [
            ("run-1:production", StageStatus.AWAITING_GATE)
        ]

    def test_invalid_transition_raises(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            await machine.transition(run, "run-1:production", StageStatus.SUCCEEDED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.from_status == StageStatus.PENDING
        assert exc_info.value.to_status == StageStatus.SUCCEEDED

    def test_deploy_requires_passing_gate(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            run = await machine.transition(
                run, "run-1:production", StageStatus.AWAITING_GATE
            )
            await machine.transition(
                run,
                "run-1:production",
                StageStatus.DEPLOYING,
                stage_updates={"gate_verdict": _verdict(GateDecision.FAIL)},
            )

        with pytest.raises(InvalidTransitionError, match="passing gate"):
            asyncio.run(scenario())

    def test_deploy_requires_approval_where_configured(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine, requires_approval=True)
            run = await machine.transition(
                run, "run-1:production", StageStatus.AWAITING_GATE
            )
            run = await machine.transition(
                run,
                "run-1:production",
                StageStatus.AWAITING_APPROVAL,
                stage_updates={
                    "gate_verdict": _verdict(),
                    "approval": _approval(ApprovalDecision.PENDING),
                },
            )
            await machine.transition(run, "run-1:production", StageStatus.DEPLOYING)

        with pytest.raises(InvalidTransitionError, match="approved approval"):
            asyncio.run(scenario())

    def test_stale_write_raises_version_conflict(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            await machine.update_run(run, reason="first writer")
            await machine.update_run(run, reason="second writer")

        with pytest.raises(VersionConflictError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.expected_version == 2

    def test_unknown_stage_raises(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            await machine.transition(run, "run-1:staging", StageStatus.FAILED)

        with pytest.raises(StageNotFoundError):
            asyncio.run(scenario())

    def test_next_stage_waits_for_current_to_succeed(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await machine.create(
                "run-1",
                REF,
                "sha256:" + "b" * 64,
                [
                    StageConfig(name="dev", environment="dev"),
                    StageConfig(name="prod", environment="prod"),
                ],
            )
            run = await machine.start_next_stage(run)
            await machine.start_next_stage(run)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_update_stage_refuses_status_changes(self):
        machine, _ = _make_machine()

        async def scenario():
            run = await _started_run(machine)
            await machine.update_stage(
                run, "run-1:production", status=StageStatus.SUCCEEDED
            )

        with pytest.raises(ValueError):
            asyncio.run(scenario())


# ---------------------------------------------------------------------------
# check_invariants
# ---------------------------------------------------------------------------


class TestCheckInvariants:
    def test_valid_run_has_no_violations(self):
        machine, _ = _make_machine()

        run = asyncio.run(_started_run(machine))

        assert check_invariants(run) == []

    def test_deployed_stage_without_verdict_is_flagged(self):
        machine, _ = _make_machine()
        run = asyncio.run(_started_run(machine))
        stage = run.current_stage.model_copy(update={"status": StageStatus.DEPLOYING})
        corrupted = run.model_copy(update={"stages": [stage]})

        violations = check_invariants(corrupted)

        assert any("without a passing gate" in v for v in violations)

    def test_succeeded_run_with_rollback_is_flagged(self):
        machine, _ = _make_machine()
        run = asyncio.run(_started_run(machine))
        stage = run.current_stage.model_copy(update={"status": StageStatus.ROLLED_BACK})
        corrupted = run.model_copy(
            update={"stages": [stage], "status": RunStatus.SUCCEEDED}
        )

        assert "run is succeeded but a stage was rolled back" in check_invariants(
            corrupted
        )

    def test_terminal_run_with_stage_in_flight_is_flagged(self):
        machine, _ = _make_machine()
        run = asyncio.run(_started_run(machine))
        corrupted = run.model_copy(update={"status": RunStatus.FAILED})

        assert any("stages in flight" in v for v in check_invariants(corrupted))


# ---------------------------------------------------------------------------
# InMemoryStateRepository
# ---------------------------------------------------------------------------


class TestInMemoryLeases:
    def test_lease_is_exclusive_until_expiry(self):
        repository = InMemoryStateRepository()
        expires = START + timedelta(minutes=2)

        async def scenario():
            first = await repository.acquire_lease("production", "run-1", expires, START)
            second = await repository.acquire_lease("production", "run-2", expires, START)
            after_expiry = await repository.acquire_lease(
                "production",
                "run-2",
                expires + timedelta(minutes=2),
                expires,
            )
            return first, second, after_expiry, await repository.get_lease("production")

        first, second, after_expiry, lease = asyncio.run(scenario())

        assert (first, second, after_expiry) == (True, False, True)
        assert lease.holder == "run-2"

    def test_release_by_non_holder_is_ignored(self):
        repository = InMemoryStateRepository()

        async def scenario():
            await repository.acquire_lease(
                "production", "run-1", START + timedelta(minutes=2), START
            )
            await repository.release_lease("production", "run-2")
            return await repository.get_lease("production")

        assert asyncio.run(scenario()).holder == "run-1"


# ---------------------------------------------------------------------------
# Property: writes with a stale version never succeed
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(writes=st.integers(min_value=1, max_value=8), stale_offset=st.integers(min_value=1, max_value=8))
def test_stale_versions_are_always_rejected(writes, stale_offset):
    machine, repository = _make_machine()

    async def scenario():
        run = await _started_run(machine)
        snapshots = [run]
        for i in range(writes):
            run = await machine.update_run(run, reason=f"write {i}")
            snapshots.append(run)
        stale = snapshots[max(0, len(snapshots) - 1 - stale_offset)]
        accepted = await repository.update_with_version(
            stale.model_copy(update={"version": stale.version + 1})
        )
        return accepted, run, await repository.get_run("run-1")

    accepted, latest, stored = asyncio.run(scenario())

    assert accepted is False
    assert stored == latest
