"""Tests for the per-instance checkpoint log.

Feature: task-workflow, checkpoint log

Testing Configuration:
- Library: Hypothesis (Python)
- Tag format: Feature: task-workflow, Property N: <property_text>
"""

import json
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

import pytest
from hypothesis import given, settings, strategies as st

from src.workflow.errors import CorruptState
from src.workflow.state import (
    CANONICAL_PHASE_ORDER,
    RESUME_PHASE_AFTER,
    CheckpointEntry,
    CheckpointLog,
    InstanceStatus,
    InvalidTransitionError,
    Phase,
    StepStatus,
    next_phase_after,
    resume_phase,
    validate_phase_order,
)
from tests.conftest import make_policy, make_task


def _entry(step: Phase, status: StepStatus) -> CheckpointEntry:
    return CheckpointEntry(step=step, status=status)


@st.composite
def valid_history(draw: st.DrawFn) -> Tuple[List[CheckpointEntry], Optional[Phase]]:
    """Simulate a run and return its entries plus the expected resume phase.

    At each phase the run either completes it, fails it (retry), or
    crashes after entering it. A failed delivery-validation rewinds to
    implementation.
    """
    entries: List[CheckpointEntry] = []
    index = 0
    steps = draw(st.integers(min_value=0, max_value=40))
    for _ in range(steps):
        phase = CANONICAL_PHASE_ORDER[index]
        entries.append(_entry(phase, StepStatus.STARTED))
        outcome = draw(st.sampled_from(["completed", "failed", "crash"]))
        if outcome == "crash":
            return entries, phase
        if outcome == "failed":
            entries.append(_entry(phase, StepStatus.FAILED))
            if phase == Phase.DELIVERY_VALIDATION:
                index = CANONICAL_PHASE_ORDER.index(Phase.IMPLEMENTATION)
            continue
        entries.append(_entry(phase, StepStatus.COMPLETED))
        if phase == Phase.SHIP:
            return entries, None
        index += 1
    return entries, CANONICAL_PHASE_ORDER[index]


class TestPhaseOrderProperties:
    @settings(max_examples=200)
    @given(history=valid_history())
    def test_simulated_histories_are_valid_and_resume_correctly(self, history):
        """
        Feature: task-workflow, Property 7: Resume follows the log

        *For any* history produced by running the machine, the log is
        valid and the resume phase is the phase the run would enter next.
        """
        entries, expected = history
        assert validate_phase_order(entries)
        assert resume_phase(entries) == expected

    @settings(max_examples=200)
    @given(history=valid_history(), step=st.sampled_from(list(Phase)))
    def test_skipping_ahead_is_invalid(self, history, step):
        """
        Feature: task-workflow, Property 8: Phases cannot be skipped

        Starting any phase other than the resume phase breaks the order.
        """
        entries, expected = history
        if expected is None or step == expected:
            return
        assert not validate_phase_order(entries + [_entry(step, StepStatus.STARTED)])

    def test_resume_mapping_is_total(self):
        assert set(RESUME_PHASE_AFTER) == set(Phase)
        for phase in Phase:
            nxt = next_phase_after(phase.value)
            if phase == Phase.SHIP:
                assert nxt is None
            else:
                order = list(CANONICAL_PHASE_ORDER)
                assert nxt == order[order.index(phase) + 1]

    def test_unknown_step_name_is_corrupt(self):
        with pytest.raises(CorruptState):
            next_phase_after("deploy-to-mars")

    def test_entries_after_ship_are_invalid(self):
        entries = []
        for phase in CANONICAL_PHASE_ORDER:
            entries += [_entry(phase, StepStatus.STARTED), _entry(phase, StepStatus.COMPLETED)]
        assert validate_phase_order(entries)
        assert resume_phase(entries) is None
        assert not validate_phase_order(entries + [_entry(Phase.SHIP, StepStatus.STARTED)])

    def test_close_without_start_is_invalid(self):
        assert not validate_phase_order([_entry(Phase.POLICY_SELECTION, StepStatus.COMPLETED)])

    def test_empty_log_resumes_at_first_phase(self):
        assert resume_phase([]) == Phase.POLICY_SELECTION


@pytest.fixture
def log(state_dir: Path) -> CheckpointLog:
    log = CheckpointLog.for_instance(state_dir, "github-7")
    log.initialize(make_task(), make_policy(), worktree="/tmp/wt/fix-7", branch="task/fix-7")
    return log


class TestCheckpointLog:
    def test_initialize_writes_layout(self, log):
        document = json.loads(log.path.read_text())
        assert document["steps"] == []
        assert document["branch"] == "task/fix-7"
        assert document["workflow"]["status"] == "running"
        assert document["resume"]["resumeFromStep"] == "policy-selection"
        assert document["task"]["createdAt"]

    def test_append_updates_meta(self, log):
        log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        entry = log.append_step(Phase.POLICY_SELECTION, StepStatus.COMPLETED, result={"ok": True})

        assert entry.attempt == 1
        document = json.loads(log.path.read_text())
        assert document["workflow"]["currentPhase"] == "policy-selection"
        assert document["resume"]["resumeFromStep"] == "task-discovery"
        assert document["steps"][-1]["result"] == {"ok": True}
        assert log.last_step().status == StepStatus.COMPLETED

    def test_attempts_count_reentries(self, log):
        log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        log.append_step(Phase.POLICY_SELECTION, StepStatus.FAILED)
        second = log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        assert second.attempt == 2

    def test_out_of_order_append_rejected_and_log_unchanged(self, log):
        before = log.path.read_text()
        with pytest.raises(InvalidTransitionError):
            log.append_step(Phase.PLANNING, StepStatus.STARTED)
        assert log.path.read_text() == before

    def test_unknown_fields_preserved(self, log):
        document = json.loads(log.path.read_text())
        document["notes"] = "keep me"
        document["workflow"]["host"] = "ci-1"
        log.path.write_text(json.dumps(document))

        log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        log.mark(InstanceStatus.HALTED)

        document = json.loads(log.path.read_text())
        assert document["notes"] == "keep me"
        assert document["workflow"]["host"] == "ci-1"
        assert document["workflow"]["status"] == "halted"

    def test_missing_log_is_corrupt(self, state_dir):
        with pytest.raises(CorruptState):
            CheckpointLog.for_instance(state_dir, "github-404").load()

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d.update(steps="nope"),
            lambda d: d.update(steps=[{"step": "teleport", "status": "started"}]),
            lambda d: d.update(steps=[{"step": "planning", "status": "started"}]),
            lambda d: d.update(steps=[{"step": "policy-selection", "status": "paused"}]),
            lambda d: d.update(steps=[42]),
            lambda d: d.pop("task"),
        ],
    )
    def test_structural_problems_are_corrupt(self, log, mutate):
        document = json.loads(log.path.read_text())
        mutate(document)
        log.path.write_text(json.dumps(document))
        with pytest.raises(CorruptState):
            log.load()

    def test_invalid_json_is_corrupt(self, log):
        log.path.write_text("{")
        with pytest.raises(CorruptState):
            log.load()


class TestReinitialize:
    def test_previous_run_is_archived_not_overwritten(self, log):
        log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        log.mark(InstanceStatus.ABORTED)

        log.initialize(make_task(), make_policy(), worktree="/tmp/wt/fix-7", branch="task/fix-7")

        assert log.entries() == []
        assert log.read_status() == InstanceStatus.RUNNING
        [previous] = log.archived()
        old = CheckpointLog(previous).load()
        assert old.status == InstanceStatus.ABORTED
        assert [(e.step, e.status) for e in old.steps] == [
            (Phase.POLICY_SELECTION, StepStatus.STARTED)
        ]

    def test_each_rerun_keeps_its_own_archive(self, log):
        for _ in range(3):
            log.initialize(make_task(), make_policy(), worktree="/tmp/wt", branch="task/fix-7")

        archives = log.archived()
        assert len(archives) == 3
        assert len(set(archives)) == 3
        assert log.path not in archives

    def test_first_initialize_archives_nothing(self, log):
        assert log.archived() == []


class TestAppendAtomicity:
    @settings(max_examples=25, deadline=None)
    @given(history=valid_history())
    def test_replaying_a_history_round_trips(self, history):
        """
        Feature: task-workflow, Property 9: The log is the source of truth

        Appending a valid history entry by entry and reloading yields the
        same steps and the same resume phase.
        """
        entries, expected = history
        with tempfile.TemporaryDirectory() as tmp:
            log = CheckpointLog.for_instance(Path(tmp), "github-7")
            log.initialize(make_task(), make_policy(), worktree="/tmp/wt", branch="task/x-7")
            for entry in entries:
                log.append_step(entry.step, entry.status)

            loaded = log.load()
            assert [(e.step, e.status) for e in loaded.steps] == [
                (e.step, e.status) for e in entries
            ]
            assert loaded.resume_from == expected
