"""Workflow state machine.

Drives one claimed task through the canonical phase sequence, writing a
checkpoint before and after every phase. The phase to run next is always
derived from the checkpoint log, so a machine constructed after a crash
continues exactly where the previous one stopped.

Failure handling:
- a failed delivery-validation records its fix list and routes back to
  implementation, at most ``max_validation_retries`` times
- the review loop runs at most ``max_review_iterations`` review passes
- any other failure (worker error, rejected plan, exhausted loop) is
  recorded, the instance is marked halted and the error is raised with
  the phase and resume arguments attached; the registry claim is kept

Cancellation is cooperative: ``request_cancel()`` or an ``aborted`` status
written to the log by another process is honoured at the next phase
boundary. The plan approval wait is the one unbounded suspension and is
also interrupted by a cancel request.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.workflow.errors import (
    IterationLimitExceeded,
    PhaseFailed,
    PlanRejected,
    ValidationFailed,
    WorkflowError,
)
from src.workflow.events import EventEmitter, EventType, NullEventEmitter, WorkflowEvent
from src.workflow.provisioner import WorktreeProvisioner, WorktreeSpec
from src.workflow.sources.models import Policy, Task
from src.workflow.state.checkpoint import (
    CheckpointDocument,
    CheckpointLog,
    attempts_from_entries,
    resume_phase,
    validation_retries_from_entries,
)
from src.workflow.state.models import (
    CheckpointEntry,
    InstanceStatus,
    Phase,
    StepStatus,
    WorkflowInstance,
    instance_key,
)
from src.workflow.state.registry import TaskRegistry
from src.workflow.workers import (
    ApprovalDecision,
    ApprovalGate,
    ExternalWorker,
    PhaseInput,
    WorkerResult,
    WorkerSet,
)


logger = logging.getLogger(__name__)


DEFAULT_MAX_REVIEW_ITERATIONS = 3
DEFAULT_MAX_VALIDATION_RETRIES = 3


class _Cancelled(Exception):
    """Internal signal: the instance was cancelled while inside a phase."""


class WorkflowStateMachine:
    """Runs the phases of one workflow instance.

    Attributes:
        log: The instance's checkpoint log (source of truth).
        registry: The shared task registry holding the instance's claim.
        workers: Workers for the worker-driven phases.
        approval_gate: Gate awaited during plan-approval.
        provisioner: Creates the worktree during worktree-setup. When None,
            the worktree is assumed to exist.
        emitter: Observability sink.
        max_review_iterations: Review passes before the loop gives up.
        max_validation_retries: Delivery-validation rewinds before giving up.

    Example:
        >>> machine = WorkflowStateMachine(log, registry, workers, gate)
        >>> status = await machine.run()
        >>> status
        <InstanceStatus.SHIPPED: 'shipped'>
    """

    def __init__(
        self,
        log: CheckpointLog,
        registry: TaskRegistry,
        workers: WorkerSet,
        approval_gate: ApprovalGate,
        provisioner: Optional[WorktreeProvisioner] = None,
        emitter: Optional[EventEmitter] = None,
        max_review_iterations: int = DEFAULT_MAX_REVIEW_ITERATIONS,
        max_validation_retries: int = DEFAULT_MAX_VALIDATION_RETRIES,
    ):
        if max_review_iterations < 1:
            raise ValueError("max_review_iterations must be at least 1")
        if max_validation_retries < 0:
            raise ValueError("max_validation_retries cannot be negative")

        self.log = log
        self.registry = registry
        self.workers = workers
        self.approval_gate = approval_gate
        self.provisioner = provisioner
        self.emitter = emitter or NullEventEmitter()
        self.max_review_iterations = max_review_iterations
        self.max_validation_retries = max_validation_retries

        self._cancel_event = asyncio.Event()
        self._document: Optional[CheckpointDocument] = None

        self._handlers: Dict[Phase, Callable[[PhaseInput], Awaitable[Dict[str, Any]]]] = {
            Phase.POLICY_SELECTION: self._record_policy,
            Phase.TASK_DISCOVERY: self._record_task,
            Phase.WORKTREE_SETUP: self._setup_worktree,
            Phase.EXPLORATION: self._worker_phase(lambda w: w.exploration),
            Phase.PLANNING: self._worker_phase(lambda w: w.planning),
            Phase.PLAN_APPROVAL: self._await_plan_approval,
            Phase.IMPLEMENTATION: self._worker_phase(lambda w: w.implementation),
            Phase.PRE_REVIEW_GATES: self._run_pre_review_gates,
            Phase.REVIEW_LOOP: self._run_review_loop,
            Phase.DELIVERY_VALIDATION: self._run_delivery_validation,
            Phase.DOCS_UPDATE: self._worker_phase(lambda w: w.docs),
            Phase.SHIP: self._worker_phase(lambda w: w.ship),
        }

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def document(self) -> CheckpointDocument:
        if self._document is None:
            self._document = self.log.load()
        return self._document

    @property
    def task(self) -> Task:
        return self.document.task

    @property
    def policy(self) -> Policy:
        return self.document.policy

    @property
    def key(self) -> str:
        return instance_key(self.task.source_kind, self.task.id)

    @property
    def resume_args(self) -> List[str]:
        return [self.document.branch]

    def snapshot(self) -> WorkflowInstance:
        """Reconstruct the runtime view of the instance from its log."""
        document = self.log.load()
        return WorkflowInstance(
            task=document.task,
            policy=document.policy,
            worktree=document.worktree,
            branch=document.branch,
            current_phase=document.workflow.current_phase,
            status=document.status,
            attempts=attempts_from_entries(document.steps),
            validation_retries=validation_retries_from_entries(document.steps),
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_cancel(self) -> None:
        """Ask the machine to abort at the next phase boundary."""
        logger.info("Cancel requested", extra={"instance": self.key})
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def _cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        return self.log.read_status() == InstanceStatus.ABORTED

    async def run(self) -> InstanceStatus:
        """Run phases until the instance ships, halts or is aborted.

        Returns:
            SHIPPED or ABORTED.

        Raises:
            WorkflowError: When the instance halts. The error carries the
                phase and the arguments that resume the instance.
            CorruptState: If the checkpoint log is invalid.
        """
        document = self.log.load()
        self._document = document

        if document.status in (InstanceStatus.SHIPPED, InstanceStatus.ABORTED):
            logger.info(
                "Instance already finished",
                extra={"instance": self.key, "status": document.status.value},
            )
            self.registry.release(self.task.id, self.task.source_kind)
            return document.status

        if document.status == InstanceStatus.HALTED:
            self.log.mark(InstanceStatus.RUNNING)
            self.registry.update_status(
                self.task.id, self.task.source_kind, InstanceStatus.RUNNING
            )

        logger.info(
            "Running workflow instance",
            extra={
                "instance": self.key,
                "branch": document.branch,
                "resume_from": (document.resume_from.value if document.resume_from else None),
            },
        )

        while True:
            entries = self.log.entries()
            phase = resume_phase(entries)
            if phase is None:
                await self._finish_shipped()
                return InstanceStatus.SHIPPED

            if self._cancelled():
                await self._finish_aborted(phase)
                return InstanceStatus.ABORTED

            try:
                await self._run_phase(phase, entries)
            except _Cancelled:
                await self._finish_aborted(phase)
                return InstanceStatus.ABORTED

    # ------------------------------------------------------------------
    # Phase execution
    # ------------------------------------------------------------------

    async def _run_phase(self, phase: Phase, entries: List[CheckpointEntry]) -> None:
        started = self.log.append_step(phase, StepStatus.STARTED)
        await self._emit(
            EventType.PHASE_TRANSITION,
            phase=phase.value,
            status=StepStatus.STARTED.value,
            attempt=started.attempt,
        )

        phase_input = PhaseInput(
            phase=phase.value,
            task=self.task,
            policy=self.policy,
            worktree=self.document.worktree,
            branch=self.document.branch,
            attempt=started.attempt,
            context=self._phase_context(phase, entries),
        )

        try:
            result = await self._handlers[phase](phase_input)
        except _Cancelled:
            self.log.append_step(
                phase, StepStatus.FAILED, result={"cancelled": True}, attempt=started.attempt
            )
            raise
        except ValidationFailed as e:
            await self._record_validation_failure(e, started.attempt)
            return
        except WorkflowError as e:
            await self._halt(phase, started.attempt, e)
            raise e.with_context(phase=phase.value, resume_args=self.resume_args)
        except Exception as e:
            logger.exception(
                "Phase raised an unexpected error",
                extra={"instance": self.key, "phase": phase.value},
            )
            failure = PhaseFailed(
                f"{phase.value} raised {type(e).__name__}: {e}",
                phase=phase.value,
                resume_args=self.resume_args,
                details={"exception": type(e).__name__},
            )
            await self._halt(phase, started.attempt, failure)
            raise failure from e

        self.log.append_step(
            phase, StepStatus.COMPLETED, result=result, attempt=started.attempt
        )
        await self._emit(
            EventType.PHASE_TRANSITION,
            phase=phase.value,
            status=StepStatus.COMPLETED.value,
            attempt=started.attempt,
        )

    def _phase_context(self, phase: Phase, entries: List[CheckpointEntry]) -> Dict[str, Any]:
        """Collect the earlier results a phase's worker needs."""
        completed: Dict[Phase, Dict[str, Any]] = {}
        last_impl_done = -1
        last_validation_failure: Optional[int] = None
        for index, entry in enumerate(entries):
            if entry.status == StepStatus.COMPLETED:
                completed[entry.step] = entry.result or {}
                if entry.step == Phase.IMPLEMENTATION:
                    last_impl_done = index
            elif (
                entry.status == StepStatus.FAILED
                and entry.step == Phase.DELIVERY_VALIDATION
            ):
                last_validation_failure = index

        context: Dict[str, Any] = {}
        if Phase.EXPLORATION in completed:
            context["exploration"] = completed[Phase.EXPLORATION]
        if Phase.PLANNING in completed:
            context["plan"] = completed[Phase.PLANNING]
        if Phase.PLAN_APPROVAL in completed:
            context["approval"] = completed[Phase.PLAN_APPROVAL]

        if (
            phase == Phase.IMPLEMENTATION
            and last_validation_failure is not None
            and last_validation_failure > last_impl_done
        ):
            failed_result = entries[last_validation_failure].result or {}
            context["fixes"] = failed_result.get("fixes", [])

        if phase == Phase.SHIP:
            context["stopping_point"] = self.policy.stopping_point.value
        return context

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _record_policy(self, phase_input: PhaseInput) -> Dict[str, Any]:
        return {"policy": self.policy.model_dump(mode="json", by_alias=True)}

    async def _record_task(self, phase_input: PhaseInput) -> Dict[str, Any]:
        return {"task": self.task.model_dump(mode="json", by_alias=True)}

    async def _setup_worktree(self, phase_input: PhaseInput) -> Dict[str, Any]:
        spec = WorktreeSpec(path=Path(phase_input.worktree), branch=phase_input.branch)
        if self.provisioner is not None:
            path = await self.provisioner.provision(spec)
        else:
            path = spec.path
        return {"worktree": str(path), "branch": spec.branch}

    def _worker_phase(
        self, select: Callable[[WorkerSet], ExternalWorker]
    ) -> Callable[[PhaseInput], Awaitable[Dict[str, Any]]]:
        async def handler(phase_input: PhaseInput) -> Dict[str, Any]:
            outcome = await select(self.workers).run(phase_input)
            return _require_success(phase_input.phase, outcome)

        return handler

    async def _await_plan_approval(self, phase_input: PhaseInput) -> Dict[str, Any]:
        plan = phase_input.context.get("plan", {})
        approval = asyncio.ensure_future(
            self.approval_gate.await_approval(self.key, plan)
        )
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {approval, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for pending in (approval, cancelled):
                if not pending.done():
                    pending.cancel()

        if approval not in done:
            raise _Cancelled()

        decision: ApprovalDecision = approval.result()
        if not decision.approved:
            raise PlanRejected(
                f"Plan rejected{': ' + decision.feedback if decision.feedback else ''}",
                details={"approved": False, "feedback": decision.feedback},
            )
        return {
            "approved": True,
            "feedback": decision.feedback,
            "decidedBy": decision.decided_by,
        }

    async def _run_pre_review_gates(self, phase_input: PhaseInput) -> Dict[str, Any]:
        gates = {"cleanup": self.workers.cleanup, "coverage": self.workers.coverage}
        inputs = [
            phase_input.model_copy(update={"phase": name}) for name in gates
        ]
        outcomes = await asyncio.gather(
            *(worker.run(gate_input) for worker, gate_input in zip(gates.values(), inputs)),
            return_exceptions=True,
        )

        recorded: Dict[str, Any] = {}
        failed: List[str] = []
        for name, outcome in zip(gates, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                recorded[name] = {
                    "status": "failed",
                    "error": f"{type(outcome).__name__}: {outcome}",
                }
                failed.append(name)
            else:
                recorded[name] = outcome.model_dump(mode="json")
                if not outcome.ok:
                    failed.append(name)

        if failed:
            raise PhaseFailed(
                f"Pre-review gates failed: {', '.join(failed)}",
                details={"gates": recorded},
            )
        return {"gates": recorded}

    async def _run_review_loop(self, phase_input: PhaseInput) -> Dict[str, Any]:
        feedback: Optional[Dict[str, Any]] = None
        for iteration in range(1, self.max_review_iterations + 1):
            context = dict(phase_input.context)
            context["iteration"] = iteration
            if feedback is not None:
                context["feedback"] = feedback
            review_input = phase_input.model_copy(update={"context": context})

            outcome = await self.workers.review.run(review_input)
            result = _require_success(phase_input.phase, outcome)
            if result.get("approved") is True:
                logger.info(
                    "Review approved",
                    extra={"instance": self.key, "iteration": iteration},
                )
                return {"iterations": iteration, "review": result}
            feedback = result

        raise IterationLimitExceeded(
            self.max_review_iterations,
            phase_input.phase,
            details={"iterations": self.max_review_iterations, "feedback": feedback},
        )

    async def _run_delivery_validation(self, phase_input: PhaseInput) -> Dict[str, Any]:
        outcome = await self.workers.validation.run(phase_input)
        fixes = outcome.result.get("fixes")
        if outcome.ok and outcome.result.get("passed", True) is not False:
            return outcome.result
        if not outcome.ok and not fixes:
            raise PhaseFailed(
                "delivery-validation worker reported failure",
                details={"result": outcome.result},
            )
        raise ValidationFailed(fixes or [])

    async def _record_validation_failure(self, error: ValidationFailed, attempt: int) -> None:
        phase = Phase.DELIVERY_VALIDATION
        self.log.append_step(
            phase,
            StepStatus.FAILED,
            result={"error_kind": error.kind, "fixes": error.fixes},
            attempt=attempt,
        )
        await self._emit(
            EventType.PHASE_FAILED,
            phase=phase.value,
            error_kind=error.kind,
            fix_count=len(error.fixes),
        )

        retries = validation_retries_from_entries(self.log.entries())
        if retries > self.max_validation_retries:
            limit = IterationLimitExceeded(
                self.max_validation_retries,
                phase.value,
                resume_args=self.resume_args,
                details={"retries": retries, "fixes": error.fixes},
            )
            await self._mark_halted(phase, limit)
            raise limit

        logger.info(
            "Delivery validation failed, returning to implementation",
            extra={"instance": self.key, "retry": retries, "fix_count": len(error.fixes)},
        )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _halt(self, phase: Phase, attempt: int, error: WorkflowError) -> None:
        result = {"error_kind": error.kind, "error": error.message}
        result.update(error.details)
        self.log.append_step(phase, StepStatus.FAILED, result=result, attempt=attempt)
        await self._emit(
            EventType.PHASE_FAILED,
            phase=phase.value,
            error_kind=error.kind,
            error=error.message,
        )
        await self._mark_halted(phase, error)

    async def _mark_halted(self, phase: Phase, error: WorkflowError) -> None:
        if self.log.read_status() == InstanceStatus.ABORTED:
            # aborted from another process while the phase was running
            raise _Cancelled()
        self.log.mark(InstanceStatus.HALTED)
        self.registry.update_status(
            self.task.id, self.task.source_kind, InstanceStatus.HALTED
        )
        logger.warning(
            "Workflow instance halted",
            extra={"instance": self.key, "phase": phase.value, "error_kind": error.kind},
        )
        await self._emit(
            EventType.HALTED,
            phase=phase.value,
            error_kind=error.kind,
            error=error.message,
        )

    async def _finish_shipped(self) -> None:
        self.log.mark(InstanceStatus.SHIPPED)
        self.registry.release(self.task.id, self.task.source_kind)
        logger.info("Workflow instance shipped", extra={"instance": self.key})
        await self._emit(
            EventType.SHIPPED, stopping_point=self.policy.stopping_point.value
        )

    async def _finish_aborted(self, phase: Phase) -> None:
        if self.log.read_status() != InstanceStatus.ABORTED:
            self.log.mark(InstanceStatus.ABORTED)
        self.registry.release(self.task.id, self.task.source_kind)
        logger.warning(
            "Workflow instance aborted",
            extra={"instance": self.key, "phase": phase.value},
        )
        await self._emit(EventType.ABORTED, phase=phase.value)

    async def _emit(self, event_type: EventType, **details: Any) -> None:
        try:
            await self.emitter.emit(
                WorkflowEvent(
                    event_type=event_type,
                    task_id=self.task.id,
                    source=self.task.source_kind.value,
                    details=details,
                )
            )
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={"instance": self.key, "event_type": event_type.value},
            )


def _require_success(phase: str, outcome: WorkerResult) -> Dict[str, Any]:
    if not outcome.ok:
        raise PhaseFailed(
            f"{phase} worker reported failure",
            details={"result": outcome.result},
        )
    return outcome.result
