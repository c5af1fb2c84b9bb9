"""
Executor for execution plans.

Runs every stage of a plan against a set of targets. Targets are independent
workers on a bounded thread pool; within a target, tasks run strictly in plan
order. Every task attempt produces exactly one run record in the ledger.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..database.manager import RunLedger
from ..tasks.base import TaskUnit
from .errors import ApplyError, LedgerWriteError, ScannerError, TaskTimeoutError
from .models import (
    RunRecord, ScanResult, TargetRunState, TargetState, TaskKind, TaskOutcome, Target, utcnow
)
from .plan import ExecutionPlan, Stage

logger = logging.getLogger(__name__)

CarryOver = Mapping[Tuple[str, str], RunRecord]


@dataclass
class ExecutionResult:
    """
    What a call to Executor.run() produced.

    Attributes:
        states: Terminal state of every target, in dispatch order
        scans: Scan results per target id, keyed by scan task id
        cancelled: Whether dispatch was cancelled before the plan finished
    """
    states: List[TargetRunState]
    scans: Dict[str, Dict[str, ScanResult]]
    cancelled: bool = False

    def state_of(self, target_id: str) -> Optional[TargetRunState]:
        for state in self.states:
            if state.target_id == target_id:
                return state
        return None


@dataclass
class _TargetRun:
    """Mutable progress of one target; only its own worker touches it."""
    target: Target
    state: TargetRunState
    stages_done: int = 0
    failures: List[str] = field(default_factory=list)
    scans: Dict[str, ScanResult] = field(default_factory=dict)
    # (task id, thread, timeout) of a call abandoned after a timeout
    in_flight: Optional[Tuple[str, threading.Thread, float]] = None

    @property
    def active(self) -> bool:
        return self.state.state == TargetState.RUNNING


class Executor:
    """
    Applies an execution plan to targets and records every attempt.

    A failed task under an abort-pipeline stage aborts its own target only.
    Scanner failures are recorded and never abort. A call that overruns the
    task timeout is recorded as failed; if it is still running one timeout
    later, its target is aborted rather than sent more work. A ledger write
    failure stops all further dispatch and is re-raised once in-flight calls
    finish.
    """

    def __init__(self, ledger: RunLedger, max_workers: int = 8,
                 task_timeout: Optional[float] = 600, lockstep: bool = False,
                 kind_timeouts: Optional[Mapping[TaskKind, float]] = None):
        """
        Initialize the executor.

        Args:
            ledger: Run ledger receiving one record per task attempt
            max_workers: Upper bound on targets processed concurrently
            task_timeout: Seconds allowed per check/apply call (None disables)
            lockstep: Start a stage only after every active target finished the previous one
            kind_timeouts: Per-kind bounds replacing task_timeout, for kinds that
                wrap a long-running collaborator (scans, remediation roles)
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.ledger = ledger
        self.max_workers = max_workers
        self.task_timeout = task_timeout
        self.lockstep = lockstep
        self.kind_timeouts = dict(kind_timeouts or {})
        self._cancel_event = threading.Event()
        self._error_lock = threading.Lock()
        self._ledger_error: Optional[LedgerWriteError] = None

    def cancel(self) -> None:
        """Stop dispatching new tasks. Calls already in flight finish normally."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested; no new tasks will be dispatched")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(self, run_id: str, plan: ExecutionPlan, targets: Sequence[Target],
            carry_over: Optional[CarryOver] = None,
            evidence_dir: Optional[Path] = None) -> ExecutionResult:
        """
        Execute a plan against targets.

        Args:
            run_id: Run the records belong to
            plan: Validated execution plan
            targets: Targets in dispatch order
            carry_over: Prior successful records keyed by (target id, task id);
                these tasks are recorded as skipped and not attempted again
            evidence_dir: Run evidence directory; each target gets a subdirectory

        Returns:
            ExecutionResult: Terminal state per target plus collected scans

        Raises:
            LedgerWriteError: If any run record could not be persisted
        """
        carry_over = carry_over or {}
        runs = [
            _TargetRun(target=target, state=TargetRunState(
                target_id=target.id,
                evidence_dir=str(Path(evidence_dir) / target.id) if evidence_dir else None
            ))
            for target in targets
        ]

        logger.info("Run %s: plan %s, %d stage(s), %d target(s)%s",
                    run_id, plan.name, len(plan), len(runs), " (lockstep)" if self.lockstep else "")

        if runs:
            workers = min(self.max_workers, len(runs))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="target") as pool:
                try:
                    if self.lockstep:
                        self._run_lockstep(pool, run_id, plan, runs, carry_over)
                    else:
                        futures = [pool.submit(self._guarded, self._run_target, run_id, plan, tr, carry_over)
                                   for tr in runs]
                        self._drain(futures)
                except KeyboardInterrupt:
                    self.cancel()

        for tr in runs:
            self._finalize(tr, len(plan))

        if self._ledger_error is not None:
            raise self._ledger_error

        return ExecutionResult(
            states=[tr.state for tr in runs],
            scans={tr.target.id: dict(tr.scans) for tr in runs},
            cancelled=self.cancelled
        )

    def _run_lockstep(self, pool: ThreadPoolExecutor, run_id: str, plan: ExecutionPlan,
                      runs: List[_TargetRun], carry_over: CarryOver) -> None:
        for tr in runs:
            self._start(tr)
        for stage in plan.stages():
            active = [tr for tr in runs if tr.active]
            if not active or self.cancelled:
                return
            logger.info("Stage %s on %d target(s)", stage.name, len(active))
            self._drain([pool.submit(self._guarded, self._run_stage, run_id, stage, tr, carry_over)
                         for tr in active])

    @staticmethod
    def _drain(futures) -> None:
        for future in futures:
            future.result()

    def _run_target(self, run_id: str, plan: ExecutionPlan, tr: _TargetRun,
                    carry_over: CarryOver) -> None:
        if self.cancelled:
            return
        self._start(tr)
        for stage in plan.stages():
            if not tr.active:
                return
            self._run_stage(run_id, stage, tr, carry_over)

    def _run_stage(self, run_id: str, stage: Stage, tr: _TargetRun, carry_over: CarryOver) -> None:
        """Run one stage's tasks in order for one target."""
        target = tr.target
        for task in stage.tasks:
            if self.cancelled:
                self._abort(tr, stage.name, self._stop_reason())
                return
            if tr.in_flight is not None and not self._settle(tr):
                self._abort(tr, None, f"{tr.in_flight[0]} timed out and is still running")
                return

            carried = carry_over.get((target.id, task.id))
            if carried is not None:
                now = utcnow()
                self._record(run_id, target, stage, task, now, now, TaskOutcome.SKIPPED,
                             f"carried over from run {carried.run_id}")
                continue

            started = utcnow()
            try:
                if self._call(task.check, tr, task):
                    outcome, detail = TaskOutcome.SKIPPED, "already in desired state"
                else:
                    result = self._call(task.apply, tr, task)
                    if result.status == TaskOutcome.FAILED:
                        raise ApplyError(result.detail or f"{task.id} reported failure")
                    outcome, detail = result.status, result.detail
                    if result.scan_result is not None:
                        tr.scans[task.id] = result.scan_result
                        self.ledger.save_scan_result(run_id, task.id, result.scan_result)
            except LedgerWriteError:
                raise
            except ScannerError as e:
                self._record_failure(run_id, tr, stage, task, started, f"scanner error: {e}")
                continue
            except Exception as e:
                detail = str(e) or type(e).__name__
                if not isinstance(e, ApplyError):
                    logger.exception("Unexpected error in task %s on %s", task.id, target.id)
                    detail = f"{type(e).__name__}: {detail}"
                self._record_failure(run_id, tr, stage, task, started, detail)
                if task.kind == TaskKind.EXTERNAL_SCAN:
                    continue
                if stage.aborts_on_failure:
                    self._abort(tr, stage.name, f"{task.id} failed: {detail}")
                    return
                continue

            self._record(run_id, target, stage, task, started, utcnow(), outcome, detail)

        tr.stages_done += 1

    def _record_failure(self, run_id: str, tr: _TargetRun, stage: Stage, task: TaskUnit,
                        started, detail: str) -> None:
        logger.error("Task %s failed on %s (stage %s): %s", task.id, tr.target.id, stage.name, detail)
        tr.failures.append(task.id)
        if tr.state.failed_stage is None:
            tr.state.failed_stage = stage.name
        self._record(run_id, tr.target, stage, task, started, utcnow(), TaskOutcome.FAILED, detail)

    def _record(self, run_id: str, target: Target, stage: Stage, task: TaskUnit,
                started, finished, outcome: TaskOutcome, detail: str) -> None:
        self.ledger.append(RunRecord(
            run_id=run_id,
            target_id=target.id,
            stage=stage.name,
            task_id=task.id,
            started_at=started,
            finished_at=finished,
            outcome=outcome,
            detail=detail
        ))
        logger.debug("%s %s/%s: %s %s", run_id, target.id, task.id, outcome.value, detail)

    def _call(self, fn: Callable[[Target], Any], tr: _TargetRun, task: TaskUnit) -> Any:
        """
        Call a task method under the per-task timeout.

        The call runs on a daemon thread; when it does not return in time it
        is abandoned and TaskTimeoutError is raised in its place. The thread
        is kept on the target run so nothing else is dispatched to the target
        while it is still alive.
        """
        target = tr.target
        if not self.task_timeout:
            return fn(target)
        timeout = self.kind_timeouts.get(task.kind, self.task_timeout)

        box: Dict[str, Any] = {}

        def runner():
            try:
                box['result'] = fn(target)
            except BaseException as e:
                box['error'] = e

        thread = threading.Thread(target=runner, name=f"task-{target.id}", daemon=True)
        thread.start()
        thread.join(timeout)
        if thread.is_alive():
            tr.in_flight = (task.id, thread, timeout)
            raise TaskTimeoutError(f"{target.id} did not answer within {timeout}s")
        if 'error' in box:
            raise box['error']
        return box['result']

    def _settle(self, tr: _TargetRun) -> bool:
        """Give a call abandoned after a timeout one more window to finish."""
        task_id, thread, timeout = tr.in_flight
        logger.warning("Waiting for timed-out task %s on %s before dispatching more work",
                       task_id, tr.target.id)
        thread.join(timeout)
        if thread.is_alive():
            return False
        logger.info("Timed-out task %s on %s finished late", task_id, tr.target.id)
        tr.in_flight = None
        return True

    def _guarded(self, fn: Callable[..., None], run_id: str, stage_or_plan, tr: _TargetRun,
                 carry_over: CarryOver) -> None:
        """
        Run a worker body.

        A ledger failure cancels every other worker; any other error escaping
        the body aborts this target only.
        """
        try:
            fn(run_id, stage_or_plan, tr, carry_over)
        except LedgerWriteError as e:
            with self._error_lock:
                if self._ledger_error is None:
                    self._ledger_error = e
            logger.critical("Ledger write failed, stopping run %s: %s", run_id, e)
            self._cancel_event.set()
            self._abort(tr, tr.state.failed_stage, "ledger write failed")
        except Exception as e:
            logger.exception("Worker for %s failed unexpectedly", tr.target.id)
            self._abort(tr, tr.state.failed_stage, f"internal error: {type(e).__name__}: {e}")

    def _start(self, tr: _TargetRun) -> None:
        tr.state.state = TargetState.RUNNING
        logger.info("Target %s: running", tr.target.id)

    def _abort(self, tr: _TargetRun, stage_name: Optional[str], reason: str) -> None:
        tr.state.state = TargetState.ABORTED
        tr.state.failed_stage = stage_name or tr.state.failed_stage
        tr.state.reason = reason
        logger.warning("Target %s aborted%s: %s", tr.target.id,
                       f" in stage {stage_name}" if stage_name else "", reason)

    def _stop_reason(self) -> str:
        return "ledger write failed" if self._ledger_error is not None else "cancelled"

    def _finalize(self, tr: _TargetRun, stage_count: int) -> None:
        """Move a target into its terminal state once dispatch is over."""
        if tr.state.state.is_terminal:
            return
        if tr.state.state == TargetState.PENDING or tr.stages_done < stage_count:
            self._abort(tr, None, self._stop_reason())
        elif tr.failures:
            tr.state.state = TargetState.PARTIALLY_FAILED
            tr.state.reason = f"failed tasks: {', '.join(tr.failures)}"
            logger.warning("Target %s partially failed: %s", tr.target.id, tr.state.reason)
        else:
            tr.state.state = TargetState.COMPLETED
            logger.info("Target %s: completed", tr.target.id)
