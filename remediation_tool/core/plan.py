"""
Execution plan (stage graph).

A plan is a strict total order of named stages, each holding an ordered list
of task units and a failure policy. Plans are validated when they are built;
a plan that fails validation never reaches the executor.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..tasks.base import TaskUnit
from ..tasks.factory import TaskFactory
from .errors import DuplicateTaskError, EmptyPlanError, PlanValidationError
from .models import CANONICAL_STAGES, FailurePolicy, PlanSpec, TaskKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage:
    """A named, ordered group of task units executed as one pipeline step."""
    name: str
    tasks: Tuple[TaskUnit, ...]
    policy: FailurePolicy = FailurePolicy.ABORT_PIPELINE

    @property
    def aborts_on_failure(self) -> bool:
        return self.policy == FailurePolicy.ABORT_PIPELINE


class ExecutionPlan:
    """
    Validated, ordered sequence of stages.

    Task unit instances belong to one plan instance; a new run builds a new
    plan so that no unit is shared between runs.
    """

    def __init__(self, name: str, stages: Sequence[Stage],
                 evidence_before: Optional[str] = None,
                 evidence_after: Optional[str] = None,
                 description: Optional[str] = None):
        """
        Initialize and validate the plan.

        Args:
            name: Plan name
            stages: Stages in execution order
            evidence_before: Task id of the baseline scan (defaults to the first scan)
            evidence_after: Task id of the verification scan (defaults to the last scan)
            description: Free-form description

        Raises:
            EmptyPlanError: If there are no stages
            DuplicateTaskError: If a task id is used twice
            PlanValidationError: If stage names or evidence references are invalid
        """
        self.name = name
        self.description = description
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._tasks: Dict[str, TaskUnit] = {}
        self._stage_of: Dict[str, str] = {}
        self._validate()
        self._evidence = self._resolve_evidence(evidence_before, evidence_after)

    @classmethod
    def build(cls, spec: PlanSpec, factory: TaskFactory) -> "ExecutionPlan":
        """
        Build a plan from its declarative description.

        Args:
            spec: Plan document
            factory: Task factory bound to the run's collaborators

        Returns:
            ExecutionPlan: Validated plan
        """
        if not spec.stages:
            raise EmptyPlanError(f"Plan '{spec.name}' defines no stages")
        stages = [
            Stage(name=stage.name,
                  tasks=tuple(factory.create(task) for task in stage.tasks),
                  policy=stage.policy)
            for stage in spec.stages
        ]
        return cls(spec.name, stages, spec.evidence_before, spec.evidence_after, spec.description)

    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    def tasks(self) -> List[TaskUnit]:
        return list(self._tasks.values())

    def task(self, task_id: str) -> TaskUnit:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise PlanValidationError(f"Unknown task id: {task_id}") from None

    def stage_of(self, task_id: str) -> str:
        return self._stage_of[task_id]

    def scan_tasks(self) -> List[TaskUnit]:
        return [t for t in self._tasks.values() if t.kind == TaskKind.EXTERNAL_SCAN]

    def evidence_pair(self) -> Optional[Tuple[str, str]]:
        """(baseline scan task id, verification scan task id), if the plan has both."""
        return self._evidence

    def __len__(self) -> int:
        return len(self._stages)

    def _validate(self) -> None:
        if not self._stages:
            raise EmptyPlanError(f"Plan '{self.name}' defines no stages")

        names = [stage.name for stage in self._stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise PlanValidationError(f"Duplicate stage names: {', '.join(duplicates)}")

        canonical = [n for n in names if n in CANONICAL_STAGES]
        if canonical != sorted(canonical, key=CANONICAL_STAGES.index):
            raise PlanValidationError(
                f"Stages out of order: {' -> '.join(canonical)} (expected {' -> '.join(CANONICAL_STAGES)})"
            )

        for stage in self._stages:
            if not stage.tasks:
                logger.warning("Stage %s of plan %s has no tasks", stage.name, self.name)
            for task in stage.tasks:
                if task.id in self._tasks:
                    raise DuplicateTaskError(task.id)
                self._tasks[task.id] = task
                self._stage_of[task.id] = stage.name

    def _resolve_evidence(self, before: Optional[str], after: Optional[str]) -> Optional[Tuple[str, str]]:
        scan_ids = [t.id for t in self.scan_tasks()]
        for ref in (before, after):
            if ref is not None and ref not in scan_ids:
                raise PlanValidationError(f"Evidence reference {ref} is not an external-scan task")

        if before is None and after is None:
            if len(scan_ids) < 2:
                return None
            return scan_ids[0], scan_ids[-1]

        before = before or scan_ids[0]
        after = after or scan_ids[-1]
        if scan_ids.index(before) >= scan_ids.index(after):
            raise PlanValidationError(f"Baseline scan {before} must run before verification scan {after}")
        return before, after
