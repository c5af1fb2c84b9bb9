"""
Task factory for creating task units from declarative task specs.
"""

from typing import Dict, List, Type

from ..core.errors import PlanValidationError
from ..core.models import TaskKind, TaskSpec
from .base import TaskContext, TaskUnit
from .units import (
    CompositeRoleTask, ExternalScanTask, FileAttrTask, FirewallRuleTask, PackageTask, ServiceTask
)


class TaskFactory:
    """
    Factory class for creating task units.

    Maps each task kind to the class implementing it and binds new units to
    the collaborators of the current run.
    """

    _tasks: Dict[TaskKind, Type[TaskUnit]] = {
        TaskKind.PACKAGE: PackageTask,
        TaskKind.SERVICE: ServiceTask,
        TaskKind.FIREWALL_RULE: FirewallRuleTask,
        TaskKind.FILE_ATTR: FileAttrTask,
        TaskKind.EXTERNAL_SCAN: ExternalScanTask,
        TaskKind.COMPOSITE_ROLE: CompositeRoleTask,
    }

    def __init__(self, context: TaskContext):
        """
        Initialize the factory.

        Args:
            context: Collaborators handed to every unit created
        """
        self.context = context

    def create(self, spec: TaskSpec) -> TaskUnit:
        """
        Create a task unit for a spec.

        Args:
            spec: Declarative task description

        Returns:
            TaskUnit: Unit bound to this factory's context

        Raises:
            PlanValidationError: If the kind is unknown or parameters are invalid
        """
        if spec.kind not in self._tasks:
            raise PlanValidationError(f"Unsupported task kind: {spec.kind}")
        return self._tasks[spec.kind](spec, self.context)

    @classmethod
    def get_supported_kinds(cls) -> List[TaskKind]:
        return list(cls._tasks.keys())

    @classmethod
    def register_task(cls, kind: TaskKind, task_class: Type[TaskUnit]) -> None:
        """
        Register a task class for a kind.

        Args:
            kind: Task kind to register for
            task_class: Task unit class
        """
        cls._tasks[kind] = task_class
