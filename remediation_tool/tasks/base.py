"""
Base task unit interface.

A task unit is one idempotent, declaratively described operation. It exposes
a side-effect-free desired-state query (check) and the operation itself
(apply). Re-applying a unit against a target already in the desired state is
a no-op and never fails.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.errors import PlanValidationError
from ..core.models import Outcome, TaskKind, TaskSpec, Target
from ..platforms.base import BasePlatform, ComplianceScanner, RemediationContent

_REQUIRED = object()


@dataclass
class TaskContext:
    """
    Collaborators available to the task units of one run.

    Attributes:
        platforms: Factory handing out per-target platform handlers
        scanner: Compliance scanner for external-scan units
        remediation: Remediation content for composite-role units
        evidence_dir: Run-scoped directory for scan artifacts
    """
    platforms: Any
    scanner: Optional[ComplianceScanner] = None
    remediation: Optional[RemediationContent] = None
    evidence_dir: Optional[Path] = None


class TaskUnit(ABC):
    """
    Abstract base class for task units.

    Subclasses declare their ``kind`` and implement check() and apply().
    apply() raises ApplyError (or a subclass) when the side-effecting step
    fails; the executor turns that into a ``failed`` record.
    """

    kind: TaskKind

    def __init__(self, spec: TaskSpec, context: TaskContext):
        """
        Initialize the task unit.

        Args:
            spec: Declarative task description from the plan
            context: Collaborators for this run

        Raises:
            PlanValidationError: If the parameters are incomplete or invalid
        """
        if spec.kind != self.kind:
            raise PlanValidationError(f"Task {spec.id} has kind {spec.kind.value}, expected {self.kind.value}")
        self.spec = spec
        self.context = context
        self.validate()

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def params(self) -> Dict[str, Any]:
        return self.spec.params

    def validate(self) -> None:
        """Check parameters at plan build time."""
        return None

    @abstractmethod
    def check(self, target: Target) -> bool:
        """
        Whether the target is already in the desired state.

        Must not change the target.
        """
        pass

    @abstractmethod
    def apply(self, target: Target) -> Outcome:
        """
        Bring the target into the desired state.

        Returns:
            Outcome: Successful outcome, with a scan payload for scans

        Raises:
            ApplyError: If the change could not be made
        """
        pass

    def describe(self) -> str:
        """One-line human description used in logs and plan listings."""
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.params.items()))
        return f"{self.kind.value}({details})"

    def platform(self, target: Target) -> BasePlatform:
        return self.context.platforms.get_platform(target)

    def param(self, name: str, default: Any = _REQUIRED) -> Any:
        """Fetch a parameter, raising PlanValidationError if a required one is missing."""
        if name in self.params:
            return self.params[name]
        if default is _REQUIRED:
            raise PlanValidationError(f"Task {self.id} ({self.kind.value}) is missing parameter '{name}'")
        return default

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"
