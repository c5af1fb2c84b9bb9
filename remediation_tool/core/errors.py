"""
Exception taxonomy for the remediation tool.

Authoring errors (registry and plan) are fatal before any dispatch happens.
Apply errors are contained to a single target according to the stage policy,
scanner errors never abort a run, and ledger write errors abort the whole run
because audit evidence cannot be guaranteed without them.
"""

from typing import Optional


class RemediationToolError(Exception):
    """Base class for every error raised by the remediation tool."""


class ConfigError(RemediationToolError):
    """Raised when a configuration or inventory file cannot be used."""


# Target registry

class DuplicateTargetError(RemediationToolError):
    """Raised when a target id is registered twice."""

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"Target already registered: {target_id}")


class UnknownTargetError(RemediationToolError, KeyError):
    """Raised when a target id or tag does not resolve to any target."""

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"Unknown target: {target_id}")

    def __str__(self) -> str:
        return self.args[0]


class RegistryFrozenError(RemediationToolError):
    """Raised when the registry is modified while a run is in progress."""


# Plan authoring

class PlanError(RemediationToolError):
    """Base class for plan authoring errors."""


class EmptyPlanError(PlanError):
    """Raised when a plan defines no stages."""


class DuplicateTaskError(PlanError):
    """Raised when a task id appears more than once in a plan."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Duplicate task id in plan: {task_id}")


class PlanValidationError(PlanError):
    """Raised when a plan definition is structurally invalid."""


# Execution

class ApplyError(RemediationToolError):
    """
    A task unit's side-effecting step failed.

    Attributes:
        message: Human-readable description of the failure
        cause: Underlying exception or collaborator output, if any
    """

    def __init__(self, message: str, cause: Optional[object] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.cause is not None and str(self.cause):
            return f"{self.message}: {self.cause}"
        return self.message


class NotFoundError(ApplyError):
    """Raised when a path expected to be present on the target is absent."""


class TaskTimeoutError(ApplyError):
    """Raised when a target does not answer within the per-task timeout."""


class TransportError(ApplyError):
    """Raised when the connection to a target cannot be established or used."""


class ScannerError(RemediationToolError):
    """
    The external compliance scanner failed.

    Scanner failures are always recorded and never abort a run.
    """

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 stderr: Optional[str] = None):
        self.message = message
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.exit_code is not None:
            parts.append(f"exit code {self.exit_code}")
        if self.stderr:
            lines = self.stderr.strip().splitlines()
            if lines:
                parts.append(lines[-1])
        return " | ".join(parts)


class LedgerWriteError(RemediationToolError):
    """Raised when a run record cannot be persisted. Fatal to the whole run."""
