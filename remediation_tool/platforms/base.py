"""
Collaborator interfaces for task units.

Defines the contracts that task units use to reach a target: a command
transport, the host operations (packages, services, firewall, file modes),
the external compliance scanner and opaque remediation content.

Every ``ensure_*`` operation returns True when it changed the target and
False when the target was already in the desired state. Failures raise
ApplyError (or one of its subclasses) and leave the prior state in place.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..core.models import ScanResult, Target


@dataclass
class CommandResult:
    """Result of a command executed through a transport."""
    command: str
    stdout: str
    stderr: str
    exit_code: int
    execution_time_ms: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Transport(ABC):
    """Runs commands on, and fetches files from, one target."""

    @abstractmethod
    def execute_command(self, command: str, timeout: int = 30) -> CommandResult:
        """
        Execute a shell command on the target.

        Args:
            command: Command line, interpreted by the target's shell
            timeout: Timeout in seconds

        Returns:
            CommandResult: Captured output and exit code

        Raises:
            TransportError: If the target cannot be reached
            TaskTimeoutError: If the command does not finish in time
        """
        pass

    @abstractmethod
    def fetch_file(self, remote_path: str, local_path: Path) -> Path:
        """
        Copy a file from the target to the local machine.

        Raises:
            NotFoundError: If the remote file does not exist
        """
        pass

    def close(self) -> None:
        """Release the connection, if any."""
        return None


class BasePlatform(ABC):
    """
    Host operations for one target.

    Query methods (``is_*``, ``rule_flags``, ``rule_state``, ``get_mode``)
    must be free of side effects; they back the task units' check().
    """

    def __init__(self, target: Target):
        self.target = target

    # Packages

    @abstractmethod
    def is_installed(self, name: str) -> bool:
        pass

    @abstractmethod
    def ensure_installed(self, name: str) -> bool:
        pass

    # Services

    @abstractmethod
    def is_running(self, name: str) -> bool:
        pass

    @abstractmethod
    def ensure_running(self, name: str) -> bool:
        pass

    @abstractmethod
    def is_enabled(self, name: str) -> bool:
        pass

    @abstractmethod
    def ensure_enabled(self, name: str) -> bool:
        pass

    # Firewall

    @abstractmethod
    def rule_flags(self, service: str, persistent: bool = True) -> Tuple[bool, bool]:
        """
        Presence of an allow rule for ``service`` as (runtime, permanent).

        The permanent flag is only looked up when ``persistent`` is set and
        is False otherwise.
        """
        pass

    def rule_state(self, service: str, persistent: bool = True) -> bool:
        """
        Whether traffic for ``service`` is currently allowed.

        With ``persistent`` the rule must also survive a firewall reload.
        """
        runtime, permanent = self.rule_flags(service, persistent)
        return runtime and (permanent or not persistent)

    @abstractmethod
    def ensure_rule(self, service: str, enabled: bool, persistent: bool = True) -> bool:
        pass

    # File attributes

    @abstractmethod
    def get_mode(self, path: str, kind: str = "file") -> int:
        """
        Current permission bits of ``path``.

        Raises:
            NotFoundError: If the path is absent
            ApplyError: If the path exists but is not of the expected kind
        """
        pass

    @abstractmethod
    def ensure_mode(self, path: str, mode: int, kind: str = "file") -> bool:
        pass

    def close(self) -> None:
        """Release resources held for the target."""
        return None


class ComplianceScanner(ABC):
    """External compliance scanner invoked by external-scan task units."""

    @abstractmethod
    def scan(self, target: Target, profile_id: str, content_source: str,
             output_path: Path, report_path: Optional[Path] = None) -> ScanResult:
        """
        Evaluate a compliance profile against a target.

        Args:
            target: Target to scan
            profile_id: Profile to evaluate
            content_source: Location of the compliance content
            output_path: Where to store the machine-readable results
            report_path: Where to store the human-readable report, if wanted

        Returns:
            ScanResult: Per-rule results

        Raises:
            ScannerError: If the scanner could not produce results
        """
        pass


class RemediationContent(ABC):
    """Opaque third-party remediation content, applied as one unit."""

    @abstractmethod
    def apply(self, target: Target, role: str, variables: Dict[str, Any]) -> bool:
        """
        Apply the content to the target.

        Returns:
            bool: True when the content reports changes

        Raises:
            ApplyError: If the content run fails
        """
        pass

    def verify(self, target: Target, role: str, variables: Dict[str, Any]) -> Optional[bool]:
        """
        Whether the content is already satisfied on the target.

        Returns None when the content offers no way to tell.
        """
        return None
