"""
Command-driven remediation content.

Third-party remediation content (for example an Ansible hardening role) is
run as one opaque command from the control machine. Its individual steps are
not modelled; the run reports a single aggregate result.
"""

import json
import logging
import re
import shlex
from typing import Any, Dict, Optional

from ..core.errors import ApplyError
from ..core.models import Target
from .base import RemediationContent, Transport
from .transport import LocalTransport

logger = logging.getLogger(__name__)

CHANGED_PATTERN = re.compile(r"\bchanged=(\d+)")


class CommandRoleRunner(RemediationContent):
    """
    Runs remediation content through a command template.

    Templates are formatted with ``address``, ``port``, ``username``,
    ``target_id`` and ``role``; role variables are appended as a JSON
    ``--extra-vars`` argument.
    """

    def __init__(self, command: str, verify_command: Optional[str] = None,
                 timeout: int = 3600, transport: Optional[Transport] = None):
        """
        Initialize the runner.

        Args:
            command: Template of the command applying the content
            verify_command: Template of a dry-run command; when set, the
                content counts as satisfied if the dry run reports no changes
            timeout: Command timeout in seconds
            transport: Transport running the command (local by default)
        """
        self.command = command
        self.verify_command = verify_command
        self.timeout = timeout
        self.transport = transport or LocalTransport()

    def apply(self, target: Target, role: str, variables: Dict[str, Any]) -> bool:
        result = self.transport.execute_command(self._render(self.command, target, role, variables),
                                                timeout=self.timeout)
        if not result.success:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            raise ApplyError(f"Remediation content {role} failed on {target.id}",
                             cause="; ".join(tail) or f"exit code {result.exit_code}")

        changed = self._changed_count(result.stdout)
        logger.info("Remediation content %s applied to %s (%s changes)", role, target.id,
                    changed if changed is not None else "unknown")
        return changed is None or changed > 0

    def verify(self, target: Target, role: str, variables: Dict[str, Any]) -> Optional[bool]:
        if not self.verify_command:
            return None
        result = self.transport.execute_command(self._render(self.verify_command, target, role, variables),
                                                timeout=self.timeout)
        if not result.success:
            return False
        return self._changed_count(result.stdout) == 0

    def _render(self, template: str, target: Target, role: str, variables: Dict[str, Any]) -> str:
        command = template.format(
            address=shlex.quote(target.address),
            port=target.port,
            username=shlex.quote(target.credentials.username),
            target_id=shlex.quote(target.id),
            role=shlex.quote(role)
        )
        if variables:
            command += f" --extra-vars {shlex.quote(json.dumps(variables, sort_keys=True))}"
        return command

    def _changed_count(self, output: str) -> Optional[int]:
        counts = [int(m) for m in CHANGED_PATTERN.findall(output)]
        return sum(counts) if counts else None
