"""
Linux platform implementation.

Implements package, service, firewall and file-mode operations for Debian
and Red Hat family hosts over a command transport. Package and firewall
backends are detected on first use from the commands present on the host.
"""

import logging
import shlex
from typing import Optional, Tuple

from ..core.errors import ApplyError, NotFoundError
from ..core.models import Target
from .base import BasePlatform, CommandResult, Transport

logger = logging.getLogger(__name__)


class LinuxPlatform(BasePlatform):
    """
    Linux platform handler for apt and dnf/yum based systems.

    Uses systemctl for services and firewalld or ufw for the firewall.
    """

    def __init__(self, target: Target, transport: Transport, command_timeout: int = 300):
        """
        Initialize Linux platform handler.

        Args:
            target: Target this handler operates on
            transport: Transport used to run commands on the target
            command_timeout: Timeout for individual commands in seconds
        """
        super().__init__(target)
        self.transport = transport
        self.command_timeout = command_timeout
        self._package_manager: Optional[str] = None
        self._firewall: Optional[str] = None

    @property
    def package_manager(self) -> str:
        if self._package_manager is None:
            self._package_manager = self._detect_package_manager()
        return self._package_manager

    @property
    def firewall(self) -> str:
        if self._firewall is None:
            self._firewall = self._detect_firewall()
        return self._firewall

    # Packages

    def is_installed(self, name: str) -> bool:
        if self.package_manager == "apt":
            result = self._run(f"dpkg-query -W -f='${{Status}}' {shlex.quote(name)}")
            return result.success and "install ok installed" in result.stdout
        return self._run(f"rpm -q {shlex.quote(name)}").success

    def ensure_installed(self, name: str) -> bool:
        if self.is_installed(name):
            return False

        if self.package_manager == "apt":
            command = f"DEBIAN_FRONTEND=noninteractive apt-get install -y {shlex.quote(name)}"
        else:
            command = f"{self.package_manager} install -y {shlex.quote(name)}"

        self._run_checked(command, f"Failed to install package {name}")
        logger.info("Installed package %s on %s", name, self.target.id)
        return True

    # Services

    def is_running(self, name: str) -> bool:
        return self._run(f"systemctl is-active --quiet {shlex.quote(name)}").success

    def ensure_running(self, name: str) -> bool:
        if self.is_running(name):
            return False
        self._run_checked(f"systemctl start {shlex.quote(name)}", f"Failed to start service {name}")
        if not self.is_running(name):
            raise ApplyError(f"Service {name} did not stay running after start")
        logger.info("Started service %s on %s", name, self.target.id)
        return True

    def is_enabled(self, name: str) -> bool:
        return self._run(f"systemctl is-enabled --quiet {shlex.quote(name)}").success

    def ensure_enabled(self, name: str) -> bool:
        if self.is_enabled(name):
            return False
        self._run_checked(f"systemctl enable {shlex.quote(name)}", f"Failed to enable service {name}")
        return True

    # Firewall

    def ensure_rule(self, service: str, enabled: bool, persistent: bool = True) -> bool:
        runtime, permanent = self.rule_flags(service, persistent)
        runtime_ok = runtime == enabled
        permanent_ok = not persistent or permanent == enabled
        if runtime_ok and permanent_ok:
            return False

        svc = shlex.quote(service)
        if self.firewall == "ufw":
            command = f"ufw allow {svc}" if enabled else f"ufw delete allow {svc}"
            self._run_checked(command, f"Failed to update ufw rule for {service}")
            return True

        action = "--add-service" if enabled else "--remove-service"
        undo = "--remove-service" if enabled else "--add-service"
        if not runtime_ok:
            self._run_checked(f"firewall-cmd {action}={svc}", f"Failed to update firewall rule for {service}")
        if not permanent_ok:
            result = self._run(f"firewall-cmd --permanent {action}={svc}")
            if not result.success:
                # only a runtime change made by this call is reverted
                if not runtime_ok:
                    self._run(f"firewall-cmd {undo}={svc}")
                raise ApplyError(f"Failed to persist firewall rule for {service}", cause=result.stderr.strip())
        logger.info("Firewall service %s %s on %s", service, "enabled" if enabled else "disabled",
                    self.target.id)
        return True

    # File attributes

    def get_mode(self, path: str, kind: str = "file") -> int:
        result = self._run(f"stat -c '%a %F' {shlex.quote(path)}")
        if not result.success:
            if "No such file" in result.stderr or "cannot stat" in result.stderr:
                raise NotFoundError(f"Path not found on {self.target.id}: {path}")
            raise ApplyError(f"Cannot stat {path}", cause=result.stderr.strip())

        mode_text, _, file_type = result.stdout.strip().partition(" ")
        is_directory = file_type == "directory"
        if (kind == "directory") != is_directory:
            raise ApplyError(f"{path} is a {file_type}, expected {kind}")
        return int(mode_text, 8)

    def ensure_mode(self, path: str, mode: int, kind: str = "file") -> bool:
        current = self.get_mode(path, kind)
        if current == mode:
            return False

        result = self._run(f"chmod {mode:04o} {shlex.quote(path)}")
        if not result.success:
            self._run(f"chmod {current:04o} {shlex.quote(path)}")
            raise ApplyError(f"Failed to set mode {mode:04o} on {path}", cause=result.stderr.strip())
        logger.info("Changed mode of %s from %04o to %04o on %s", path, current, mode, self.target.id)
        return True

    def close(self) -> None:
        self.transport.close()

    def _run(self, command: str) -> CommandResult:
        return self.transport.execute_command(command, timeout=self.command_timeout)

    def _run_checked(self, command: str, message: str) -> CommandResult:
        result = self._run(command)
        if not result.success:
            raise ApplyError(message, cause=result.stderr.strip() or f"exit code {result.exit_code}")
        return result

    def rule_flags(self, service: str, persistent: bool = True) -> Tuple[bool, bool]:
        if self.firewall == "ufw":
            # ufw rules are always persistent
            result = self._run("ufw show added")
            present = result.success and f"ufw allow {service}" in result.stdout
            return present, present

        svc = shlex.quote(service)
        runtime = self._run(f"firewall-cmd --query-service={svc}").success
        permanent = persistent and self._run(f"firewall-cmd --permanent --query-service={svc}").success
        return runtime, permanent

    def _detect_package_manager(self) -> str:
        """Detect the package manager available on the target."""
        for candidate in ("apt-get", "dnf", "yum"):
            if self._run(f"command -v {candidate}").success:
                return "apt" if candidate == "apt-get" else candidate
        raise ApplyError(f"No supported package manager found on {self.target.id}")

    def _detect_firewall(self) -> str:
        """Detect the firewall front-end available on the target."""
        for candidate in ("firewall-cmd", "ufw"):
            if self._run(f"command -v {candidate}").success:
                return "firewalld" if candidate == "firewall-cmd" else "ufw"
        raise ApplyError(f"No supported firewall front-end found on {self.target.id}")
