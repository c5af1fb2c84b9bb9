"""
Unit tests for platform implementations.

Tests the platform factory, the Linux handler's command sequences over a
mocked transport, the SSH and local transports, and the command-driven
remediation content runner.
"""

import threading
from unittest.mock import Mock, patch

import paramiko
import pytest

from remediation_tool.core.errors import ApplyError, NotFoundError, TransportError
from remediation_tool.core.models import Credentials, Target, TransportKind
from remediation_tool.platforms.base import CommandResult, Transport
from remediation_tool.platforms.factory import PlatformFactory
from remediation_tool.platforms.linux import LinuxPlatform
from remediation_tool.platforms.remediation import CommandRoleRunner
from remediation_tool.platforms.transport import LocalTransport, SSHTransport

from conftest import make_target


def mock_transport(handler):
    """Transport whose commands are answered by ``handler(command)``."""
    transport = Mock(spec=Transport)

    def execute(command, timeout=30):
        exit_code, stdout, stderr = handler(command)
        return CommandResult(command=command, stdout=stdout, stderr=stderr, exit_code=exit_code)

    transport.execute_command.side_effect = execute
    return transport


def commands_of(transport):
    return [c.args[0] for c in transport.execute_command.call_args_list]


class FakeShell:
    """Tiny stateful shell: an apt host running firewalld."""

    def __init__(self, package_manager="apt-get", firewall="firewall-cmd"):
        self.available = {package_manager, firewall}
        self.packages = set()
        self.active = set()
        self.runtime = set()
        self.permanent = set()
        self.modes = {"/etc/ssh/sshd_config": "644 regular file", "/etc/ssh": "755 directory"}
        self.fail = set()

    def __call__(self, command):
        for prefix in self.fail:
            if command.startswith(prefix):
                return 1, "", f"{prefix}: failed"
        if command.startswith("command -v "):
            return (0, "", "") if command.split()[-1] in self.available else (1, "", "")
        if command.startswith("dpkg-query"):
            name = command.split()[-1]
            return (0, "install ok installed", "") if name in self.packages else (1, "", "no packages found")
        if command.startswith("DEBIAN_FRONTEND=noninteractive apt-get install -y "):
            self.packages.add(command.split()[-1])
            return 0, "", ""
        if command.startswith("systemctl is-active"):
            return (0, "", "") if command.split()[-1] in self.active else (3, "", "")
        if command.startswith("systemctl start "):
            self.active.add(command.split()[-1])
            return 0, "", ""
        if command.startswith("firewall-cmd --permanent --query-service="):
            return (0, "yes", "") if command.split("=")[-1] in self.permanent else (1, "no", "")
        if command.startswith("firewall-cmd --query-service="):
            return (0, "yes", "") if command.split("=")[-1] in self.runtime else (1, "no", "")
        if command.startswith("firewall-cmd --permanent --add-service="):
            self.permanent.add(command.split("=")[-1])
            return 0, "success", ""
        if command.startswith("firewall-cmd --permanent --remove-service="):
            self.permanent.discard(command.split("=")[-1])
            return 0, "success", ""
        if command.startswith("firewall-cmd --add-service="):
            self.runtime.add(command.split("=")[-1])
            return 0, "success", ""
        if command.startswith("firewall-cmd --remove-service="):
            self.runtime.discard(command.split("=")[-1])
            return 0, "success", ""
        if command.startswith("stat -c"):
            path = command.split()[-1]
            if path not in self.modes:
                return 1, "", f"stat: cannot stat '{path}': No such file or directory"
            return 0, self.modes[path] + "\n", ""
        if command.startswith("chmod "):
            _, mode, path = command.split()
            kind = self.modes[path].split(" ", 1)[1]
            self.modes[path] = f"{int(mode, 8):o} {kind}"
            return 0, "", ""
        return 127, "", f"sh: {command}: not found"


@pytest.fixture
def shell():
    return FakeShell()


@pytest.fixture
def linux(shell):
    return LinuxPlatform(make_target("web-01"), mock_transport(shell))


class TestPlatformFactory:
    """Test platform factory functionality."""

    def test_platform_cached_per_target(self):
        factory = PlatformFactory()
        target = make_target("web-01")

        platform = factory.get_platform(target)

        assert isinstance(platform, LinuxPlatform)
        assert factory.get_platform(target) is platform
        assert factory.get_platform(make_target("web-02")) is not platform

    def test_transport_by_kind(self):
        factory = PlatformFactory(ssh_config={"connect_timeout": 3, "strict_host_keys": True})

        local = factory.get_transport(Target(id="localhost", address="127.0.0.1",
                                             transport=TransportKind.LOCAL))
        remote = factory.get_transport(make_target("web-01"))

        assert isinstance(local, LocalTransport)
        assert isinstance(remote, SSHTransport)
        assert remote.connect_timeout == 3
        assert remote.strict_host_keys

    def test_close_all_drops_cache(self):
        factory = PlatformFactory()
        target = make_target("web-01")
        first = factory.get_transport(target)

        factory.close_all()

        assert factory.get_transport(target) is not first

    def test_unsupported_platform(self):
        with pytest.raises(ValueError, match="Unsupported platform"):
            PlatformFactory(platform_name="macos")

    def test_supported_platforms(self):
        assert "linux" in PlatformFactory.get_supported_platforms()


class TestLinuxPlatform:
    """Test Linux handler command sequences."""

    def test_apt_install(self, linux, shell):
        assert not linux.is_installed("nginx")
        assert linux.ensure_installed("nginx")
        assert linux.is_installed("nginx")
        assert not linux.ensure_installed("nginx")

        installs = [c for c in commands_of(linux.transport) if "install -y" in c]
        assert installs == ["DEBIAN_FRONTEND=noninteractive apt-get install -y nginx"]

    def test_dnf_host(self):
        transport = mock_transport(lambda c: (0, "", "") if c in ("command -v dnf", "rpm -q nginx")
                                   else (1, "", ""))
        linux = LinuxPlatform(make_target("rhel-01"), transport)

        assert linux.package_manager == "dnf"
        assert linux.is_installed("nginx")

    def test_no_package_manager(self):
        linux = LinuxPlatform(make_target("odd-01"), mock_transport(lambda c: (1, "", "")))

        with pytest.raises(ApplyError, match="No supported package manager"):
            linux.is_installed("nginx")

    def test_install_failure(self, linux, shell):
        shell.fail.add("DEBIAN_FRONTEND")

        with pytest.raises(ApplyError, match="Failed to install package nginx"):
            linux.ensure_installed("nginx")

    def test_service_start(self, linux, shell):
        assert linux.ensure_running("nginx")
        assert "nginx" in shell.active
        assert not linux.ensure_running("nginx")

    def test_service_must_stay_running(self, shell):
        # start succeeds but the unit exits straight away
        def handler(command):
            if command.startswith("systemctl start"):
                return 0, "", ""
            return shell(command)

        linux = LinuxPlatform(make_target("web-01"), mock_transport(handler))

        with pytest.raises(ApplyError, match="did not stay running"):
            linux.ensure_running("nginx")

    def test_firewalld_rule(self, linux, shell):
        assert not linux.rule_state("http")
        assert linux.ensure_rule("http", enabled=True)

        assert shell.runtime == {"http"} and shell.permanent == {"http"}
        assert linux.rule_state("http")
        assert not linux.ensure_rule("http", enabled=True)

    def test_firewalld_persist_failure_rolls_back_runtime(self, linux, shell):
        shell.fail.add("firewall-cmd --permanent --add-service")

        with pytest.raises(ApplyError, match="Failed to persist firewall rule"):
            linux.ensure_rule("http", enabled=True)

        assert shell.runtime == set()
        assert "firewall-cmd --remove-service=http" in commands_of(linux.transport)

    def test_firewalld_persist_failure_keeps_existing_runtime_rule(self, linux, shell):
        shell.runtime.add("http")
        shell.fail.add("firewall-cmd --permanent --add-service")

        with pytest.raises(ApplyError, match="Failed to persist firewall rule"):
            linux.ensure_rule("http", enabled=True)

        assert shell.runtime == {"http"}
        commands = commands_of(linux.transport)
        assert "firewall-cmd --add-service=http" not in commands
        assert "firewall-cmd --remove-service=http" not in commands

    def test_firewalld_block_removes_permanent_rule(self, linux, shell):
        shell.permanent.add("http")

        assert linux.rule_flags("http") == (False, True)
        assert linux.ensure_rule("http", enabled=False)

        assert shell.permanent == set() and shell.runtime == set()
        assert "firewall-cmd --remove-service=http" not in commands_of(linux.transport)
        assert not linux.ensure_rule("http", enabled=False)

    def test_runtime_only_rule(self, linux, shell):
        assert linux.ensure_rule("http", enabled=True, persistent=False)

        assert shell.runtime == {"http"} and shell.permanent == set()
        assert linux.rule_state("http", persistent=False)
        assert not linux.rule_state("http")

    def test_ufw_rule(self):
        def handler(command):
            if command == "command -v firewall-cmd":
                return 1, "", ""
            if command == "command -v ufw":
                return 0, "/usr/sbin/ufw", ""
            if command == "ufw show added":
                return 0, "Added user rules:\nufw allow ssh\n", ""
            return 0, "", ""

        linux = LinuxPlatform(make_target("web-01"), mock_transport(handler))

        assert linux.rule_state("ssh")
        assert not linux.rule_state("http")
        assert linux.ensure_rule("http", enabled=True)
        assert "ufw allow http" in commands_of(linux.transport)

    def test_get_mode(self, linux):
        assert linux.get_mode("/etc/ssh/sshd_config") == 0o644
        assert linux.get_mode("/etc/ssh", kind="directory") == 0o755

        with pytest.raises(ApplyError, match="expected file"):
            linux.get_mode("/etc/ssh")
        with pytest.raises(NotFoundError):
            linux.get_mode("/etc/missing")

    def test_ensure_mode(self, linux, shell):
        assert linux.ensure_mode("/etc/ssh/sshd_config", 0o600)

        assert shell.modes["/etc/ssh/sshd_config"] == "600 regular file"
        assert "chmod 0600 /etc/ssh/sshd_config" in commands_of(linux.transport)
        assert not linux.ensure_mode("/etc/ssh/sshd_config", 0o600)

    def test_ensure_mode_failure_restores_previous(self, shell):
        def handler(command):
            if command.startswith("chmod 0600"):
                return 1, "", "chmod: Operation not permitted"
            return shell(command)

        linux = LinuxPlatform(make_target("web-01"), mock_transport(handler))

        with pytest.raises(ApplyError, match="Operation not permitted"):
            linux.ensure_mode("/etc/ssh/sshd_config", 0o600)
        assert "chmod 0644 /etc/ssh/sshd_config" in commands_of(linux.transport)


class TestTransports:
    """Test local and SSH transports."""

    def test_local_execute(self):
        result = LocalTransport().execute_command("echo hello; echo oops >&2; exit 3")

        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"
        assert result.exit_code == 3
        assert not result.success

    def test_local_fetch(self, tmp_path):
        source = tmp_path / "remote.txt"
        source.write_text("evidence")

        copied = LocalTransport().fetch_file(str(source), tmp_path / "out" / "local.txt")

        assert copied.read_text() == "evidence"
        with pytest.raises(NotFoundError):
            LocalTransport().fetch_file(str(tmp_path / "none"), tmp_path / "x")

    @patch("remediation_tool.platforms.transport.paramiko.SSHClient")
    def test_ssh_execute(self, mock_client_class):
        client = mock_client_class.return_value
        stdout = Mock()
        stdout.read.return_value = b"active\n"
        stdout.channel.recv_exit_status.return_value = 0
        stderr = Mock()
        stderr.read.return_value = b""
        client.exec_command.return_value = (Mock(), stdout, stderr)
        target = Target(id="web-01", address="10.0.0.11",
                        credentials=Credentials(username="deploy", password="pw"))

        transport = SSHTransport(target)
        result = transport.execute_command("systemctl is-active nginx", timeout=5)
        transport.execute_command("true")

        assert result.stdout == "active\n"
        assert result.success
        # one connection reused for every command
        client.connect.assert_called_once()
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "10.0.0.11"
        assert kwargs["username"] == "deploy"
        assert kwargs["allow_agent"] is False

        transport.close()
        client.close.assert_called_once()

    @patch("remediation_tool.platforms.transport.paramiko.SSHClient")
    def test_ssh_reads_stderr_while_stdout_is_open(self, mock_client_class):
        # stdout only reaches EOF once the remote side could flush its stderr
        stderr_read = threading.Event()
        stdout = Mock()
        stdout.read.side_effect = lambda: b"done\n" if stderr_read.wait(2) else b""
        stdout.channel.recv_exit_status.return_value = 1
        stderr = Mock()

        def read_stderr():
            stderr_read.set()
            return b"warning\n" * 10000

        stderr.read.side_effect = read_stderr
        mock_client_class.return_value.exec_command.return_value = (Mock(), stdout, stderr)

        result = SSHTransport(make_target("web-01")).execute_command("oscap xccdf eval", timeout=5)

        assert result.stdout == "done\n"
        assert result.stderr.count("warning") == 10000
        assert result.exit_code == 1

    @patch("remediation_tool.platforms.transport.paramiko.SSHClient")
    def test_ssh_authentication_failure(self, mock_client_class):
        mock_client_class.return_value.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(TransportError, match="Authentication failed for web-01"):
            SSHTransport(make_target("web-01")).execute_command("true")

    @patch("remediation_tool.platforms.transport.paramiko.SSHClient")
    def test_ssh_unreachable(self, mock_client_class):
        mock_client_class.return_value.connect.side_effect = OSError("No route to host")

        with pytest.raises(TransportError, match="No route to host"):
            SSHTransport(make_target("web-01")).execute_command("true")


class TestCommandRoleRunner:
    """Test command-driven remediation content."""

    TEMPLATE = "ansible-playbook -i {address}, -u {username} {role}"

    def test_apply_renders_command(self):
        transport = mock_transport(lambda c: (0, "web-01 : ok=12 changed=3 failed=0", ""))
        runner = CommandRoleRunner(self.TEMPLATE, transport=transport)
        target = Target(id="web-01", address="10.0.0.11", credentials=Credentials(username="deploy"))

        assert runner.apply(target, "cis.yml", {"level": 1})

        assert commands_of(transport) == [
            "ansible-playbook -i 10.0.0.11, -u deploy cis.yml --extra-vars '{\"level\": 1}'"
        ]

    def test_apply_without_changes(self):
        transport = mock_transport(lambda c: (0, "ok=12 changed=0 failed=0", ""))
        runner = CommandRoleRunner(self.TEMPLATE, transport=transport)

        assert not runner.apply(make_target("web-01"), "cis.yml", {})

    def test_apply_failure(self):
        transport = mock_transport(lambda c: (2, "", "fatal: [web-01]: UNREACHABLE!\n"))
        runner = CommandRoleRunner(self.TEMPLATE, transport=transport)

        with pytest.raises(ApplyError, match="UNREACHABLE"):
            runner.apply(make_target("web-01"), "cis.yml", {})

    def test_verify(self):
        clean = mock_transport(lambda c: (0, "ok=12 changed=0", ""))
        dirty = mock_transport(lambda c: (0, "ok=9 changed=3", ""))
        template = self.TEMPLATE + " --check"

        assert CommandRoleRunner(self.TEMPLATE, template, transport=clean).verify(
            make_target("web-01"), "cis.yml", {}) is True
        assert CommandRoleRunner(self.TEMPLATE, template, transport=dirty).verify(
            make_target("web-01"), "cis.yml", {}) is False
        assert CommandRoleRunner(self.TEMPLATE, transport=clean).verify(
            make_target("web-01"), "cis.yml", {}) is None
