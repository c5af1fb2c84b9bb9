"""
OpenSCAP scanner adapter.

Runs ``oscap xccdf eval`` on the target through its transport, copies the
results and report back into the run's evidence directory and parses the
results into a ScanResult.
"""

import logging
import shlex
import uuid
from pathlib import Path
from typing import Optional

from ..core.errors import ApplyError, ScannerError
from ..core.models import ScanResult, Target
from ..platforms.base import ComplianceScanner
from .xccdf import XCCDFResultParser

logger = logging.getLogger(__name__)

# oscap exits 0 when every rule passed and 2 when at least one failed; both
# mean the evaluation itself succeeded.
SUCCESS_EXIT_CODES = (0, 2)


class OpenSCAPScanner(ComplianceScanner):
    """Compliance scanner backed by the OpenSCAP command line tool."""

    def __init__(self, platforms, command: str = "oscap", timeout: int = 3600,
                 remote_tmp: str = "/tmp"):
        """
        Initialize the scanner.

        Args:
            platforms: PlatformFactory used to reach targets
            command: oscap executable on the target
            timeout: Evaluation timeout in seconds
            remote_tmp: Scratch directory on the target
        """
        self.platforms = platforms
        self.command = command
        self.timeout = timeout
        self.remote_tmp = remote_tmp
        self.parser = XCCDFResultParser()

    def build_command(self, profile_id: str, content_source: str, results_path: str,
                      report_path: Optional[str] = None) -> str:
        parts = [self.command, "xccdf", "eval", "--profile", shlex.quote(profile_id),
                 "--results", shlex.quote(results_path)]
        if report_path:
            parts += ["--report", shlex.quote(report_path)]
        parts.append(shlex.quote(content_source))
        return " ".join(parts)

    def scan(self, target: Target, profile_id: str, content_source: str,
             output_path: Path, report_path: Optional[Path] = None) -> ScanResult:
        transport = self.platforms.get_transport(target)
        token = uuid.uuid4().hex[:12]
        remote_results = f"{self.remote_tmp}/remediation-tool-{token}-results.xml"
        remote_report = f"{self.remote_tmp}/remediation-tool-{token}-report.html" if report_path else None

        command = self.build_command(profile_id, content_source, remote_results, remote_report)
        logger.info("Scanning %s with profile %s", target.id, profile_id)

        try:
            result = transport.execute_command(command, timeout=self.timeout)
            if result.exit_code not in SUCCESS_EXIT_CODES:
                raise ScannerError("oscap evaluation failed", exit_code=result.exit_code,
                                   stderr=result.stderr)

            transport.fetch_file(remote_results, Path(output_path))
            fetched_report = None
            if remote_report:
                try:
                    fetched_report = str(transport.fetch_file(remote_report, Path(report_path)))
                except ApplyError as e:
                    # the report is a convenience artifact; results are what count
                    logger.warning("Could not fetch scan report from %s: %s", target.id, e)
        except ApplyError as e:
            raise ScannerError(f"Scan of {target.id} failed: {e}") from e
        finally:
            self._cleanup(transport, remote_results, remote_report)

        return self.parser.parse(Path(output_path), target.id, report_path=fetched_report)

    def _cleanup(self, transport, *paths: Optional[str]) -> None:
        targets = " ".join(shlex.quote(p) for p in paths if p)
        try:
            transport.execute_command(f"rm -f {targets}", timeout=30)
        except ApplyError as e:
            logger.debug("Scratch cleanup failed: %s", e)
