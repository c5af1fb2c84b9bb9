"""
XCCDF result parser.

Turns the XCCDF 1.1/1.2 results document written by ``oscap xccdf eval
--results`` into a ScanResult. Parsing goes through defusedxml to keep
entity expansion and external references out of untrusted scanner output.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple
from xml.etree.ElementTree import Element

import defusedxml.ElementTree as DefusedET
from defusedxml import DefusedXmlException

from ..core.errors import ScannerError
from ..core.models import RuleResult, RuleSeverity, RuleStatus, ScanResult

logger = logging.getLogger(__name__)

XCCDF_NAMESPACES = {
    "1.2": "http://checklists.nist.gov/xccdf/1.2",
    "1.1": "http://checklists.nist.gov/xccdf/1.1",
}

# Raw XCCDF result values mapped to the statuses the differ understands.
# "notselected" rules are outside the evaluated profile and are dropped.
STATUS_MAP = {
    "pass": RuleStatus.PASS,
    "fixed": RuleStatus.PASS,
    "fail": RuleStatus.FAIL,
    "error": RuleStatus.ERROR,
    "unknown": RuleStatus.ERROR,
    "notapplicable": RuleStatus.NOT_APPLICABLE,
    "notchecked": RuleStatus.NOT_APPLICABLE,
    "informational": RuleStatus.NOT_APPLICABLE,
}


class XCCDFResultParser:
    """
    Parser for XCCDF scan result files.

    Usage:
        parser = XCCDFResultParser()
        scan = parser.parse(Path("results.xml"), target_id="web-01")
        print(scan.count(RuleStatus.FAIL))
    """

    def __init__(self, max_file_size: int = 100 * 1024 * 1024):
        """
        Initialize the parser.

        Args:
            max_file_size: Maximum results file size in bytes
        """
        self.max_file_size = max_file_size

    def parse(self, file_path: Path, target_id: str,
              report_path: Optional[str] = None) -> ScanResult:
        """
        Parse an XCCDF results file.

        Args:
            file_path: Path to the results document
            target_id: Target the scan was run against
            report_path: Path of the human-readable report, if any

        Returns:
            ScanResult: Per-rule results in document order

        Raises:
            ScannerError: If the file is missing, too large or not XCCDF
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise ScannerError(f"Scanner results file not found: {file_path}")
        if file_path.stat().st_size > self.max_file_size:
            raise ScannerError(f"Scanner results file too large: {file_path}")

        try:
            root = DefusedET.parse(str(file_path)).getroot()
        except (DefusedET.ParseError, DefusedXmlException) as e:
            raise ScannerError(f"Cannot parse scanner results {file_path.name}: {e}") from e

        ns = self._detect_namespace(root)
        test_result = root if root.tag == f"{{{ns}}}TestResult" else root.find(f".//{{{ns}}}TestResult")
        if test_result is None:
            raise ScannerError(f"No TestResult element in {file_path.name}")

        titles = self._rule_titles(root, ns)
        profile = test_result.find(f"{{{ns}}}profile")
        profile_id = profile.get("idref", "") if profile is not None else ""

        rule_results = []
        seen = set()
        for element in test_result.findall(f"{{{ns}}}rule-result"):
            rule_id = element.get("idref")
            result_el = element.find(f"{{{ns}}}result")
            if not rule_id or result_el is None or rule_id in seen:
                continue
            raw = (result_el.text or "").strip().lower()
            if raw not in STATUS_MAP:
                continue
            seen.add(rule_id)
            rule_results.append(RuleResult(
                rule_id=rule_id,
                status=STATUS_MAP[raw],
                severity=self._severity(element.get("severity")),
                title=titles.get(rule_id)
            ))

        logger.debug("Parsed %d rule results from %s", len(rule_results), file_path)
        return ScanResult(
            target_id=target_id,
            profile_id=profile_id,
            timestamp=self._timestamp(test_result),
            rule_results=tuple(rule_results),
            report_path=report_path
        )

    def _detect_namespace(self, root: Element) -> str:
        for ns in XCCDF_NAMESPACES.values():
            if root.tag.startswith(f"{{{ns}}}"):
                return ns
        raise ScannerError(f"Not an XCCDF document (root element {root.tag})")

    def _rule_titles(self, root: Element, ns: str) -> Dict[str, str]:
        titles = {}
        for rule in root.iter(f"{{{ns}}}Rule"):
            title = rule.find(f"{{{ns}}}title")
            if rule.get("id") and title is not None and title.text:
                titles[rule.get("id")] = title.text.strip()
        return titles

    def _severity(self, value: Optional[str]) -> RuleSeverity:
        try:
            return RuleSeverity((value or "unknown").lower())
        except ValueError:
            return RuleSeverity.UNKNOWN

    def _timestamp(self, test_result: Element) -> datetime:
        for attribute in ("end-time", "start-time"):
            value = test_result.get(attribute)
            if value:
                try:
                    parsed = datetime.fromisoformat(value)
                except ValueError:
                    continue
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc)


def load_scan_file(path: Path, target_id: Optional[str] = None) -> Tuple[ScanResult, str]:
    """
    Load a scan result from disk.

    Accepts the JSON files written into run evidence directories as well as
    raw XCCDF results documents.

    Args:
        path: JSON or XML file
        target_id: Target id for XCCDF documents (defaults to the file stem)

    Returns:
        Tuple[ScanResult, str]: The scan and the detected format
    """
    path = Path(path)
    if path.suffix.lower() == ".json":
        try:
            return ScanResult.model_validate_json(path.read_text()), "json"
        except ValueError as e:
            raise ScannerError(f"Invalid scan result file {path}: {e}") from e
    return XCCDFResultParser().parse(path, target_id or path.stem), "xccdf"
