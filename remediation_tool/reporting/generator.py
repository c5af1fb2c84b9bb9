"""
Report generator for compliance evidence.

Generates JSON, HTML and PDF renderings of a compliance delta, plus the
machine-readable run summary written at the end of every run.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from jinja2 import Template

from ..core.models import ComplianceDelta, DeltaKind, RunSummary, TargetState

SUPPORTED_FORMATS = ("json", "html", "pdf")

DELTA_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Compliance Evidence: {{ delta.target_id }}</title>
    <style>
        body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 20px; background: #f5f5f5; }
        .container { max-width: 1200px; margin: 0 auto; background: white; padding: 30px; border-radius: 8px; }
        .header { text-align: center; margin-bottom: 30px; border-bottom: 3px solid #007bff; padding-bottom: 20px; }
        .metrics { display: grid; grid-template-columns: repeat(5, 1fr); gap: 20px; margin: 20px 0; }
        .metric { background: #f8f9fa; padding: 15px; border-radius: 6px; text-align: center; border-left: 4px solid #007bff; }
        .metric-value { font-size: 2em; font-weight: bold; }
        .metric-label { color: #6c757d; text-transform: uppercase; font-size: 0.85em; }
        .section-title { color: #343a40; border-bottom: 2px solid #007bff; padding-bottom: 10px; font-size: 1.5em; }
        table { width: 100%; border-collapse: collapse; margin: 10px 0; }
        th, td { border: 1px solid #dee2e6; padding: 6px 10px; text-align: left; font-size: 0.9em; }
        .improved { color: #28a745; font-weight: bold; }
        .regressed { color: #dc3545; font-weight: bold; }
        .unchanged_fail { color: #fd7e14; }
        .severity-critical, .severity-high { font-weight: bold; }
        .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #dee2e6; color: #6c757d; text-align: center; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>Compliance Evidence Report</h1>
            <p><strong>Target:</strong> {{ delta.target_id }}</p>
            <p><strong>Profile:</strong> {{ delta.profile_id }}</p>
            <p><strong>Baseline scan:</strong> {{ delta.before_timestamp }} &middot;
               <strong>Verification scan:</strong> {{ delta.after_timestamp }}</p>
            {% if run_id %}<p><strong>Run ID:</strong> {{ run_id }}</p>{% endif %}
        </div>

        <div class="metrics">
            <div class="metric"><div class="metric-value improved">{{ delta.summary.improved }}</div><div class="metric-label">Improved</div></div>
            <div class="metric"><div class="metric-value regressed">{{ delta.summary.regressed }}</div><div class="metric-label">Regressed</div></div>
            <div class="metric"><div class="metric-value">{{ delta.summary.unchanged_pass }}</div><div class="metric-label">Still passing</div></div>
            <div class="metric"><div class="metric-value unchanged_fail">{{ delta.summary.unchanged_fail }}</div><div class="metric-label">Still failing</div></div>
            <div class="metric"><div class="metric-value">{{ delta.summary.other }}</div><div class="metric-label">Other</div></div>
        </div>

        {% for title, rules in sections %}
        {% if rules %}
        <h2 class="section-title">{{ title }} ({{ rules|length }})</h2>
        <table>
            <tr><th>Rule</th><th>Title</th><th>Severity</th><th>Before</th><th>After</th></tr>
            {% for rule in rules %}
            <tr class="{{ rule.change.value }}">
                <td>{{ rule.rule_id }}</td>
                <td>{{ rule.title or "" }}</td>
                <td class="severity-{{ rule.severity.value }}">{{ rule.severity.value }}</td>
                <td>{{ rule.before.value }}</td>
                <td>{{ rule.after.value }}</td>
            </tr>
            {% endfor %}
        </table>
        {% endif %}
        {% endfor %}

        <div class="footer">Generated {{ generated_at }}</div>
    </div>
</body>
</html>
"""


class ReportGenerator:
    """
    Writes compliance evidence in multiple formats.

    Regressions are always rendered in their own section ahead of
    improvements, so they cannot be lost in the aggregate counts.
    """

    def generate_report(self, delta: ComplianceDelta, format: str = "json",
                        output_path: Optional[str] = None, run_id: Optional[str] = None) -> str:
        """
        Generate a compliance delta report.

        Args:
            delta: Compliance delta to report on
            format: Report format (json, html, pdf)
            output_path: Output file path (auto-generated if None)
            run_id: Run the delta belongs to, shown in the report

        Returns:
            str: Path to generated report file
        """
        if not output_path:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = f"compliance_delta_{delta.target_id}_{timestamp}.{format}"

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        if format.lower() == "json":
            return self._generate_json_report(delta, output_file, run_id)
        elif format.lower() == "html":
            return self._generate_html_report(delta, output_file, run_id)
        elif format.lower() == "pdf":
            return self._generate_pdf_report(delta, output_file, run_id)
        else:
            raise ValueError(f"Unsupported report format: {format}")

    def write_delta_reports(self, delta: ComplianceDelta, target_dir: Path,
                            formats: Iterable[str], run_id: Optional[str] = None) -> List[str]:
        """Write ``compliance_delta.<format>`` for every requested format."""
        return [
            self.generate_report(delta, fmt, str(Path(target_dir) / f"compliance_delta.{fmt}"), run_id)
            for fmt in formats
        ]

    def write_run_summary(self, summary: RunSummary, output_path: Path) -> str:
        """
        Write the machine-readable summary of a run.

        Args:
            summary: Final run summary
            output_path: Destination file

        Returns:
            str: Path to the written file
        """
        data = summary.model_dump(mode="json")
        data["exit_code"] = summary.exit_code
        data["state_counts"] = {
            state.value: sum(1 for t in summary.targets if t.state == state)
            for state in TargetState
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with open(output_file, 'w') as f:
            json.dump(data, f, indent=2)
        return str(output_file)

    def _generate_json_report(self, delta: ComplianceDelta, output_file: Path,
                              run_id: Optional[str]) -> str:
        """Generate JSON format report."""
        report_data = {
            "report_metadata": {
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "report_type": "compliance_delta",
                "run_id": run_id,
                "version": "1.0"
            },
            **delta.model_dump(mode="json"),
            "regressions": [r.rule_id for r in delta.regressions],
            "lost_passes": [r.rule_id for r in delta.lost_passes],
            "improvements": [r.rule_id for r in delta.improvements],
            "still_failing": [r.rule_id for r in delta.still_failing]
        }

        with open(output_file, 'w') as f:
            json.dump(report_data, f, indent=2)

        return str(output_file)

    def _generate_html_report(self, delta: ComplianceDelta, output_file: Path,
                              run_id: Optional[str]) -> str:
        """Generate HTML format report."""
        with open(output_file, 'w') as f:
            f.write(self.render_html(delta, run_id))
        return str(output_file)

    def _generate_pdf_report(self, delta: ComplianceDelta, output_file: Path,
                             run_id: Optional[str]) -> str:
        """Generate PDF format report."""
        # WeasyPrint pulls in native libraries; only load it when a PDF is asked for
        from weasyprint import HTML

        HTML(string=self.render_html(delta, run_id)).write_pdf(str(output_file))
        return str(output_file)

    def render_html(self, delta: ComplianceDelta, run_id: Optional[str] = None) -> str:
        template = Template(DELTA_TEMPLATE, autoescape=True)
        return template.render(**self._prepare_template_context(delta, run_id))

    def _prepare_template_context(self, delta: ComplianceDelta, run_id: Optional[str]) -> Dict:
        """Prepare context data for template rendering."""
        lost = delta.lost_passes
        others = [r for r in delta.rules if r.change == DeltaKind.OTHER and r not in lost]
        return {
            "delta": delta,
            "run_id": run_id,
            "generated_at": datetime.now(timezone.utc).strftime("%B %d, %Y at %I:%M %p UTC"),
            "sections": [
                ("Regressions", delta.regressions),
                ("Lost passes", lost),
                ("Improvements", delta.improvements),
                ("Still failing", delta.still_failing),
                ("Other transitions", others),
            ]
        }
