"""
Report generation for workflow sessions.

Renders a markdown or JSON summary of a session's findings and saves it
under <state>/reports/. A failed save is logged; the report text is still
returned.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .path_resolver import WorkspacePaths
from .schema import SEVERITY_ORDER, Finding, Severity, WorkflowSession

logger = logging.getLogger(__name__)

REPORT_FORMATS = {"markdown": "md", "json": "json"}
TOP_FINDINGS_LIMIT = 10


def severity_histogram(findings: list[Finding]) -> dict[str, int]:
    """Count findings per severity, highest severity first."""
    histogram = {severity.value: 0 for severity in SEVERITY_ORDER}
    for finding in findings:
        histogram[finding.severity.value] += 1
    return histogram


def duration_minutes(session: WorkflowSession) -> int:
    return round((session.updated_at - session.created_at).total_seconds() / 60)


def top_findings(findings: list[Finding], limit: int = TOP_FINDINGS_LIMIT) -> list[Finding]:
    """Highest-severity findings first; equal severities keep reporting order."""
    rank = {severity: index for index, severity in enumerate(SEVERITY_ORDER)}
    return sorted(findings, key=lambda f: rank[f.severity])[:limit]


def recommendations(session: WorkflowSession, histogram: dict[str, int]) -> list[str]:
    """Recommendations derived from the histogram; only non-zero counts produce one."""
    result = []
    critical = histogram[Severity.CRITICAL.value]
    errors = histogram[Severity.ERROR.value]
    changes = len(session.proposed_changes)
    if critical:
        result.append(f"Address {critical} critical issues before deployment")
    if errors:
        result.append(f"Review {errors} error-level findings for data integrity risks")
    if changes:
        result.append(f"Review {changes} proposed code changes")
    if session.instances_manual_review:
        result.append(f"Manually convert {session.instances_manual_review} instances flagged for review")
    return result


class ReportGenerator:
    """Builds and saves session reports."""

    def __init__(self, paths: Optional[WorkspacePaths] = None):
        self.paths = paths

    def generate(self, session: WorkflowSession, report_format: str = "markdown", title: Optional[str] = None) -> str:
        """
        Render a report and save it to the reports directory.

        Raises:
            ValueError: If the format is not markdown or json
        """
        if report_format not in REPORT_FORMATS:
            raise ValueError(
                f"Unsupported report format: '{report_format}'. "
                f"Use one of: {', '.join(REPORT_FORMATS)}"
            )

        if report_format == "json":
            report = self.render_json(session)
        else:
            report = self.render_markdown(session, title)

        self._save(session.id, report, REPORT_FORMATS[report_format])
        return report

    def render_json(self, session: WorkflowSession) -> str:
        histogram = severity_histogram(session.findings)
        data = {
            "session_id": session.id,
            "workflow_type": session.workflow_type,
            "status": session.status.value,
            "completed_at": (session.completed_at or session.updated_at).isoformat(),
            "duration_minutes": duration_minutes(session),
            "files_reviewed": session.files_completed,
            "files_total": session.files_total,
            "total_findings": len(session.findings),
            "findings_by_severity": histogram,
            "proposed_changes": len(session.proposed_changes),
            "recommendations": recommendations(session, histogram),
            "findings": [f.model_dump(mode="json") for f in session.findings],
            "proposed_changes_detail": [c.model_dump(mode="json") for c in session.proposed_changes],
        }
        if session.instances_total:
            data["instances"] = {
                "total": session.instances_total,
                "completed": session.instances_completed or 0,
                "auto_fixed": session.instances_auto_fixed or 0,
                "manual_review": session.instances_manual_review or 0,
            }
        return json.dumps(data, indent=2)

    def render_markdown(self, session: WorkflowSession, title: Optional[str] = None) -> str:
        histogram = severity_histogram(session.findings)
        lines = [
            f"# {title or session.workflow_type} Report",
            "",
            "## Summary",
            "",
            f"- **Session ID**: {session.id}",
            f"- **Duration**: {duration_minutes(session)} minutes",
            f"- **Files Reviewed**: {session.files_completed}/{session.files_total}",
            f"- **Total Findings**: {len(session.findings)}",
        ]
        for severity, count in histogram.items():
            lines.append(f"  - {severity.capitalize()}: {count}")
        lines.append(f"- **Proposed Changes**: {len(session.proposed_changes)}")
        lines.append("")

        if session.instances_total:
            lines.extend([
                "### Instance Processing",
                "",
                f"- Total Instances: {session.instances_total}",
                f"- Completed: {session.instances_completed or 0}",
                f"- Auto-Fixed: {session.instances_auto_fixed or 0}",
                f"- Manual Review: {session.instances_manual_review or 0}",
                "",
            ])

        top = top_findings(session.findings)
        if top:
            lines.extend(["## Top Findings", ""])
            for finding in top:
                location = Path(finding.file).name if finding.file else "(no file)"
                if finding.line:
                    location += f":{finding.line}"
                lines.extend([
                    f"### {location}",
                    "",
                    f"**{finding.severity.value.upper()}**: {finding.description}",
                    "",
                ])
                if finding.suggestion:
                    lines.extend([f"**Suggestion**: {finding.suggestion}", ""])

        recs = recommendations(session, histogram)
        lines.extend(["## Recommendations", ""])
        if recs:
            lines.extend(f"{index}. {text}" for index, text in enumerate(recs, start=1))
        else:
            lines.append("No follow-up actions required.")
        lines.append("")
        return "\n".join(lines)

    def _save(self, session_id: str, report: str, extension: str) -> Optional[Path]:
        if self.paths is None:
            logger.warning(f"No workspace bound; report for {session_id} not saved")
            return None
        path = self.paths.report_file(session_id, extension)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(report, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to save report for {session_id}: {e}")
            return None
        logger.info(f"Report written: {path}")
        return path
