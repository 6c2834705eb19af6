"""
Workflow Engine

The single entry point collaborators use: starts sessions, hands out the
next action, applies progress reports and batch operations, and produces
reports. All dependencies (definition registry, session store, config,
clock) are injected; there is no module-level engine instance.
"""

import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from .actions import agent_instructions, next_action
from .batch import BatchOperator, ConfirmationTokens
from .checklist import is_file_complete
from .config import EngineConfig, load_config
from .discovery import discover_files
from .errors import WorkspaceNotBound
from .path_resolver import WorkspacePaths
from .progress import apply_progress, finish_if_complete, skip_file as skip_file_items
from .registry import WorkflowRegistry
from .report import ReportGenerator, duration_minutes, recommendations, severity_histogram
from .scanner import PatternScanner
from .schema import (
    AnalysisSummary,
    BatchExecution,
    BatchFilter,
    BatchGrouping,
    BatchOperation,
    BatchPreview,
    ChecklistExpansionItem,
    CompletedAction,
    EventType,
    FileStatus,
    Finding,
    InitialProcessing,
    ItemStatus,
    ItemType,
    NextAction,
    PhaseStatus,
    ProposedChange,
    Severity,
    VersionUpgrade,
    WorkflowEvent,
    WorkflowOptions,
    WorkflowPhase,
    WorkflowSession,
    WorkflowStatus,
    _utc_now,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

VERSION_UPGRADE_TYPE = "bc-version-upgrade"
INVENTORY_PHASE = "inventory"
SCAN_PHASES = ("pattern_scan", "scan")
SCOPES = ("workspace", "directory")

_ITEM_EVENTS = {
    ItemStatus.COMPLETED: EventType.ITEM_COMPLETED,
    ItemStatus.SKIPPED: EventType.ITEM_SKIPPED,
    ItemStatus.FAILED: EventType.ITEM_FAILED,
}


def generate_session_id(workflow_type: str, now: datetime) -> str:
    """wf-<type>-<YYYY-MM-DD>-<6 random chars>"""
    return f"wf-{workflow_type}-{now.strftime('%Y-%m-%d')}-{uuid.uuid4().hex[:6]}"


def _coerce(model, value):
    """Accept either a model instance or a plain dict."""
    if value is None or isinstance(value, model):
        return value
    return model.model_validate(value)


class StartResult(BaseModel):
    """Outcome of start_workflow."""
    session: WorkflowSession
    analysis_summary: Optional[AnalysisSummary] = None
    duration_ms: int
    next_action: NextAction
    agent_instructions: str


class WorkflowEngine:
    """Drives workflow sessions through their per-file checklists."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: Optional[SessionStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        workspace_root: Optional[Path] = None,
    ):
        self.registry = registry
        self.clock = clock or _utc_now
        self.config = config or load_config(workspace_root)
        self.store = store or SessionStore(clock=self.clock)
        self.paths: Optional[WorkspacePaths] = None
        self.reports = ReportGenerator()
        self.batch = BatchOperator(
            ConfirmationTokens(
                ttl_seconds=self.config.token_ttl_seconds,
                max_tokens=self.config.max_tokens,
            ),
            sample_size=self.config.sample_size,
        )
        if workspace_root is not None:
            self.bind_workspace(workspace_root)

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    def bind_workspace(self, root: Path) -> WorkspacePaths:
        """Set the workspace root used for discovery and persistence."""
        self.paths = WorkspacePaths(Path(root), self.config.state_dir)
        self.store.bind(self.paths)
        self.reports.paths = self.paths
        self.batch.tokens.bind(self.paths.batch_key_file(), self.paths.batch_tokens_file())
        logger.debug(f"Workspace bound: {self.paths.base_dir}")
        return self.paths

    def _require_paths(self) -> WorkspacePaths:
        if self.paths is None:
            raise WorkspaceNotBound()
        return self.paths

    def _log(self, session: WorkflowSession, event_type: EventType, message: str, **kwargs) -> None:
        self.store.log_event(WorkflowEvent(
            timestamp=self.clock(),
            event_type=event_type,
            session_id=session.id,
            message=message,
            **kwargs,
        ))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        workflow_type: str,
        scope: str = "workspace",
        path: Optional[str] = None,
        options: Optional[Union[WorkflowOptions, dict]] = None,
        initial_processing: Optional[Union[InitialProcessing, dict]] = None,
    ) -> StartResult:
        """
        Create a session: discover files, optionally run the pattern scan,
        persist, and return the first next action.

        Raises:
            WorkspaceNotBound: If no workspace root is set
            UnknownWorkflowType: If the type is not registered
            ValueError: For an invalid scope or missing version-upgrade options
        """
        started = time.monotonic()
        paths = self._require_paths()
        definition = self.registry.get_definition(workflow_type)
        options = _coerce(WorkflowOptions, options) or WorkflowOptions()
        initial_processing = _coerce(InitialProcessing, initial_processing) or InitialProcessing()

        if scope not in SCOPES:
            raise ValueError(f"Invalid scope: '{scope}'. Use one of: {', '.join(SCOPES)}")
        if workflow_type == VERSION_UPGRADE_TYPE and not (options.source_version and options.target_version):
            raise ValueError(f"{VERSION_UPGRADE_TYPE} requires source_version and target_version options")

        now = self.clock()
        base_path = paths.resolve_scope(path) if scope == "directory" else paths.base_dir

        session = WorkflowSession(
            id=generate_session_id(workflow_type, now),
            workflow_type=workflow_type,
            created_at=now,
            updated_at=now,
            scope=scope,
            base_path=str(base_path),
            file_glob_pattern=definition.file_patterns[0],
            phases=[
                WorkflowPhase(
                    id=p.id,
                    name=p.name,
                    description=p.description,
                    mode=p.mode,
                    required=p.required,
                    entry_conditions=p.entry_conditions,
                    available_actions=p.available_actions,
                )
                for p in definition.phases
            ],
            current_phase=definition.phases[0].id,
            options=options,
        )
        if workflow_type == VERSION_UPGRADE_TYPE:
            session.version_upgrade = VersionUpgrade(
                source_version=options.source_version,
                target_version=options.target_version,
            )

        excludes = list(options.exclude_patterns or definition.file_exclusions)
        excludes.append(f"{self.config.state_dir}/**")
        session.file_inventory = discover_files(
            base_path,
            definition,
            include_patterns=options.include_patterns,
            exclude_patterns=excludes,
            max_files=options.max_files,
            priority_patterns=options.priority_patterns,
        )
        session.files_total = len(session.file_inventory)
        self._set_phase_status(session, (INVENTORY_PHASE,), PhaseStatus.COMPLETED)

        summary = None
        if initial_processing.run_autonomous_phases and definition.has_pattern_scan:
            scanner = PatternScanner(
                definition.pattern_discovery.patterns,
                description_length=self.config.instance_description_length,
                create_instance_items=definition.pattern_discovery.create_instance_items,
            )
            timeout_ms = initial_processing.timeout_ms
            if timeout_ms is None:
                timeout_ms = self.config.scan_timeout_ms
            summary = scanner.scan(session, timeout_ms)
            self._set_phase_status(session, SCAN_PHASES, PhaseStatus.COMPLETED)

        for phase in session.phases:
            if phase.status == PhaseStatus.PENDING:
                phase.status = PhaseStatus.IN_PROGRESS
                session.current_phase = phase.id
                break

        if session.file_inventory:
            session.file_inventory[0].status = FileStatus.IN_PROGRESS
        session.status = WorkflowStatus.IN_PROGRESS

        self.store.create(session)
        self._log(
            session,
            EventType.WORKFLOW_STARTED,
            f"Started {workflow_type} over {session.files_total} file(s)",
            details={"base_path": session.base_path, "instances_total": session.instances_total},
        )
        logger.info(f"Workflow started: {session.id} ({session.files_total} files)")

        action = next_action(session)
        return StartResult(
            session=session,
            analysis_summary=summary,
            duration_ms=int((time.monotonic() - started) * 1000),
            next_action=action,
            agent_instructions=agent_instructions(session, action),
        )

    @staticmethod
    def _set_phase_status(session: WorkflowSession, phase_ids, status: PhaseStatus) -> None:
        for phase in session.phases:
            if phase.id in phase_ids:
                phase.status = status

    def get_session(self, session_id: str) -> WorkflowSession:
        """Raises SessionNotFound for unknown ids."""
        return self.store.get(session_id)

    def get_next_action(self, session_id: str) -> NextAction:
        """Compute the next action without changing the session."""
        return next_action(self.store.get(session_id))

    def report_progress(
        self,
        session_id: str,
        completed_action: Union[CompletedAction, dict],
        findings: Optional[list] = None,
        proposed_changes: Optional[list] = None,
        expand_checklist: Optional[list] = None,
    ) -> NextAction:
        """
        Apply an agent's progress report, persist, and return the next action.

        Raises:
            SessionNotFound: If the session does not exist
            FileNotInSession: If the reported file is not in the inventory
            ChecklistItemNotFound: If the reported item id is unknown
        """
        completed_action = _coerce(CompletedAction, completed_action)
        findings = [_coerce(Finding, f) for f in findings or []]
        proposed_changes = [_coerce(ProposedChange, c) for c in proposed_changes or []]
        expand_checklist = [_coerce(ChecklistExpansionItem, e) for e in expand_checklist or []]

        with self.store.lock(session_id):
            session = self.store.get(session_id)
            definition = self.registry.get_definition(session.workflow_type)
            outcome = apply_progress(
                session,
                completed_action,
                now=self.clock(),
                min_relevance_score=definition.topic_discovery.min_relevance_score,
                findings=findings,
                proposed_changes=proposed_changes,
                expand_checklist=expand_checklist,
            )
            self.store.update(session)

            path = outcome.file.path if outcome.file else None
            if outcome.item_id:
                self._log(
                    session,
                    _ITEM_EVENTS[outcome.item_status],
                    f"{completed_action.action} {outcome.item_status.value}",
                    file=path,
                    item_id=outcome.item_id,
                    details={"findings": len(findings), "proposed_changes": len(proposed_changes)},
                )
            if outcome.expanded:
                self._log(
                    session,
                    EventType.CHECKLIST_EXPANDED,
                    f"Added {outcome.expanded} topic item(s)",
                    file=path,
                    details={"file_reopened": outcome.file_reopened},
                )
            if outcome.file_completed:
                self._log(session, EventType.FILE_COMPLETED, "File completed", file=path)
            if outcome.session_completed:
                self._log(session, EventType.WORKFLOW_COMPLETED, "All files processed")
                logger.info(f"Workflow completed: {session.id}")

            return next_action(session)

    def run_batch(
        self,
        session_id: str,
        operation: Union[BatchOperation, str],
        batch_filter: Optional[Union[BatchFilter, dict]] = None,
        dry_run: bool = True,
        confirmation_token: Optional[str] = None,
    ) -> Union[BatchPreview, BatchExecution, BatchGrouping]:
        """
        Preview, execute, or group a batch operation over pattern instances.

        A rejected execution is returned as a BatchExecution with
        ``accepted=False``; it is not an exception.
        """
        operation = BatchOperation(operation)
        batch_filter = _coerce(BatchFilter, batch_filter) or BatchFilter()

        if operation == BatchOperation.GROUP_BY_TYPE:
            return self.batch.group_by_type(self.store.get(session_id), batch_filter)
        if dry_run:
            return self.batch.preview(self.store.get(session_id), operation, batch_filter)

        with self.store.lock(session_id):
            session = self.store.get(session_id)
            result = self.batch.execute(session, operation, batch_filter, confirmation_token, self.clock())
            if result.accepted:
                self.store.update(session)
                self._log(
                    session,
                    EventType.BATCH_EXECUTED,
                    f"{operation.value}: {result.instances_modified} instance(s)",
                    details={
                        "filter": batch_filter.model_dump(mode="json"),
                        "instances_modified": result.instances_modified,
                        "files_modified": result.files_modified,
                    },
                )
                if session.status == WorkflowStatus.COMPLETED:
                    self._log(session, EventType.WORKFLOW_COMPLETED, "All files processed")
            return result

    def generate_report(self, session_id: str, report_format: str = "markdown") -> str:
        """Render and save a report. Raises ValueError for unknown formats."""
        session = self.store.get(session_id)
        report = self.reports.generate(session, report_format, title=self._display_name(session))
        self._log(session, EventType.REPORT_GENERATED, f"{report_format} report generated")
        return report

    def _display_name(self, session: WorkflowSession) -> str:
        if self.registry.is_available(session.workflow_type):
            return self.registry.get_definition(session.workflow_type).name
        return session.workflow_type

    # ------------------------------------------------------------------
    # Status and housekeeping
    # ------------------------------------------------------------------

    def get_status(self, session_id: str, include_all_files: bool = False) -> dict[str, Any]:
        """Progress snapshot of a session as a JSON-ready dict."""
        session = self.store.get(session_id)
        topics_applied = 0
        topics_pending = 0
        for entry in session.file_inventory:
            for item in entry.checklist:
                if item.type != ItemType.TOPIC_APPLICATION:
                    continue
                if item.status == ItemStatus.COMPLETED:
                    topics_applied += 1
                elif item.is_open:
                    topics_pending += 1

        status = {
            "session_id": session.id,
            "workflow_type": session.workflow_type,
            "status": session.status.value,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "progress": {
                "phase": session.current_phase,
                "files_completed": session.files_completed,
                "files_total": session.files_total,
                "files_in_progress": sum(1 for f in session.file_inventory if f.status == FileStatus.IN_PROGRESS),
                "files_pending": sum(1 for f in session.file_inventory if f.status == FileStatus.PENDING),
                "percent_complete": session.percent_complete,
            },
            "summary": {
                "total_findings": len(session.findings),
                "findings_by_severity": severity_histogram(session.findings),
                "total_proposed_changes": len(session.proposed_changes),
                "topics_applied": topics_applied,
                "topics_pending": topics_pending,
            },
        }
        if session.instances_total is not None:
            status["instances"] = {
                "total": session.instances_total,
                "completed": session.instances_completed or 0,
                "auto_fixed": session.instances_auto_fixed or 0,
                "manual_review": session.instances_manual_review or 0,
            }
        if include_all_files:
            status["files"] = [
                {
                    "path": f.path,
                    "status": f.status.value,
                    "findings_count": len(f.findings),
                    "proposed_changes_count": len(f.proposed_changes),
                    "checklist_complete": is_file_complete(f),
                }
                for f in session.file_inventory
            ]
        return status

    def skip_file(self, session_id: str, path: str, reason: str) -> NextAction:
        """
        Skip every open item of one file and move on.

        Raises:
            ValueError: If the definition forbids skipping or no reason is given
            FileNotInSession: If the file is not in the inventory
        """
        with self.store.lock(session_id):
            session = self.store.get(session_id)
            definition = self.registry.get_definition(session.workflow_type)
            if not definition.completion_rules.allow_skip_with_reason:
                raise ValueError(f"Workflow type '{session.workflow_type}' does not allow skipping files")
            if not reason or not reason.strip():
                raise ValueError("A reason is required to skip a file")

            entry = skip_file_items(session, path, reason, self.clock())
            session.files_completed = session.count_completed_files()
            self.store.update(session)
            self._log(session, EventType.FILE_SKIPPED, reason, file=entry.path)
            if session.status == WorkflowStatus.COMPLETED:
                self._log(session, EventType.WORKFLOW_COMPLETED, "All files processed")
            return next_action(session)

    def complete_workflow(
        self,
        session_id: str,
        generate_report: bool = True,
        report_format: str = "markdown",
    ) -> dict[str, Any]:
        """Mark a session completed and summarize it, optionally with a report."""
        with self.store.lock(session_id):
            session = self.store.get(session_id)
            now = self.clock()
            if not finish_if_complete(session, now) and session.status != WorkflowStatus.COMPLETED:
                # Finishing early: remaining work is left as-is
                session.status = WorkflowStatus.COMPLETED
                session.completed_at = now
            self.store.update(session)
            self._log(session, EventType.WORKFLOW_COMPLETED, "Workflow completed")
            logger.info(f"Workflow completed: {session.id}")

        report = self.generate_report(session_id, report_format) if generate_report else None
        histogram = severity_histogram(session.findings)
        topics_applied = sum(
            1
            for entry in session.file_inventory
            for item in entry.checklist
            if item.type == ItemType.TOPIC_APPLICATION and item.status == ItemStatus.COMPLETED
        )
        top_issues = [
            {
                "file": f.file,
                "line": f.line,
                "severity": f.severity.value,
                "description": f.description,
                "suggestion": f.suggestion,
            }
            for f in session.findings
            if f.severity in (Severity.CRITICAL, Severity.ERROR)
        ][:10]

        return {
            "session_id": session.id,
            "status": session.status.value,
            "completed_at": (session.completed_at or session.updated_at).isoformat(),
            "duration_minutes": duration_minutes(session),
            "summary": {
                "files_reviewed": session.files_completed,
                "files_total": session.files_total,
                "total_findings": len(session.findings),
                "findings_by_severity": histogram,
                "proposed_changes": len(session.proposed_changes),
                "topics_applied": topics_applied,
            },
            "report": report,
            "top_issues": top_issues,
            "recommendations": recommendations(session, histogram),
        }

    def cancel_workflow(self, session_id: str) -> bool:
        """
        Delete a session document. Its event log is kept.

        Raises:
            SessionNotFound: If the session does not exist
        """
        with self.store.lock(session_id):
            session = self.store.get(session_id)
            self._log(session, EventType.WORKFLOW_CANCELLED, "Workflow cancelled")
            deleted = self.store.delete(session_id, keep_log=True)
        logger.info(f"Workflow cancelled: {session_id}")
        return deleted

    def list_sessions(self, active_only: bool = True) -> list[dict[str, Any]]:
        """Short summaries of known sessions, newest first."""
        self._require_paths()
        return [
            {
                "session_id": s.id,
                "workflow_type": s.workflow_type,
                "status": s.status.value,
                "created_at": s.created_at.isoformat(),
                "updated_at": s.updated_at.isoformat(),
                "files_completed": s.files_completed,
                "files_total": s.files_total,
                "percent_complete": s.percent_complete,
            }
            for s in self.store.list_sessions(active_only=active_only)
        ]

    def cleanup_expired_sessions(self) -> list[str]:
        """Delete sessions idle longer than the retention window."""
        self._require_paths()
        return self.store.cleanup_expired(self.config.retention_days)
