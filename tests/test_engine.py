"""End-to-end tests for WorkflowEngine."""

import json
import logging
import re
from unittest.mock import patch

import pytest

from codesweep.config import EngineConfig
from codesweep.engine import WorkflowEngine
from codesweep.errors import FileNotInSession, SessionNotFound, UnknownWorkflowType, WorkspaceNotBound
from codesweep.schema import (
    BatchExecution,
    BatchGrouping,
    BatchPreview,
    EventType,
    FileStatus,
    ItemStatus,
    ItemType,
    NextAction,
    NextActionType,
    PhaseStatus,
    WorkflowStatus,
)

from conftest import write_file

MIGRATION = "error-to-errorinfo-migration"


def _done(action="analyze_file", **kwargs):
    return {"action": action, "status": "completed", **kwargs}


def _event_types(workspace, session_id):
    log_file = workspace / ".codesweep" / "sessions" / f"{session_id}.log.jsonl"
    return [json.loads(line)["event_type"] for line in log_file.read_text().splitlines()]


class TestStartWorkflow:

    def test_code_review_start(self, engine, workspace):
        result = engine.start_workflow("code-review")
        session = result.session

        assert re.match(r"^wf-code-review-2025-01-15-[0-9a-f]{6}$", session.id)
        assert session.status == WorkflowStatus.IN_PROGRESS
        assert session.files_total == 2
        assert [e.object_type for e in session.file_inventory] == ["Page", "Codeunit"]
        assert session.file_inventory[0].status == FileStatus.IN_PROGRESS
        assert session.file_inventory[1].status == FileStatus.PENDING
        assert session.get_phase("inventory").status == PhaseStatus.COMPLETED
        assert session.get_phase("analysis").status == PhaseStatus.IN_PROGRESS
        assert session.current_phase == "analysis"
        assert result.analysis_summary is None
        assert result.next_action.type == NextActionType.ANALYZE_FILE
        assert result.next_action.file == session.file_inventory[0].path
        assert result.agent_instructions.startswith("Progress: 0/2 files.")
        assert (workspace / ".codesweep" / "sessions" / f"{session.id}.json").exists()
        assert _event_types(workspace, session.id) == ["workflow_started"]

    def test_migration_runs_pattern_scan(self, engine):
        result = engine.start_workflow(MIGRATION)
        session = result.session
        summary = result.analysis_summary

        assert summary.files_scanned == 2
        assert summary.files_with_matches == 1
        assert summary.total_instances == 2
        assert set(summary.by_type) == {"literal", "text_constant"}
        assert session.instances_total == 2
        assert session.instances_manual_review == 1
        assert session.get_phase("pattern_scan").status == PhaseStatus.COMPLETED
        assert session.current_phase == "batch_auto"

        codeunit = session.file_inventory[1]
        types = [item.type for item in codeunit.checklist]
        assert types == [ItemType.ANALYSIS, ItemType.PATTERN_INSTANCE, ItemType.PATTERN_INSTANCE, ItemType.VALIDATION]

    def test_scan_can_be_disabled(self, engine):
        result = engine.start_workflow(MIGRATION, initial_processing={"run_autonomous_phases": False})

        assert result.analysis_summary is None
        assert result.session.instances_total is None
        assert result.session.get_phase("pattern_scan").status == PhaseStatus.IN_PROGRESS

    def test_directory_scope(self, engine, workspace):
        write_file(workspace, "other/Extra.table.al", "table 50100 Extra {}")

        session = engine.start_workflow("code-review", scope="directory", path="src").session

        assert session.base_path == str((workspace / "src").resolve())
        assert session.files_total == 2

    def test_state_dir_is_never_inventoried(self, engine, workspace):
        write_file(workspace, ".codesweep/stale.al", "codeunit 1 Stale {}")
        assert engine.start_workflow("code-review").session.files_total == 2

    def test_options_shape_inventory(self, engine):
        session = engine.start_workflow(
            "code-review",
            options={"priority_patterns": ["codeunit"], "max_files": 2, "bc_version": "BC24"},
        ).session

        assert session.file_inventory[0].object_type == "Codeunit"
        assert session.file_inventory[0].status == FileStatus.IN_PROGRESS
        assert session.options.bc_version == "BC24"

    def test_invalid_scope(self, engine):
        with pytest.raises(ValueError, match="Invalid scope"):
            engine.start_workflow("code-review", scope="everything")

    def test_version_upgrade_requires_versions(self, engine):
        with pytest.raises(ValueError, match="source_version and target_version"):
            engine.start_workflow("bc-version-upgrade", options={"source_version": "BC23"})

    def test_version_upgrade(self, engine):
        session = engine.start_workflow(
            "bc-version-upgrade", options={"source_version": "BC23", "target_version": "BC26"}
        ).session

        assert session.version_upgrade.source_version == "BC23"
        assert session.version_upgrade.target_version == "BC26"

    def test_unknown_type(self, engine):
        with pytest.raises(UnknownWorkflowType, match="code-review"):
            engine.start_workflow("does-not-exist")

    def test_workspace_not_bound(self, registry, clock):
        engine = WorkflowEngine(registry, config=EngineConfig(), clock=clock)
        with pytest.raises(WorkspaceNotBound):
            engine.start_workflow("code-review")
        with pytest.raises(WorkspaceNotBound):
            engine.list_sessions()


class TestCodeReviewEndToEnd:

    def test_walk_every_item_to_completion(self, engine, workspace):
        session_id = engine.start_workflow("code-review").session.id

        action = engine.report_progress(
            session_id,
            _done(),
            findings=[{"severity": "warning", "description": "Missing caption"}],
        )
        assert action.type == NextActionType.COMPLETE_WORKFLOW
        assert action.action == "mark_complete"

        action = engine.report_progress(session_id, _done("mark_complete"))
        assert action.type == NextActionType.ANALYZE_FILE
        assert action.file.endswith("CustomerCheck.codeunit.al")

        engine.report_progress(
            session_id,
            _done(),
            findings=[{"severity": "error", "description": "Unhandled Error()", "line": 6}],
            proposed_changes=[{
                "line_start": 6, "line_end": 6,
                "original_code": "Error('Customer number is required');",
                "proposed_code": "Error(ErrorInfo.Create('Customer number is required'));",
            }],
        )
        action = engine.report_progress(session_id, _done("mark_complete"))

        session = engine.get_session(session_id)
        assert session.status == WorkflowStatus.COMPLETED
        assert session.files_completed == 2
        assert session.completed_at == engine.clock()
        assert all(f.status == FileStatus.COMPLETED for f in session.file_inventory)
        assert action.type == NextActionType.COMPLETE_WORKFLOW
        assert action.action is None
        assert [f.severity.value for f in session.findings] == ["warning", "error"]
        assert session.findings[1].file.endswith("CustomerCheck.codeunit.al")

        events = _event_types(workspace, session_id)
        assert events.count("item_completed") == 4
        assert events.count("file_completed") == 2
        assert events[-1] == "workflow_completed"

        result = engine.complete_workflow(session_id)
        assert result["status"] == "completed"
        assert result["summary"]["files_reviewed"] == 2
        assert result["summary"]["findings_by_severity"]["error"] == 1
        assert result["top_issues"][0]["description"] == "Unhandled Error()"
        assert result["recommendations"] == [
            "Review 1 error-level findings for data integrity risks",
            "Review 1 proposed code changes",
        ]
        assert result["report"].startswith("# Business Central Code Review Report")
        assert (workspace / ".codesweep" / "reports" / f"{session_id}-report.md").exists()

    def test_topic_expansion(self, engine):
        session_id = engine.start_workflow("code-review").session.id

        action = engine.report_progress(
            session_id,
            _done(),
            expand_checklist=[
                {"topic_id": "sam-coding/naming", "relevance_score": 0.9},
                {"topic_id": "dean-debug/perf", "relevance_score": 0.2},
            ],
        )

        assert action.type == NextActionType.APPLY_TOPIC
        assert action.topic_id == "sam-coding/naming"
        status = engine.get_status(session_id)
        assert status["summary"]["topics_pending"] == 1

    def test_get_next_action_is_read_only(self, engine):
        session_id = engine.start_workflow("code-review").session.id
        before = engine.get_session(session_id).model_dump()

        assert engine.get_next_action(session_id) == engine.get_next_action(session_id)
        assert engine.get_session(session_id).model_dump() == before

    def test_unknown_file_leaves_session_untouched(self, engine):
        session_id = engine.start_workflow("code-review").session.id
        before = engine.get_session(session_id).model_dump()

        with pytest.raises(FileNotInSession):
            engine.report_progress(session_id, _done(file="/elsewhere/Nope.al"))

        assert engine.get_session(session_id).model_dump() == before

    def test_unknown_session(self, engine):
        with pytest.raises(SessionNotFound):
            engine.report_progress("wf-missing", _done())

    def test_progress_survives_unwritable_state_dir(self, engine, caplog):
        session_id = engine.start_workflow("code-review").session.id

        with patch("codesweep.session_store.open", side_effect=OSError("read-only filesystem"), create=True):
            with caplog.at_level(logging.WARNING):
                action = engine.report_progress(session_id, _done())

        assert isinstance(action, NextAction)
        assert action.action == "mark_complete"
        assert "Failed to persist session" in caplog.text
        assert "Failed to write event log" in caplog.text
        session = engine.get_session(session_id)
        assert session.file_inventory[0].checklist[0].status == ItemStatus.COMPLETED

    def test_session_survives_engine_restart(self, engine, registry, clock, workspace):
        session_id = engine.start_workflow("code-review").session.id
        engine.report_progress(session_id, _done())

        restarted = WorkflowEngine(registry, config=EngineConfig(), clock=clock, workspace_root=workspace)
        session = restarted.get_session(session_id)

        assert session.model_dump() == engine.get_session(session_id).model_dump()
        assert session.file_inventory[0].checklist[0].status == ItemStatus.COMPLETED


class TestBatchThroughEngine:

    def test_preview_then_execute(self, engine, workspace):
        session_id = engine.start_workflow(MIGRATION).session.id
        literals = {"instance_types": ["literal"]}

        preview = engine.run_batch(session_id, "apply_fixes", literals, dry_run=True)
        assert isinstance(preview, BatchPreview)
        assert preview.instances_affected == 1

        result = engine.run_batch(
            session_id, "apply_fixes", literals, dry_run=False,
            confirmation_token=preview.confirmation_token,
        )

        assert isinstance(result, BatchExecution)
        assert result.accepted is True
        session = engine.get_session(session_id)
        assert session.instances_completed == 1
        assert session.instances_auto_fixed == 1
        assert "batch_executed" in _event_types(workspace, session_id)

    def test_token_survives_engine_restart(self, engine, registry, clock, workspace):
        session_id = engine.start_workflow(MIGRATION).session.id
        literals = {"instance_types": ["literal"]}
        preview = engine.run_batch(session_id, "apply_fixes", literals, dry_run=True)

        restarted = WorkflowEngine(registry, config=EngineConfig(), clock=clock, workspace_root=workspace)
        result = restarted.run_batch(
            session_id, "apply_fixes", literals, dry_run=False,
            confirmation_token=preview.confirmation_token,
        )

        assert result.accepted is True
        assert result.instances_modified == 1
        assert (workspace / ".codesweep" / "batch.key").exists()

    def test_rejected_execution_is_not_persisted(self, engine, workspace):
        session_id = engine.start_workflow(MIGRATION).session.id
        before = engine.get_session(session_id).model_dump()

        result = engine.run_batch(session_id, "apply_fixes", {"instance_types": ["literal"]},
                                  dry_run=False, confirmation_token="bogus.token")

        assert result.accepted is False
        assert engine.get_session(session_id).model_dump() == before
        assert "batch_executed" not in _event_types(workspace, session_id)

    def test_group_by_type_needs_no_token(self, engine):
        session_id = engine.start_workflow(MIGRATION).session.id

        grouping = engine.run_batch(session_id, "group_by_type", dry_run=False)

        assert isinstance(grouping, BatchGrouping)
        assert grouping.total_instances == 2


class TestStatusAndHousekeeping:

    def test_status(self, engine):
        session_id = engine.start_workflow(MIGRATION).session.id

        status = engine.get_status(session_id, include_all_files=True)

        assert status["status"] == "in_progress"
        assert status["progress"]["files_total"] == 2
        assert status["progress"]["files_in_progress"] == 1
        assert status["progress"]["files_pending"] == 1
        assert status["progress"]["percent_complete"] == 0
        assert status["instances"] == {"total": 2, "completed": 0, "auto_fixed": 0, "manual_review": 1}
        assert [f["status"] for f in status["files"]] == ["in_progress", "pending"]

    def test_status_omits_instances_without_scan(self, engine):
        session_id = engine.start_workflow("code-review").session.id
        status = engine.get_status(session_id)
        assert "instances" not in status
        assert "files" not in status

    def test_skip_file(self, engine, workspace):
        session = engine.start_workflow("code-review").session
        first = session.file_inventory[0].path

        action = engine.skip_file(session.id, first, "generated page")

        assert action.file.endswith("CustomerCheck.codeunit.al")
        updated = engine.get_session(session.id)
        assert updated.file_inventory[0].status == FileStatus.SKIPPED
        assert updated.current_file_index == 1
        assert "file_skipped" in _event_types(workspace, session.id)

    def test_skip_requires_reason(self, engine):
        session = engine.start_workflow("code-review").session
        with pytest.raises(ValueError, match="reason"):
            engine.skip_file(session.id, session.file_inventory[0].path, "  ")

    def test_skip_forbidden_by_definition(self, engine, registry):
        definition = registry.get_definition("code-review").model_copy(deep=True)
        definition.completion_rules.allow_skip_with_reason = False
        registry.register(definition, allow_override=True)
        session = engine.start_workflow("code-review").session

        with pytest.raises(ValueError, match="does not allow skipping"):
            engine.skip_file(session.id, session.file_inventory[0].path, "generated")

    def test_complete_early(self, engine):
        session_id = engine.start_workflow("code-review").session.id

        result = engine.complete_workflow(session_id, generate_report=False)

        assert result["status"] == "completed"
        assert result["report"] is None
        assert result["summary"]["files_reviewed"] == 0
        session = engine.get_session(session_id)
        assert session.status == WorkflowStatus.COMPLETED
        assert session.file_inventory[0].status == FileStatus.IN_PROGRESS

    def test_json_report(self, engine):
        session_id = engine.start_workflow("code-review").session.id
        data = json.loads(engine.generate_report(session_id, "json"))
        assert data["session_id"] == session_id

    def test_cancel_keeps_event_log(self, engine, workspace):
        session_id = engine.start_workflow("code-review").session.id

        assert engine.cancel_workflow(session_id) is True

        with pytest.raises(SessionNotFound):
            engine.get_session(session_id)
        assert _event_types(workspace, session_id)[-1] == "workflow_cancelled"

    def test_list_sessions(self, engine, clock):
        first = engine.start_workflow("code-review").session.id
        clock.advance(minutes=1)
        second = engine.start_workflow(MIGRATION).session.id
        engine.complete_workflow(first, generate_report=False)

        assert [s["session_id"] for s in engine.list_sessions()] == [second]
        assert [s["session_id"] for s in engine.list_sessions(active_only=False)] == [second, first]

    def test_cleanup_expired_sessions(self, engine, clock):
        stale = engine.start_workflow("code-review").session.id
        clock.advance(days=8)
        fresh = engine.start_workflow("code-review").session.id

        assert engine.cleanup_expired_sessions() == [stale]
        assert engine.get_session(fresh).id == fresh
        with pytest.raises(SessionNotFound):
            engine.get_session(stale)

    def test_events_recorded_with_engine_clock(self, engine):
        session_id = engine.start_workflow("code-review").session.id
        [event] = engine.store.get_events(session_id)
        assert event.event_type == EventType.WORKFLOW_STARTED
        assert event.timestamp == engine.clock()
