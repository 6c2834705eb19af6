"""Tests for checklist helpers and the next-action decision protocol."""

import pytest

from codesweep.actions import agent_instructions, next_action
from codesweep.checklist import (
    create_initial_checklist,
    first_open,
    insert_before_validation,
    is_file_complete,
    is_session_complete,
    next_pending_file_index,
    topic_items,
)
from codesweep.schema import (
    AnalysisItem,
    ChecklistExpansionItem,
    CustomItem,
    FileEntry,
    FileStatus,
    ItemStatus,
    NextActionType,
    PatternInstanceItem,
    PatternMatch,
    TopicApplicationItem,
    ValidationItem,
    WorkflowSession,
)


def _session(*entries, **fields) -> WorkflowSession:
    return WorkflowSession(
        id="wf-code-review-2025-01-15-abc123",
        workflow_type="code-review",
        file_inventory=list(entries),
        files_total=len(entries),
        **fields,
    )


def _entry(path="/ws/Sales.codeunit.al", *items, status=FileStatus.IN_PROGRESS) -> FileEntry:
    return FileEntry(path=path, status=status, checklist=list(items))


def _instance(item_id="instance-1", auto=True, instance_type="literal") -> PatternInstanceItem:
    return PatternInstanceItem(
        id=item_id,
        description="Line 3: Error('x')",
        pattern_match=PatternMatch(
            pattern_id="error-call",
            line_number=3,
            match_text="Error('x')",
            instance_type=instance_type,
            requires_manual_review=not auto,
        ),
    )


# ============================================================================
# Checklist helpers
# ============================================================================

class TestChecklistHelpers:

    def test_initial_checklist_ids(self, registry):
        checklist = create_initial_checklist(registry.get_definition("code-review"))
        assert [i.id.rsplit("-", 1)[0] for i in checklist] == ["analyze", "review_complete"]
        assert all(len(i.id.rsplit("-", 1)[1]) == 6 for i in checklist)
        assert all(i.status == ItemStatus.PENDING for i in checklist)

    def test_file_pattern_condition(self, registry):
        definition = registry.get_definition("code-review").model_copy(deep=True)
        definition.per_file_checklist[0].conditions = {"file_pattern": "*.codeunit.al"}

        assert len(create_initial_checklist(definition, "/ws/A.codeunit.al")) == 2
        assert len(create_initial_checklist(definition, "/ws/A.page.al")) == 1

    def test_insert_before_validation(self):
        original = [AnalysisItem(id="a", description="A"), ValidationItem(id="v", description="V")]
        new = [TopicApplicationItem(id="t1", description="T1"), TopicApplicationItem(id="t2", description="T2")]

        result = insert_before_validation(original, new)

        assert [i.id for i in result] == ["a", "t1", "t2", "v"]
        assert [i.id for i in original] == ["a", "v"]

    def test_insert_without_validation_appends(self):
        result = insert_before_validation([AnalysisItem(id="a", description="A")], [CustomItem(id="c", description="C")])
        assert [i.id for i in result] == ["a", "c"]

    def test_topic_items_filter_by_score(self):
        expansions = [
            ChecklistExpansionItem(topic_id="sam-coding/naming", relevance_score=0.9, description="Naming"),
            ChecklistExpansionItem(topic_id="dean-debug/perf", relevance_score=0.59),
            ChecklistExpansionItem(topic_id="roger/threshold", relevance_score=0.6),
        ]

        items = topic_items(expansions, 0.6)

        assert [i.topic_id for i in items] == ["sam-coding/naming", "roger/threshold"]
        assert items[0].id.startswith("topic-sam-coding-naming-")
        assert items[0].description == "Apply topic: Naming"
        assert items[1].description == "Apply topic: roger/threshold"
        assert items[0].topic_relevance_score == 0.9

    def test_file_complete_requires_all_terminal(self):
        entry = _entry(
            "/ws/a.al",
            AnalysisItem(id="a", description="A", status=ItemStatus.COMPLETED),
            ValidationItem(id="v", description="V", status=ItemStatus.IN_PROGRESS),
        )
        assert not is_file_complete(entry)
        assert first_open(entry).id == "v"

        entry.checklist[1].status = ItemStatus.FAILED
        assert is_file_complete(entry)

    def test_next_pending_file_index(self):
        session = _session(
            _entry("/ws/a.al", status=FileStatus.COMPLETED),
            _entry("/ws/b.al", status=FileStatus.SKIPPED),
            _entry("/ws/c.al", status=FileStatus.PENDING),
        )
        assert next_pending_file_index(session, 0) == 2
        assert next_pending_file_index(session, 2) == -1

    def test_next_pending_file_index_returns_to_reopened_file(self):
        session = _session(
            _entry("/ws/a.al", TopicApplicationItem(id="t", description="T", topic_id="x/y")),
            _entry("/ws/b.al", AnalysisItem(id="b", description="B", status=ItemStatus.COMPLETED),
                   status=FileStatus.COMPLETED),
            _entry("/ws/c.al", AnalysisItem(id="c", description="C", status=ItemStatus.COMPLETED)),
        )
        assert next_pending_file_index(session, 2) == 0
        assert next_pending_file_index(session, 0) == -1

    def test_session_complete(self):
        session = _session(
            _entry("/ws/a.al", AnalysisItem(id="a", description="A", status=ItemStatus.COMPLETED),
                   status=FileStatus.COMPLETED),
            _entry("/ws/b.al", status=FileStatus.SKIPPED),
        )
        assert is_session_complete(session)

        session.file_inventory[1].status = FileStatus.PENDING
        assert not is_session_complete(session)


# ============================================================================
# Next action
# ============================================================================

class TestNextAction:

    def test_analysis_item(self):
        session = _session(_entry(
            "/ws/Sales.codeunit.al",
            AnalysisItem(id="analyze-abc123", description="Run analyze_al_code"),
            ValidationItem(id="review_complete-def456", description="Mark review complete"),
        ))

        action = next_action(session)

        assert action.type == NextActionType.ANALYZE_FILE
        assert action.file == "/ws/Sales.codeunit.al"
        assert action.checklist_item_id == "analyze-abc123"
        assert action.tool_call.tool == "analyze_al_code"
        assert action.tool_call.args["bc_version"] == "BC26"
        assert "Sales.codeunit.al" in action.instruction

    def test_bc_version_from_options(self):
        session = _session(
            _entry("/ws/a.al", AnalysisItem(id="a", description="A")),
            options={"bc_version": "BC24"},
        )
        assert next_action(session).tool_call.args["bc_version"] == "BC24"

    def test_topic_item(self):
        session = _session(_entry(
            "/ws/a.al",
            AnalysisItem(id="a", description="A", status=ItemStatus.COMPLETED),
            TopicApplicationItem(id="t", description="T", topic_id="sam-coding/naming"),
        ))

        action = next_action(session)

        assert action.type == NextActionType.APPLY_TOPIC
        assert action.topic_id == "sam-coding/naming"
        assert action.tool_call.tool == "retrieve_bc_knowledge"
        assert action.tool_call.args == {"topic_id": "sam-coding/naming", "include_related": False}

    def test_auto_fixable_instance_suggests_batch(self):
        session = _session(_entry("/ws/a.al", _instance(auto=True)))

        action = next_action(session)

        assert action.type == NextActionType.CONVERT_INSTANCE
        assert action.instance.line_number == 3
        assert action.tool_call.tool == "workflow_batch"
        assert action.tool_call.args["filter"] == {"instance_types": ["literal"]}
        assert action.tool_call.args["dry_run"] is True

    def test_manual_instance_has_no_tool_call(self):
        session = _session(_entry("/ws/a.al", _instance(auto=False, instance_type="function_call")))

        action = next_action(session)

        assert action.type == NextActionType.CONVERT_INSTANCE
        assert action.tool_call is None
        assert "manual review" in action.instruction

    def test_validation_item(self):
        session = _session(_entry(
            "/ws/a.al",
            AnalysisItem(id="a", description="A", status=ItemStatus.COMPLETED),
            ValidationItem(id="v", description="V"),
        ))

        action = next_action(session)

        assert action.type == NextActionType.COMPLETE_WORKFLOW
        assert action.action == "mark_complete"
        assert action.file == "/ws/a.al"
        assert action.tool_call.tool == "workflow_progress"
        assert action.tool_call.args["completed_action"]["checklist_item_id"] == "v"

    def test_custom_item_is_skipped(self):
        session = _session(_entry("/ws/a.al", CustomItem(id="custom-1", description="C")))

        action = next_action(session)

        assert action.type == NextActionType.COMPLETE_WORKFLOW
        assert action.action == "skip_item"
        assert "custom-1" in action.instruction
        assert action.tool_call.args["completed_action"]["status"] == "skipped"

    def test_move_to_next_pending_file(self):
        session = _session(
            _entry("/ws/a.al", AnalysisItem(id="a", description="A", status=ItemStatus.IN_PROGRESS)),
            _entry("/ws/b.al", AnalysisItem(id="b", description="B"), status=FileStatus.PENDING),
        )

        action = next_action(session)

        assert action.type == NextActionType.ANALYZE_FILE
        assert action.file == "/ws/b.al"
        assert action.checklist_item_id is None
        assert "Move to next file" in action.instruction
        # Pure: the pointer has not moved
        assert session.current_file_index == 0
        assert session.file_inventory[1].status == FileStatus.PENDING

    def test_complete_when_all_done(self):
        session = _session(
            _entry("/ws/a.al", ValidationItem(id="v", description="V", status=ItemStatus.COMPLETED),
                   status=FileStatus.COMPLETED),
            files_completed=1,
        )

        action = next_action(session)

        assert action.type == NextActionType.COMPLETE_WORKFLOW
        assert action.action is None
        assert action.tool_call.tool == "workflow_complete"
        assert "workflow_complete" in agent_instructions(session, action)

    def test_pointer_out_of_range(self):
        session = _session(
            _entry("/ws/a.al", AnalysisItem(id="a", description="A")),
            current_file_index=1,
        )
        assert next_action(session).type == NextActionType.COMPLETE_WORKFLOW

    def test_empty_inventory(self):
        assert next_action(_session()).type == NextActionType.COMPLETE_WORKFLOW

    def test_idempotent(self):
        session = _session(
            _entry("/ws/a.al", AnalysisItem(id="a", description="A"), ValidationItem(id="v", description="V")),
            _entry("/ws/b.al", AnalysisItem(id="b", description="B"), status=FileStatus.PENDING),
        )
        before = session.model_dump()

        first = next_action(session)
        second = next_action(session)

        assert first == second
        assert session.model_dump() == before

    def test_agent_instructions_show_progress(self):
        session = _session(_entry("/ws/a.al", AnalysisItem(id="a", description="A")))
        action = next_action(session)
        text = agent_instructions(session, action)
        assert text.startswith("Progress: 0/1 files.")
        assert "workflow_progress" in text
