"""
Next-action decision protocol.

``next_action`` is a pure function of session state: it never mutates the
session, and calling it twice on the same state yields the same action.
Moving the file pointer is the progress reporter's job.
"""

from pathlib import Path

from .checklist import first_pending, has_remaining_items, next_pending_file_index
from .schema import (
    ItemType,
    NextAction,
    NextActionType,
    ToolCall,
    WorkflowSession,
)

ANALYSIS_TOOL = "analyze_al_code"
KNOWLEDGE_TOOL = "retrieve_bc_knowledge"
BATCH_TOOL = "workflow_batch"
PROGRESS_TOOL = "workflow_progress"
COMPLETE_TOOL = "workflow_complete"

DEFAULT_BC_VERSION = "BC26"


def _complete(session: WorkflowSession, instruction: str) -> NextAction:
    return NextAction(
        type=NextActionType.COMPLETE_WORKFLOW,
        instruction=instruction,
        tool_call=ToolCall(
            tool=COMPLETE_TOOL,
            args={"session_id": session.id, "generate_report": True},
        ),
    )


def next_action(session: WorkflowSession) -> NextAction:
    """Compute the single next unit of work for a session."""
    if session.files_completed >= session.files_total and not has_remaining_items(session):
        return _complete(
            session,
            "All files have been processed. Call workflow_complete to generate the final report.",
        )

    entry = session.current_file()
    if entry is None:
        return _complete(session, "No more files to process. Call workflow_complete to finish.")

    item = first_pending(entry)
    if item is None:
        return _next_file_action(session)

    name = Path(entry.path).name

    if item.type == ItemType.ANALYSIS:
        return NextAction(
            type=NextActionType.ANALYZE_FILE,
            action="analyze_file",
            file=entry.path,
            checklist_item_id=item.id,
            instruction=(
                f"REQUIRED: Call {ANALYSIS_TOOL} with the content of {name}. "
                f"Report the suggested topics via {PROGRESS_TOOL} (expand_checklist) "
                f"so they are added to this file's checklist."
            ),
            tool_call=ToolCall(
                tool=ANALYSIS_TOOL,
                args={
                    "code": "{{file_content}}",
                    "analysis_type": "comprehensive",
                    "bc_version": session.options.bc_version or DEFAULT_BC_VERSION,
                    "suggest_workflows": True,
                },
            ),
        )

    if item.type == ItemType.TOPIC_APPLICATION:
        return NextAction(
            type=NextActionType.APPLY_TOPIC,
            action="apply_topic",
            file=entry.path,
            topic_id=item.topic_id,
            checklist_item_id=item.id,
            instruction=(
                f"REQUIRED: Call {KNOWLEDGE_TOOL} to get the full content of topic "
                f"'{item.topic_id}'. Apply the guidance to {name}. "
                f"Document any findings or proposed changes."
            ),
            tool_call=ToolCall(
                tool=KNOWLEDGE_TOOL,
                args={"topic_id": item.topic_id, "include_related": False},
            ),
        )

    if item.type == ItemType.PATTERN_INSTANCE:
        match = item.pattern_match
        if match.requires_manual_review:
            instruction = (
                f"Review the {match.instance_type or 'unclassified'} instance at line "
                f"{match.line_number} of {name}. This requires manual review: decide on the "
                f"conversion, record it as a proposed change, and report the result."
            )
            tool_call = None
        else:
            instruction = (
                f"The {match.instance_type} instance at line {match.line_number} of {name} "
                f"can be auto-fixed. Preview a batch fix for all instances of this type, "
                f"or convert it individually and report the result."
            )
            tool_call = ToolCall(
                tool=BATCH_TOOL,
                args={
                    "session_id": session.id,
                    "operation": "apply_fixes",
                    "filter": {"instance_types": [match.instance_type]},
                    "dry_run": True,
                },
            )
        return NextAction(
            type=NextActionType.CONVERT_INSTANCE,
            action="convert_instance",
            file=entry.path,
            checklist_item_id=item.id,
            instance=match,
            instruction=instruction,
            tool_call=tool_call,
        )

    if item.type == ItemType.VALIDATION:
        return NextAction(
            type=NextActionType.COMPLETE_WORKFLOW,
            action="mark_complete",
            file=entry.path,
            checklist_item_id=item.id,
            instruction=(
                f"Mark the review of {name} as complete. Call {PROGRESS_TOOL} to report "
                f"completion and get the next file."
            ),
            tool_call=ToolCall(
                tool=PROGRESS_TOOL,
                args={
                    "session_id": session.id,
                    "completed_action": {
                        "action": "mark_complete",
                        "file": entry.path,
                        "checklist_item_id": item.id,
                        "status": "completed",
                    },
                },
            ),
        )

    return NextAction(
        type=NextActionType.COMPLETE_WORKFLOW,
        action="skip_item",
        file=entry.path,
        checklist_item_id=item.id,
        instruction=(
            f"Checklist item '{item.id}' ({item.type}) has no automated handling. "
            f"Call {PROGRESS_TOOL} to report it skipped and continue."
        ),
        tool_call=ToolCall(
            tool=PROGRESS_TOOL,
            args={
                "session_id": session.id,
                "completed_action": {
                    "action": "skip_item",
                    "file": entry.path,
                    "checklist_item_id": item.id,
                    "status": "skipped",
                },
            },
        ),
    )


def _next_file_action(session: WorkflowSession) -> NextAction:
    index = next_pending_file_index(session, session.current_file_index)
    if index < 0:
        return _complete(
            session,
            "All files have been processed. Call workflow_complete to generate the final report.",
        )
    entry = session.file_inventory[index]
    return NextAction(
        type=NextActionType.ANALYZE_FILE,
        action="analyze_file",
        file=entry.path,
        instruction=(
            f"Move to next file: {Path(entry.path).name}. "
            f"Call {PROGRESS_TOOL} to start processing."
        ),
    )


def agent_instructions(session: WorkflowSession, action: NextAction) -> str:
    """Short guidance that accompanies a next action."""
    if action.type == NextActionType.COMPLETE_WORKFLOW and action.action is None:
        return "All files have been processed. Call workflow_complete to generate the final report and end the workflow."
    return (
        f"Progress: {session.files_completed}/{session.files_total} files. "
        f"{action.instruction} After acting, call {PROGRESS_TOOL} to report results "
        f"and get the next action. Do NOT skip files or actions."
    )
