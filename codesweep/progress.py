"""
Progress reporting.

Applies an agent-reported outcome to a session: updates one checklist item,
records findings and proposed changes, expands the checklist, and moves the
file pointer when a file completes. Persistence and the follow-up next
action are handled by the engine.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .checklist import (
    find_item,
    first_open,
    insert_before_validation,
    is_file_complete,
    is_session_complete,
    next_pending_file_index,
    topic_items,
)
from .errors import ChecklistItemNotFound, FileNotInSession
from .schema import (
    ChecklistExpansionItem,
    CompletedAction,
    FileEntry,
    FileStatus,
    Finding,
    ItemStatus,
    ItemType,
    PhaseStatus,
    ProposedChange,
    WorkflowSession,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class ProgressOutcome:
    """What a progress report changed."""
    file: Optional[FileEntry] = None
    item_id: Optional[str] = None
    item_status: Optional[ItemStatus] = None
    expanded: int = 0
    file_reopened: bool = False
    file_completed: bool = False
    session_completed: bool = False


def resolve_target(session: WorkflowSession, path: Optional[str]) -> Optional[FileEntry]:
    """
    The file a report applies to: the named file, else the current file.

    Raises:
        FileNotInSession: If a path is given that is not in the inventory
    """
    if path:
        entry = session.get_file(path)
        if entry is None:
            raise FileNotInSession(session.id, path)
        return entry
    return session.current_file()


def advance_pointer(session: WorkflowSession) -> bool:
    """Move to the next pending file and mark it in progress. Returns False when none remain."""
    index = next_pending_file_index(session, session.current_file_index)
    if index < 0:
        return False
    session.current_file_index = index
    session.file_inventory[index].status = FileStatus.IN_PROGRESS
    return True


def finish_if_complete(session: WorkflowSession, now: datetime) -> bool:
    """Transition the session to completed once nothing is left to do."""
    if session.status == WorkflowStatus.COMPLETED or not is_session_complete(session):
        return False
    session.status = WorkflowStatus.COMPLETED
    session.completed_at = now
    for phase in session.phases:
        if phase.status != PhaseStatus.SKIPPED:
            phase.status = PhaseStatus.COMPLETED
    if session.phases:
        session.current_phase = session.phases[-1].id
    return True


def reopen_file(session: WorkflowSession, entry: FileEntry) -> None:
    """
    Put a finished file back in progress after new items were added to it.

    A completed session goes back to in progress. The pointer moves to the
    reopened file unless the current file still has open work.
    """
    entry.status = FileStatus.IN_PROGRESS
    session.files_completed = session.count_completed_files()
    if session.status == WorkflowStatus.COMPLETED:
        session.status = WorkflowStatus.IN_PROGRESS
        session.completed_at = None
    current = session.current_file()
    if current is None or current.status in (FileStatus.COMPLETED, FileStatus.SKIPPED):
        session.current_file_index = next(i for i, e in enumerate(session.file_inventory) if e is entry)
    logger.info(f"Reopened {entry.path} in {session.id} for new checklist items")


def apply_progress(
    session: WorkflowSession,
    completed: CompletedAction,
    now: datetime,
    min_relevance_score: float,
    findings: Optional[Iterable[Finding]] = None,
    proposed_changes: Optional[Iterable[ProposedChange]] = None,
    expand_checklist: Optional[Iterable[ChecklistExpansionItem]] = None,
) -> ProgressOutcome:
    """
    Apply one progress report to the session in place.

    Raises:
        FileNotInSession: If completed.file names an unknown file
        ChecklistItemNotFound: If completed.checklist_item_id is unknown
    """
    entry = resolve_target(session, completed.file)
    outcome = ProgressOutcome(file=entry)
    if entry is None:
        logger.debug(f"Progress for {session.id} has no target file; nothing to update")
        return outcome

    if completed.checklist_item_id:
        item = find_item(entry, completed.checklist_item_id)
        if item is None:
            raise ChecklistItemNotFound(entry.path, completed.checklist_item_id)
    else:
        item = first_open(entry)

    if item is not None:
        new_status = ItemStatus(completed.status)
        if (
            item.type == ItemType.PATTERN_INSTANCE
            and new_status == ItemStatus.COMPLETED
            and item.status != ItemStatus.COMPLETED
        ):
            session.instances_completed = (session.instances_completed or 0) + 1
        item.status = new_status
        if completed.error:
            item.error = completed.error
        if completed.skip_reason:
            item.skip_reason = completed.skip_reason
        outcome.item_id = item.id
        outcome.item_status = new_status

    for finding in findings or []:
        finding = finding.model_copy(update={"file": finding.file or entry.path})
        entry.findings.append(finding)
        session.findings.append(finding)

    for change in proposed_changes or []:
        change = change.model_copy(update={"file": change.file or entry.path})
        entry.proposed_changes.append(change)
        session.proposed_changes.append(change)

    if expand_checklist:
        new_items = topic_items(expand_checklist, min_relevance_score)
        if new_items:
            entry.checklist = insert_before_validation(entry.checklist, new_items)
            if entry.status in (FileStatus.COMPLETED, FileStatus.SKIPPED):
                reopen_file(session, entry)
                outcome.file_reopened = True
        outcome.expanded = len(new_items)

    if entry.status not in (FileStatus.COMPLETED, FileStatus.SKIPPED) and is_file_complete(entry):
        entry.status = FileStatus.COMPLETED
        session.files_completed = session.count_completed_files()
        outcome.file_completed = True
        logger.info(f"File completed in {session.id}: {entry.path}")
        advance_pointer(session)

    outcome.session_completed = finish_if_complete(session, now)
    return outcome


def skip_file(session: WorkflowSession, path: str, reason: str, now: datetime) -> FileEntry:
    """
    Skip a whole file: open items become skipped and the pointer moves on.

    Raises:
        FileNotInSession: If the path is not in the inventory
    """
    entry = resolve_target(session, path)
    for item in entry.checklist:
        if item.is_open:
            item.status = ItemStatus.SKIPPED
            item.skip_reason = reason
    was_completed = entry.status == FileStatus.COMPLETED
    entry.status = FileStatus.SKIPPED
    if was_completed:
        session.files_completed = session.count_completed_files()

    current = session.current_file()
    if current is entry:
        advance_pointer(session)
    finish_if_complete(session, now)
    return entry
