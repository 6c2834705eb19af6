"""
Checklist state machine.

Each file carries an ordered checklist. These helpers are the only place
item ordering and file completion rules live:

- a validation item, when present, is always the last item
- expansion inserts new items immediately before the validation item
- a file is complete once every item has a terminal status
"""

import fnmatch
import uuid
from pathlib import Path
from typing import Iterable, Optional

from .schema import (
    AnalysisItem,
    ChecklistExpansionItem,
    CustomItem,
    FileEntry,
    FileStatus,
    ItemStatus,
    ItemType,
    PatternInstanceItem,
    TopicApplicationItem,
    ValidationItem,
    WorkflowDefinition,
    WorkflowSession,
)

ITEM_CLASSES = {
    ItemType.ANALYSIS: AnalysisItem,
    ItemType.TOPIC_APPLICATION: TopicApplicationItem,
    ItemType.PATTERN_INSTANCE: PatternInstanceItem,
    ItemType.VALIDATION: ValidationItem,
    ItemType.CUSTOM: CustomItem,
}


def generate_item_id(prefix: str) -> str:
    """Checklist item id: template prefix plus a short random suffix."""
    return f"{prefix}-{uuid.uuid4().hex[:6]}"


def new_item(item_type: ItemType, item_id: str, description: str, **fields):
    """Build the checklist item variant for a type."""
    cls = ITEM_CLASSES[ItemType(item_type)]
    return cls(id=item_id, description=description, **fields)


def create_initial_checklist(definition: WorkflowDefinition, path: Optional[str] = None) -> list:
    """
    Seed a file checklist from the definition's per-file template.

    Template items with a ``file_pattern`` condition are only added when the
    file name matches it.
    """
    items = []
    for template in definition.per_file_checklist:
        conditions = template.conditions or {}
        file_pattern = conditions.get("file_pattern")
        if file_pattern and path and not fnmatch.fnmatch(Path(path).name.lower(), file_pattern.lower()):
            continue
        items.append(new_item(template.type, generate_item_id(template.id), template.description))
    return items


def find_item(entry: FileEntry, item_id: str):
    for item in entry.checklist:
        if item.id == item_id:
            return item
    return None


def first_pending(entry: FileEntry):
    """First item (in list order) that is still pending."""
    for item in entry.checklist:
        if item.status == ItemStatus.PENDING:
            return item
    return None


def first_open(entry: FileEntry):
    """First item (in list order) that is in progress or pending."""
    for item in entry.checklist:
        if item.is_open:
            return item
    return None


def validation_index(checklist: list) -> int:
    """Index of the validation sentinel, or -1."""
    for index, item in enumerate(checklist):
        if item.type == ItemType.VALIDATION:
            return index
    return -1


def insert_before_validation(checklist: list, new_items: Iterable) -> list:
    """
    Return a new checklist with ``new_items`` placed immediately before the
    validation item, or appended when there is none.
    """
    new_items = list(new_items)
    index = validation_index(checklist)
    if index < 0:
        return list(checklist) + new_items
    return list(checklist[:index]) + new_items + list(checklist[index:])


def topic_items(expansions: Iterable[ChecklistExpansionItem], min_relevance_score: float) -> list:
    """Convert expansion candidates at or above the threshold into topic items."""
    items = []
    for expansion in expansions:
        if expansion.relevance_score < min_relevance_score:
            continue
        items.append(TopicApplicationItem(
            id=generate_item_id(f"topic-{expansion.topic_id.replace('/', '-')}"),
            description=f"Apply topic: {expansion.description or expansion.topic_id}",
            topic_id=expansion.topic_id,
            topic_relevance_score=expansion.relevance_score,
        ))
    return items


def is_file_complete(entry: FileEntry) -> bool:
    """A file is complete when every checklist item is terminal."""
    return all(item.is_terminal for item in entry.checklist)


def has_remaining_items(session: WorkflowSession) -> bool:
    """True when any file still has a pending or in-progress item."""
    return any(item.is_open for entry in session.file_inventory for item in entry.checklist)


def next_pending_file_index(session: WorkflowSession, after: int) -> int:
    """
    Index of the next file to work on, or -1.

    Pending files after ``after`` come first. Failing that, an earlier file
    with open items (one reopened by a checklist expansion) is returned.
    """
    for index in range(after + 1, len(session.file_inventory)):
        if session.file_inventory[index].status == FileStatus.PENDING:
            return index
    for index, entry in enumerate(session.file_inventory):
        if index == after or entry.status not in (FileStatus.PENDING, FileStatus.IN_PROGRESS):
            continue
        if first_open(entry) is not None:
            return index
    return -1


def is_session_complete(session: WorkflowSession) -> bool:
    """Every file completed or skipped and no checklist item left open."""
    if has_remaining_items(session):
        return False
    return all(
        entry.status in (FileStatus.COMPLETED, FileStatus.SKIPPED)
        for entry in session.file_inventory
    )
