"""
codesweep - Workflow Session Engine

Drives an AI agent through systematic, stateful, file-by-file processing of
a codebase (code review, audits, migrations) using a persisted per-file
checklist and a single "next action" at a time.
"""

__version__ = "0.1.0"

from .schema import (
    WorkflowDefinition,
    WorkflowSession,
    FileEntry,
    ChecklistItem,
    PatternMatch,
    Finding,
    ProposedChange,
    NextAction,
    CompletedAction,
    ChecklistExpansionItem,
    BatchFilter,
    BatchOperation,
    WorkflowStatus,
    FileStatus,
    ItemStatus,
    NextActionType,
    EventType,
)
from .errors import (
    CodesweepError,
    SessionNotFound,
    WorkspaceNotBound,
    UnknownWorkflowType,
    DefinitionConflict,
    FileNotInSession,
    ChecklistItemNotFound,
)
from .config import EngineConfig, load_config
from .registry import WorkflowRegistry
from .session_store import SessionStore
from .engine import WorkflowEngine, StartResult

__all__ = [
    # Engine
    "WorkflowEngine",
    "StartResult",
    "WorkflowRegistry",
    "SessionStore",
    "EngineConfig",
    "load_config",
    # Schema
    "WorkflowDefinition",
    "WorkflowSession",
    "FileEntry",
    "ChecklistItem",
    "PatternMatch",
    "Finding",
    "ProposedChange",
    "NextAction",
    "CompletedAction",
    "ChecklistExpansionItem",
    "BatchFilter",
    "BatchOperation",
    "WorkflowStatus",
    "FileStatus",
    "ItemStatus",
    "NextActionType",
    "EventType",
    # Errors
    "CodesweepError",
    "SessionNotFound",
    "WorkspaceNotBound",
    "UnknownWorkflowType",
    "DefinitionConflict",
    "FileNotInSession",
    "ChecklistItemNotFound",
]
