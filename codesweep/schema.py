"""
Workflow Schema Definitions using Pydantic

This module defines the structure of workflow definition files (bundled and
custom YAML) and of the persisted session state that drives an agent through
file-by-file processing.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowStatus(str, Enum):
    """Status of a workflow session."""
    INITIALIZING = "initializing"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class FileStatus(str, Enum):
    """Status of a file in the session inventory."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ItemStatus(str, Enum):
    """Status of a checklist item."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ItemType(str, Enum):
    """Kinds of checklist items."""
    ANALYSIS = "analysis"
    TOPIC_APPLICATION = "topic_application"
    PATTERN_INSTANCE = "pattern_instance"
    VALIDATION = "validation"
    CUSTOM = "custom"


class PhaseStatus(str, Enum):
    """Status of a workflow phase."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PhaseMode(str, Enum):
    """How a phase is executed."""
    AUTONOMOUS = "autonomous"
    GUIDED = "guided"
    AGENT_DRIVEN = "agent_driven"


class Severity(str, Enum):
    """Severity of a finding."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Highest first, used for ranking findings in reports
SEVERITY_ORDER = [Severity.CRITICAL, Severity.ERROR, Severity.WARNING, Severity.INFO]


class ChangeImpact(str, Enum):
    """Impact of a proposed change."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NextActionType(str, Enum):
    """Kinds of work the engine can hand to the agent."""
    ANALYZE_FILE = "analyze_file"
    APPLY_TOPIC = "apply_topic"
    CONVERT_INSTANCE = "convert_instance"
    COMPLETE_WORKFLOW = "complete_workflow"


class BatchOperation(str, Enum):
    """Bulk operations over pattern instances."""
    APPLY_FIXES = "apply_fixes"
    SKIP_INSTANCES = "skip_instances"
    FLAG_FOR_REVIEW = "flag_for_review"
    GROUP_BY_TYPE = "group_by_type"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.SKIPPED, ItemStatus.FAILED})
OPEN_ITEM_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.IN_PROGRESS})


def _utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# Regex flag handling
# ============================================================================

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "u": 0,  # str patterns are unicode already
    "g": 0,  # iteration is always global
    "y": 0,
}


def to_re_flags(flags: Optional[str]) -> int:
    """Translate flag letters such as 'gi' into ``re`` module flags."""
    value = 0
    for letter in flags or "":
        if letter not in _FLAG_MAP:
            raise ValueError(f"Unsupported regex flag: '{letter}'")
        value |= _FLAG_MAP[letter]
    return value


# ============================================================================
# Workflow Definition Schema
# ============================================================================

class ClassifierRule(BaseModel):
    """Sub-pattern that assigns an instance type to a match."""
    name: str
    pattern: str
    suggested_action: str = ""
    auto_fixable: bool = False


class InstanceClassifier(BaseModel):
    """Ordered classifier rules; the first matching rule wins."""
    rules: list[ClassifierRule] = Field(default_factory=list)


class Transformation(BaseModel):
    """Replacement template for one instance type."""
    instance_type: str
    template: str
    requires_review: bool = False


class PatternDefinition(BaseModel):
    """A regex-driven pattern the scanner looks for."""
    id: str
    name: str
    description: str = ""
    regex: str
    regex_flags: str = "g"
    exclude_regex: Optional[str] = None
    context_lines: int = Field(default=2, ge=0)
    instance_classifier: Optional[InstanceClassifier] = None
    transformations: list[Transformation] = Field(default_factory=list)
    specialist: Optional[str] = None
    topic_id: Optional[str] = None

    @model_validator(mode="after")
    def regexes_must_compile(self):
        flags = to_re_flags(self.regex_flags)
        try:
            re.compile(self.regex, flags)
            if self.exclude_regex:
                re.compile(self.exclude_regex)
            if self.instance_classifier:
                for rule in self.instance_classifier.rules:
                    re.compile(rule.pattern, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"Invalid regex in pattern '{self.id}': {e}")
        return self

    def get_transformation(self, instance_type: Optional[str]) -> Optional[Transformation]:
        """Get the transformation for an instance type, if any."""
        for transformation in self.transformations:
            if transformation.instance_type == instance_type:
                return transformation
        return None


class PhaseDef(BaseModel):
    """Definition of a workflow phase."""
    id: str
    name: str
    description: str = ""
    required: bool = True
    mode: PhaseMode = PhaseMode.GUIDED
    entry_conditions: list[str] = Field(default_factory=list)
    available_actions: list[str] = Field(default_factory=list)


class ChecklistTemplate(BaseModel):
    """Per-file checklist item template."""
    id: str
    type: ItemType
    description: str
    required: bool = True
    conditions: Optional[dict[str, str]] = None


class TopicDiscovery(BaseModel):
    """How checklist expansion topics are discovered."""
    enabled: bool = True
    tool: str = "analyze_al_code"
    auto_expand_checklist: bool = True
    min_relevance_score: float = Field(default=0.6, ge=0.0, le=1.0)


class PatternDiscovery(BaseModel):
    """Pattern scanning configuration for migration-style workflows."""
    enabled: bool = True
    patterns: list[PatternDefinition] = Field(default_factory=list)
    create_instance_items: bool = True
    specialist: Optional[str] = None


class CompletionRules(BaseModel):
    """Criteria for finishing a workflow."""
    require_all_files: bool = True
    require_all_checklist_items: bool = True
    allow_skip_with_reason: bool = True


class WorkflowDefinition(BaseModel):
    """Complete workflow definition loaded from YAML."""
    type: str
    name: str
    description: str = ""
    specialist: Optional[str] = None
    file_patterns: list[str] = Field(min_length=1)
    file_exclusions: list[str] = Field(default_factory=list)
    phases: list[PhaseDef] = Field(min_length=1)
    per_file_checklist: list[ChecklistTemplate] = Field(default_factory=list)
    topic_discovery: TopicDiscovery = Field(default_factory=TopicDiscovery)
    pattern_discovery: Optional[PatternDiscovery] = None
    completion_rules: CompletionRules = Field(default_factory=CompletionRules)

    @field_validator("type")
    @classmethod
    def type_must_be_slug(cls, v):
        if not re.fullmatch(r"[a-z0-9][a-z0-9_-]*", v):
            raise ValueError("workflow type must be lowercase letters, digits, '-' or '_'")
        return v

    @model_validator(mode="after")
    def validation_item_must_be_last(self):
        types = [item.type for item in self.per_file_checklist]
        if ItemType.VALIDATION in types:
            if types.count(ItemType.VALIDATION) > 1:
                raise ValueError("per_file_checklist may contain at most one validation item")
            if types[-1] != ItemType.VALIDATION:
                raise ValueError("validation item must be the last per_file_checklist entry")
        return self

    def get_phase(self, phase_id: str) -> Optional[PhaseDef]:
        """Get a phase by ID."""
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    @property
    def has_pattern_scan(self) -> bool:
        return bool(self.pattern_discovery and self.pattern_discovery.enabled)


# ============================================================================
# Runtime State Schema
# ============================================================================

class PatternMatch(BaseModel):
    """One regex match inside a file, classified by the scanner."""
    pattern_id: str
    line_number: int
    match_text: str
    match_context: str = ""
    instance_type: Optional[str] = None
    suggested_replacement: Optional[str] = None
    requires_manual_review: bool = True


class _ChecklistItemBase(BaseModel):
    id: str
    description: str
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    result: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ITEM_STATUSES


class AnalysisItem(_ChecklistItemBase):
    type: Literal["analysis"] = "analysis"


class TopicApplicationItem(_ChecklistItemBase):
    type: Literal["topic_application"] = "topic_application"
    topic_id: Optional[str] = None
    topic_relevance_score: Optional[float] = None


class PatternInstanceItem(_ChecklistItemBase):
    type: Literal["pattern_instance"] = "pattern_instance"
    pattern_match: PatternMatch


class ValidationItem(_ChecklistItemBase):
    type: Literal["validation"] = "validation"


class CustomItem(_ChecklistItemBase):
    type: Literal["custom"] = "custom"


ChecklistItem = Annotated[
    Union[AnalysisItem, TopicApplicationItem, PatternInstanceItem, ValidationItem, CustomItem],
    Field(discriminator="type"),
]


class Finding(BaseModel):
    """An issue or observation recorded while processing a file."""
    file: Optional[str] = None
    line: Optional[int] = None
    severity: Severity
    category: str = "general"
    description: str
    suggestion: Optional[str] = None
    related_topic: Optional[str] = None


class ProposedChange(BaseModel):
    """A code change proposed by the agent. Never applied by the engine."""
    file: Optional[str] = None
    line_start: int
    line_end: int
    original_code: str
    proposed_code: str
    rationale: str = ""
    impact: ChangeImpact = ChangeImpact.MEDIUM
    auto_applicable: bool = False


class FileEntry(BaseModel):
    """A discovered file and its checklist."""
    path: str
    status: FileStatus = FileStatus.PENDING
    size: Optional[int] = None
    priority: Optional[int] = None
    object_type: Optional[str] = None
    checklist: list[ChecklistItem] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)


class WorkflowPhase(BaseModel):
    """Runtime state of a workflow phase."""
    id: str
    name: str
    description: str = ""
    status: PhaseStatus = PhaseStatus.PENDING
    mode: PhaseMode = PhaseMode.GUIDED
    required: bool = True
    entry_conditions: list[str] = Field(default_factory=list)
    available_actions: list[str] = Field(default_factory=list)


class WorkflowOptions(BaseModel):
    """Caller-supplied options for a workflow run."""
    model_config = ConfigDict(extra="allow")

    bc_version: Optional[str] = None
    include_patterns: Optional[list[str]] = None
    exclude_patterns: Optional[list[str]] = None
    max_files: Optional[int] = Field(default=None, ge=1)
    priority_patterns: Optional[list[str]] = None
    source_version: Optional[str] = None
    target_version: Optional[str] = None


class InitialProcessing(BaseModel):
    """Controls for the autonomous scan run at workflow start."""
    run_autonomous_phases: bool = True
    timeout_ms: Optional[int] = Field(default=None, ge=0)


class VersionUpgrade(BaseModel):
    """Version range tracked by bc-version-upgrade sessions."""
    source_version: str
    target_version: str


class WorkflowSession(BaseModel):
    """Complete persisted state of a workflow session."""
    id: str
    workflow_type: str
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    scope: str = "workspace"
    base_path: Optional[str] = None
    file_glob_pattern: str = ""
    file_inventory: list[FileEntry] = Field(default_factory=list)

    phases: list[WorkflowPhase] = Field(default_factory=list)
    current_phase: str = ""
    current_file_index: int = Field(default=0, ge=0)
    files_completed: int = 0
    files_total: int = 0

    # Pattern workflows only
    instances_total: Optional[int] = None
    instances_completed: Optional[int] = None
    instances_auto_fixed: Optional[int] = None
    instances_manual_review: Optional[int] = None

    version_upgrade: Optional[VersionUpgrade] = None

    findings: list[Finding] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)

    options: WorkflowOptions = Field(default_factory=WorkflowOptions)

    blocked_reason: Optional[str] = None

    def get_file(self, path: str) -> Optional[FileEntry]:
        """Get a file entry by path."""
        for entry in self.file_inventory:
            if entry.path == path:
                return entry
        return None

    def current_file(self) -> Optional[FileEntry]:
        """Get the file at the current pointer, None when out of range."""
        if 0 <= self.current_file_index < len(self.file_inventory):
            return self.file_inventory[self.current_file_index]
        return None

    def get_phase(self, phase_id: str) -> Optional[WorkflowPhase]:
        """Get a phase by ID."""
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def count_completed_files(self) -> int:
        return sum(1 for f in self.file_inventory if f.status == FileStatus.COMPLETED)

    @property
    def percent_complete(self) -> int:
        if self.files_total <= 0:
            return 0
        return round(self.files_completed / self.files_total * 100)


# ============================================================================
# Engine input/output payloads
# ============================================================================

class ToolCall(BaseModel):
    """Suggested tool invocation accompanying a next action."""
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class NextAction(BaseModel):
    """The single unit of work the agent should perform next. Never persisted."""
    type: NextActionType
    action: Optional[str] = None
    file: Optional[str] = None
    topic_id: Optional[str] = None
    checklist_item_id: Optional[str] = None
    instance: Optional[PatternMatch] = None
    instruction: str
    tool_call: Optional[ToolCall] = None


class CompletedAction(BaseModel):
    """Outcome the agent reports for the action it just performed."""
    action: str
    file: Optional[str] = None
    checklist_item_id: Optional[str] = None
    status: Literal["completed", "skipped", "failed"]
    skip_reason: Optional[str] = None
    error: Optional[str] = None


class ChecklistExpansionItem(BaseModel):
    """A topic suggested for a file by the topic-relevance supplier."""
    topic_id: str
    relevance_score: float
    description: str = ""


class TypeBreakdown(BaseModel):
    count: int = 0
    auto_fixable: bool = False
    needs: Optional[str] = None


class BatchOption(BaseModel):
    action: str
    description: str
    instances: int
    files: int


class AnalysisSummary(BaseModel):
    """Result of the autonomous pattern scan."""
    files_scanned: int = 0
    files_unreadable: int = 0
    files_with_matches: int = 0
    total_instances: int = 0
    by_type: dict[str, TypeBreakdown] = Field(default_factory=dict)
    batch_options: list[BatchOption] = Field(default_factory=list)
    timed_out: bool = False


class BatchFilter(BaseModel):
    """Selects pattern instances for a batch operation."""
    instance_types: Optional[list[str]] = None
    file_patterns: Optional[list[str]] = None
    auto_fixable_only: bool = False
    status: Optional[ItemStatus] = None


class BatchSample(BaseModel):
    file: str
    line: int
    before: str
    after: str


class BatchPreview(BaseModel):
    """Dry-run output of a batch operation."""
    session_id: str
    operation: BatchOperation
    dry_run: Literal[True] = True
    instances_affected: int
    files_affected: int
    by_instance_type: dict[str, int] = Field(default_factory=dict)
    sample_changes: list[BatchSample] = Field(default_factory=list)
    confirmation_token: str
    confirmation_prompt: str


class BatchExecution(BaseModel):
    """Output of an executed (or rejected) batch operation."""
    session_id: str
    operation: BatchOperation
    dry_run: Literal[False] = False
    accepted: bool = True
    rejection_reason: Optional[str] = None
    instances_modified: int = 0
    instances_unchanged: int = 0
    files_modified: int = 0
    next_action: Optional[NextAction] = None


class BatchGrouping(BaseModel):
    """Output of the group_by_type operation."""
    session_id: str
    operation: BatchOperation = BatchOperation.GROUP_BY_TYPE
    total_instances: int
    grouped_instances: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


# ============================================================================
# Event Log Schema
# ============================================================================

class EventType(str, Enum):
    """Types of events recorded in a session's event log."""
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    ITEM_COMPLETED = "item_completed"
    ITEM_SKIPPED = "item_skipped"
    ITEM_FAILED = "item_failed"
    CHECKLIST_EXPANDED = "checklist_expanded"
    FILE_COMPLETED = "file_completed"
    FILE_SKIPPED = "file_skipped"
    BATCH_EXECUTED = "batch_executed"
    REPORT_GENERATED = "report_generated"


class WorkflowEvent(BaseModel):
    """A single event in the session log."""
    timestamp: datetime = Field(default_factory=_utc_now)
    event_type: EventType
    session_id: str
    file: Optional[str] = None
    item_id: Optional[str] = None
    message: str
    details: dict = Field(default_factory=dict)
