"""
Pattern Scanner - autonomous scan phase

Finds regex pattern instances in the session's files, classifies each one,
appends one pattern_instance checklist item per match, and summarizes the
result for the agent. Errors on one file or one pattern are logged and
skipped; the scan as a whole keeps going until it runs out of files or out
of time.
"""

import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional

from .checklist import generate_item_id, insert_before_validation
from .schema import (
    AnalysisSummary,
    BatchOption,
    FileEntry,
    PatternDefinition,
    PatternInstanceItem,
    PatternMatch,
    TypeBreakdown,
    WorkflowSession,
    to_re_flags,
)

logger = logging.getLogger(__name__)

UNCLASSIFIED = "other"


def classify(match_text: str, pattern: PatternDefinition) -> tuple[Optional[str], bool]:
    """Return (instance_type, auto_fixable) from the first matching classifier rule."""
    if not pattern.instance_classifier:
        return None, False
    for rule in pattern.instance_classifier.rules:
        if re.search(rule.pattern, match_text, re.IGNORECASE):
            return rule.name, rule.auto_fixable
    return None, False


def find_pattern_matches(content: str, pattern: PatternDefinition) -> list[PatternMatch]:
    """
    Find all non-overlapping matches of one pattern in file content.

    Raises:
        re.error: If the pattern (or its exclusion) does not compile
    """
    regex = re.compile(pattern.regex, to_re_flags(pattern.regex_flags))
    exclude = re.compile(pattern.exclude_regex) if pattern.exclude_regex else None
    lines = content.split("\n")
    context_lines = pattern.context_lines

    matches = []
    for match in regex.finditer(content):
        text = match.group(0)
        if exclude and exclude.search(text):
            continue

        line_number = content.count("\n", 0, match.start()) + 1
        start = max(0, line_number - 1 - context_lines)
        end = min(len(lines), line_number + context_lines)

        instance_type, auto_fixable = classify(text, pattern)
        transformation = pattern.get_transformation(instance_type)

        matches.append(PatternMatch(
            pattern_id=pattern.id,
            line_number=line_number,
            match_text=text,
            match_context="\n".join(lines[start:end]),
            instance_type=instance_type,
            # Verbatim template; placeholders are not filled in
            suggested_replacement=transformation.template if transformation else None,
            requires_manual_review=not auto_fixable,
        ))
    return matches


def _describe(match: PatternMatch, max_length: int) -> str:
    text = " ".join(match.match_text.split())
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return f"Line {match.line_number}: {text}"


class PatternScanner:
    """Runs pattern definitions over a session's file inventory."""

    def __init__(
        self,
        patterns: list[PatternDefinition],
        description_length: int = 50,
        clock: Callable[[], float] = time.monotonic,
        create_instance_items: bool = True,
    ):
        self.patterns = patterns
        self.create_instance_items = create_instance_items
        self.description_length = description_length
        self._clock = clock

    def scan_file(self, entry: FileEntry, deadline: Optional[float] = None) -> Optional[list[PatternInstanceItem]]:
        """
        Scan one file and return the new instance items.

        Returns None when the deadline passed before the file finished.

        Raises:
            OSError: If the file cannot be read
            UnicodeDecodeError: If the file is not UTF-8 text
        """
        content = Path(entry.path).read_text(encoding="utf-8")

        items = []
        for pattern in self.patterns:
            if deadline is not None and self._clock() >= deadline:
                return None
            try:
                matches = find_pattern_matches(content, pattern)
            except re.error as e:
                logger.error(f"Error matching pattern {pattern.id} in {entry.path}: {e}")
                continue
            for match in matches:
                items.append(PatternInstanceItem(
                    id=generate_item_id(f"instance-{pattern.id}"),
                    description=_describe(match, self.description_length),
                    pattern_match=match,
                ))
        return items

    def scan(self, session: WorkflowSession, timeout_ms: Optional[int] = None) -> AnalysisSummary:
        """
        Scan every file in the session and record instance items.

        Instance items are inserted before the file's validation item unless
        ``create_instance_items`` is off, in which case matches are only
        counted and the session's instance counters are left untouched. When
        ``timeout_ms`` elapses, the summary of what was scanned so far is
        returned with ``timed_out`` set.
        """
        deadline = None
        if timeout_ms is not None:
            deadline = self._clock() + timeout_ms / 1000.0

        by_type: dict[str, TypeBreakdown] = {}
        files_scanned = 0
        files_unreadable = 0
        files_with_matches = 0
        total = 0
        timed_out = False
        auto_files: set[str] = set()
        review_files: set[str] = set()

        for entry in session.file_inventory:
            if deadline is not None and self._clock() >= deadline:
                timed_out = True
                break
            try:
                items = self.scan_file(entry, deadline)
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Error scanning file {entry.path}: {e}")
                files_unreadable += 1
                continue
            if items is None:
                timed_out = True
                break
            files_scanned += 1
            if not items:
                continue

            files_with_matches += 1
            if self.create_instance_items:
                entry.checklist = insert_before_validation(entry.checklist, items)
            for item in items:
                match = item.pattern_match
                instance_type = match.instance_type or UNCLASSIFIED
                auto_fixable = not match.requires_manual_review
                if instance_type not in by_type:
                    by_type[instance_type] = TypeBreakdown(
                        auto_fixable=auto_fixable,
                        needs=None if auto_fixable else "review",
                    )
                by_type[instance_type].count += 1
                total += 1
                (auto_files if auto_fixable else review_files).add(entry.path)

        if timed_out:
            logger.warning(
                f"Pattern scan for {session.id} timed out after {files_scanned}/"
                f"{len(session.file_inventory)} file(s); returning partial summary"
            )

        auto_count = sum(b.count for b in by_type.values() if b.auto_fixable)
        review_count = sum(b.count for b in by_type.values() if not b.auto_fixable)

        if self.create_instance_items:
            session.instances_total = total
            session.instances_completed = 0
            session.instances_auto_fixed = 0
            session.instances_manual_review = review_count

        return AnalysisSummary(
            files_scanned=files_scanned,
            files_unreadable=files_unreadable,
            files_with_matches=files_with_matches,
            total_instances=total,
            by_type=by_type,
            batch_options=[
                BatchOption(
                    action="apply_all_auto",
                    description="Apply auto-fixes to simple patterns",
                    instances=auto_count,
                    files=len(auto_files),
                ),
                BatchOption(
                    action="review_complex",
                    description="Review patterns requiring judgment",
                    instances=review_count,
                    files=len(review_files),
                ),
                BatchOption(
                    action="flag_manual",
                    description="Flag complex patterns for manual conversion",
                    instances=review_count,
                    files=len(review_files),
                ),
            ],
            timed_out=timed_out,
        )

