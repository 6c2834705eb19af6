"""
File discovery.

Enumerates candidate files under a base path using ordered include globs and
exclude globs, caps the inventory, classifies each file by name and orders the
result by caller-supplied priority patterns.
"""

import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Optional

from .checklist import create_initial_checklist
from .schema import FileEntry, WorkflowDefinition

logger = logging.getLogger(__name__)

# (filename marker, object type); checked in order, first hit wins
OBJECT_TYPE_MARKERS = [
    (".codeunit.", "Codeunit"),
    (".pageextension.", "PageExtension"),
    (".tableextension.", "TableExtension"),
    (".page.", "Page"),
    (".table.", "Table"),
    (".report.", "Report"),
    (".query.", "Query"),
    (".xmlport.", "XMLport"),
    (".enum.", "Enum"),
    (".interface.", "Interface"),
    (".controladdin.", "ControlAddIn"),
    (".permissionset.", "PermissionSet"),
    (".profile.", "Profile"),
]


def detect_object_type(path: str, markers: Optional[list[tuple[str, str]]] = None) -> Optional[str]:
    """Classify a file by filename markers such as '.codeunit.'."""
    filename = Path(path).name.lower()
    for marker, object_type in markers or OBJECT_TYPE_MARKERS:
        if marker in filename:
            return object_type
    return None


def matches_glob(rel_path: str, pattern: str) -> bool:
    """Match a posix relative path against a glob; a leading '**/' also matches zero directories."""
    if fnmatch.fnmatchcase(rel_path, pattern):
        return True
    if pattern.startswith("**/"):
        return matches_glob(rel_path, pattern[3:])
    return False


def priority_of(path: str, priority_patterns: list[str]) -> Optional[int]:
    """Index of the first priority pattern contained in the path (case-insensitive)."""
    lowered = path.lower()
    for index, pattern in enumerate(priority_patterns):
        if pattern.lower() in lowered:
            return index
    return None


def prioritize(entries: list[FileEntry], priority_patterns: Optional[list[str]], base: Path) -> list[FileEntry]:
    """
    Stable-sort entries by their first matched priority pattern.

    Unmatched files go after all matched files; ties keep discovery order.
    """
    if not priority_patterns:
        return entries
    for entry in entries:
        entry.priority = priority_of(_relative(entry.path, base), priority_patterns)
    unmatched = len(priority_patterns)
    return sorted(entries, key=lambda e: unmatched if e.priority is None else e.priority)


def _relative(path: str, base: Path) -> str:
    try:
        return Path(path).relative_to(base).as_posix()
    except ValueError:
        return Path(path).as_posix()


def iter_matches(base: Path, pattern: str, exclude_patterns: Iterable[str]):
    """Yield files under ``base`` matching ``pattern`` in sorted order, minus exclusions."""
    excludes = list(exclude_patterns)
    for path in sorted(base.glob(pattern)):
        if not path.is_file():
            continue
        rel = path.relative_to(base).as_posix()
        if any(matches_glob(rel, ex) for ex in excludes):
            continue
        yield path


def discover_files(
    base_path: Path,
    definition: WorkflowDefinition,
    include_patterns: Optional[list[str]] = None,
    exclude_patterns: Optional[list[str]] = None,
    max_files: Optional[int] = None,
    priority_patterns: Optional[list[str]] = None,
) -> list[FileEntry]:
    """
    Build the file inventory for a session.

    Args:
        base_path: Directory to search
        definition: Workflow definition (default patterns and checklist template)
        include_patterns: Overrides definition.file_patterns when given
        exclude_patterns: Overrides definition.file_exclusions when given
        max_files: Stop adding files once this many are collected
        priority_patterns: Substrings that move matching files to the front

    Returns:
        De-duplicated FileEntry list in priority order
    """
    base = Path(base_path).resolve()
    includes = include_patterns or definition.file_patterns
    excludes = exclude_patterns if exclude_patterns is not None else definition.file_exclusions

    if not base.is_dir():
        logger.warning(f"Discovery base path is not a directory: {base}")
        return []

    entries: list[FileEntry] = []
    seen: set[str] = set()

    for pattern in includes:
        if max_files and len(entries) >= max_files:
            break
        for path in iter_matches(base, pattern, excludes):
            key = str(path)
            if key in seen:
                continue
            if max_files and len(entries) >= max_files:
                break
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning(f"Could not stat {path}: {e}")
                size = None
            seen.add(key)
            entries.append(FileEntry(
                path=key,
                size=size,
                object_type=detect_object_type(key),
                checklist=create_initial_checklist(definition, key),
            ))

    logger.debug(f"Discovered {len(entries)} file(s) under {base}")
    return prioritize(entries, priority_patterns, base)
