"""
Batch operations over pattern instances.

Every mutating operation is two-phase:

1. Dry run: select the matching pattern_instance items, return a preview and
   a confirmation token bound to session + operation + filter.
2. Execute: present the token; the exact items from the preview are changed.

Tokens are HMAC-SHA256 signatures over the binding plus a random nonce. Only
the most recent dry run for a binding is redeemable, each token works once,
and tokens expire after a TTL. Anything else is a rejection result, never a
state change.
"""

import fcntl
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from .actions import next_action
from .checklist import is_file_complete
from .progress import advance_pointer, finish_if_complete
from .scanner import UNCLASSIFIED
from .schema import (
    BatchExecution,
    BatchFilter,
    BatchGrouping,
    BatchOperation,
    BatchPreview,
    BatchSample,
    FileEntry,
    FileStatus,
    ItemStatus,
    PatternInstanceItem,
    WorkflowSession,
)

logger = logging.getLogger(__name__)

BATCH_SKIP_REASON = "batch skip"


def filter_key(batch_filter: BatchFilter) -> str:
    """Canonical form of a filter, used to bind tokens."""
    return json.dumps(batch_filter.model_dump(mode="json"), sort_keys=True)


@dataclass
class IssuedToken:
    """A token handed out by a dry run and not yet redeemed."""
    session_id: str
    operation: str
    filter_key: str
    item_ids: list[str]
    nonce: str
    expires_at: float
    signature: str = ""

    def payload(self) -> str:
        return (
            f"{self.session_id}:"
            f"{self.operation}:"
            f"{self.filter_key}:"
            f"{self.nonce}:"
            f"{self.expires_at}"
        )

    @property
    def token(self) -> str:
        return f"{self.nonce}.{self.signature}"


def _load_or_create_key(path: Path) -> bytes:
    """Read the signing key, creating it (mode 0600) on first use."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return path.read_bytes()
        key = secrets.token_bytes(32)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        return key
    except OSError as e:
        logger.warning(f"Batch signing key unavailable at {path}; tokens only work in this process: {e}")
        return secrets.token_bytes(32)


class ConfirmationTokens:
    """
    Issues and redeems batch confirmation tokens.

    The replay cache holds at most ``max_tokens`` outstanding tokens, one per
    binding; issuing a new token for a binding supersedes the previous one.
    Until ``bind()`` is called the signing key is random and tokens live in
    memory only. Once bound, the key and the outstanding tokens are kept in
    files shared by every process working on the same state directory.
    """

    def __init__(
        self,
        signing_key: Optional[bytes] = None,
        ttl_seconds: int = 600,
        max_tokens: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.signing_key = signing_key or secrets.token_bytes(32)
        self.ttl_seconds = ttl_seconds
        self.max_tokens = max_tokens
        self.store_file: Optional[Path] = None
        self._clock = clock
        self._outstanding: dict[tuple[str, str, str], IssuedToken] = {}

    def bind(self, key_file: Path, store_file: Path) -> None:
        """Load (or create) the signing key and share outstanding tokens through store_file."""
        self.signing_key = _load_or_create_key(key_file)
        self.store_file = store_file
        self._outstanding = {}

    @contextmanager
    def _synced(self) -> Iterator[None]:
        """Reload outstanding tokens before and save them after a change, under an exclusive lock."""
        if self.store_file is None:
            yield
            return
        try:
            self.store_file.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.store_file.with_suffix(".lock"), "a")
        except OSError as e:
            logger.warning(f"Cannot lock batch token store {self.store_file}: {e}")
            yield
            return
        with lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                self._outstanding = self._read()
                yield
                self._write()
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> dict[tuple[str, str, str], IssuedToken]:
        if not self.store_file.exists():
            return {}
        try:
            with open(self.store_file, "r") as f:
                records = json.load(f)
            tokens = {}
            for record in records:
                issued = IssuedToken(**record)
                tokens[(issued.session_id, issued.operation, issued.filter_key)] = issued
            return tokens
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable batch token store {self.store_file}: {e}")
            return {}

    def _write(self) -> None:
        temp_file = self.store_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump([asdict(issued) for issued in self._outstanding.values()], f, indent=2)
            temp_file.replace(self.store_file)
        except OSError as e:
            logger.warning(f"Failed to save batch token store {self.store_file}: {e}")

    def _sign(self, issued: IssuedToken) -> str:
        return hmac.new(
            self.signing_key,
            issued.payload().encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _cleanup_expired(self) -> None:
        now = self._clock()
        expired = [key for key, issued in self._outstanding.items() if issued.expires_at <= now]
        for key in expired:
            del self._outstanding[key]

    def __len__(self) -> int:
        with self._synced():
            return len(self._outstanding)

    def issue(self, session_id: str, operation: str, key: str, item_ids: list[str]) -> str:
        """Mint a token for a binding, replacing any earlier one."""
        with self._synced():
            self._cleanup_expired()
            binding = (session_id, operation, key)
            self._outstanding.pop(binding, None)
            while len(self._outstanding) >= self.max_tokens:
                oldest = next(iter(self._outstanding))
                del self._outstanding[oldest]

            issued = IssuedToken(
                session_id=session_id,
                operation=operation,
                filter_key=key,
                item_ids=list(item_ids),
                nonce=secrets.token_hex(16),
                expires_at=self._clock() + self.ttl_seconds,
            )
            issued.signature = self._sign(issued)
            self._outstanding[binding] = issued
            return issued.token

    def redeem(
        self, token: Optional[str], session_id: str, operation: str, key: str
    ) -> tuple[Optional[list[str]], Optional[str]]:
        """
        Validate and consume a token.

        Returns:
            (item_ids, None) on success, (None, reason) on rejection
        """
        if not token:
            return None, "A confirmation_token from a dry run is required to execute."

        with self._synced():
            binding = (session_id, operation, key)
            issued = self._outstanding.get(binding)
            if issued is None:
                return None, (
                    "No outstanding confirmation for this operation and filter. "
                    "The token may have been used already; run a new dry run."
                )
            if not hmac.compare_digest(token, issued.token) or not hmac.compare_digest(
                issued.signature, self._sign(issued)
            ):
                return None, "Confirmation token does not match the most recent dry run for this operation and filter."
            if self._clock() >= issued.expires_at:
                del self._outstanding[binding]
                return None, "Confirmation token has expired; run a new dry run."

            del self._outstanding[binding]
            return issued.item_ids, None


def status_matches(batch_filter: BatchFilter, item: PatternInstanceItem) -> bool:
    """An explicit status filter must match exactly; otherwise the item must still be open."""
    if batch_filter.status is not None:
        return item.status == batch_filter.status
    return not item.is_terminal


def select_instances(
    session: WorkflowSession, batch_filter: BatchFilter
) -> Iterator[tuple[FileEntry, PatternInstanceItem]]:
    """
    Yield (file, item) for every pattern instance matching the filter.

    Without an explicit status filter only non-terminal items match.
    """
    file_patterns = [p.lower() for p in batch_filter.file_patterns or []]
    for entry in session.file_inventory:
        if file_patterns and not any(p in entry.path.lower() for p in file_patterns):
            continue
        for item in entry.checklist:
            if not isinstance(item, PatternInstanceItem):
                continue
            match = item.pattern_match
            if batch_filter.instance_types and (match.instance_type or UNCLASSIFIED) not in batch_filter.instance_types:
                continue
            if batch_filter.auto_fixable_only and match.requires_manual_review:
                continue
            if not status_matches(batch_filter, item):
                continue
            yield entry, item


def _after_text(operation: BatchOperation, item: PatternInstanceItem) -> str:
    if operation == BatchOperation.APPLY_FIXES:
        return item.pattern_match.suggested_replacement or "(no template; manual conversion needed)"
    if operation == BatchOperation.SKIP_INSTANCES:
        return "(skipped)"
    return "(flagged for manual review)"


_PROMPT_VERBS = {
    BatchOperation.APPLY_FIXES: "Apply fixes to",
    BatchOperation.SKIP_INSTANCES: "Skip",
    BatchOperation.FLAG_FOR_REVIEW: "Flag for manual review",
}


class BatchOperator:
    """Previews and executes batch operations on a session."""

    def __init__(self, tokens: Optional[ConfirmationTokens] = None, sample_size: int = 5):
        self.tokens = tokens or ConfirmationTokens()
        self.sample_size = sample_size

    def group_by_type(self, session: WorkflowSession, batch_filter: Optional[BatchFilter] = None) -> BatchGrouping:
        """Group matching instances by instance type. Read-only."""
        grouped: dict[str, list[dict]] = {}
        total = 0
        for entry, item in select_instances(session, batch_filter or BatchFilter()):
            match = item.pattern_match
            grouped.setdefault(match.instance_type or UNCLASSIFIED, []).append({
                "file": entry.path,
                "line": match.line_number,
                "item_id": item.id,
                "status": item.status.value,
                "match_text": match.match_text,
                "auto_fixable": not match.requires_manual_review,
            })
            total += 1
        return BatchGrouping(session_id=session.id, total_instances=total, grouped_instances=grouped)

    def preview(
        self, session: WorkflowSession, operation: BatchOperation, batch_filter: Optional[BatchFilter] = None
    ) -> BatchPreview:
        """Dry run: count and sample the matching instances and mint a token."""
        operation = BatchOperation(operation)
        batch_filter = batch_filter or BatchFilter()
        selected = list(select_instances(session, batch_filter))

        by_type: dict[str, int] = {}
        files = set()
        for entry, item in selected:
            instance_type = item.pattern_match.instance_type or UNCLASSIFIED
            by_type[instance_type] = by_type.get(instance_type, 0) + 1
            files.add(entry.path)

        samples = [
            BatchSample(
                file=entry.path,
                line=item.pattern_match.line_number,
                before=item.pattern_match.match_text,
                after=_after_text(operation, item),
            )
            for entry, item in selected[:self.sample_size]
        ]

        token = self.tokens.issue(
            session.id,
            operation.value,
            filter_key(batch_filter),
            [item.id for _, item in selected],
        )
        return BatchPreview(
            session_id=session.id,
            operation=operation,
            instances_affected=len(selected),
            files_affected=len(files),
            by_instance_type=by_type,
            sample_changes=samples,
            confirmation_token=token,
            confirmation_prompt=(
                f"{_PROMPT_VERBS[operation]} {len(selected)} instance(s) across {len(files)} file(s)? "
                f"Re-run with dry_run=false and this confirmation_token to proceed."
            ),
        )

    def execute(
        self,
        session: WorkflowSession,
        operation: BatchOperation,
        batch_filter: Optional[BatchFilter],
        confirmation_token: Optional[str],
        now: datetime,
    ) -> BatchExecution:
        """
        Apply a previewed operation in place.

        The session is only touched when the token is accepted; the caller
        persists it afterwards.
        """
        operation = BatchOperation(operation)
        batch_filter = batch_filter or BatchFilter()
        item_ids, reason = self.tokens.redeem(
            confirmation_token, session.id, operation.value, filter_key(batch_filter)
        )
        if item_ids is None:
            logger.warning(f"Rejected batch {operation.value} for {session.id}: {reason}")
            return BatchExecution(
                session_id=session.id,
                operation=operation,
                accepted=False,
                rejection_reason=reason,
            )

        wanted = set(item_ids)
        touched_files: list[FileEntry] = []
        modified = 0
        unchanged = 0
        for entry in session.file_inventory:
            hit = False
            for item in entry.checklist:
                if item.id not in wanted or not isinstance(item, PatternInstanceItem):
                    continue
                # Items reported on since the dry run keep their new state.
                if not status_matches(batch_filter, item):
                    unchanged += 1
                    continue
                self._apply(session, operation, item)
                modified += 1
                hit = True
            if hit:
                touched_files.append(entry)

        for entry in touched_files:
            if entry.status not in (FileStatus.COMPLETED, FileStatus.SKIPPED) and is_file_complete(entry):
                entry.status = FileStatus.COMPLETED
                if session.current_file() is entry:
                    advance_pointer(session)
        session.files_completed = session.count_completed_files()
        finish_if_complete(session, now)

        logger.info(
            f"Batch {operation.value} on {session.id}: {modified} instance(s) "
            f"in {len(touched_files)} file(s)"
        )
        if unchanged:
            logger.info(f"Batch {operation.value} on {session.id} left {unchanged} instance(s) changed since the dry run")
        return BatchExecution(
            session_id=session.id,
            operation=operation,
            instances_modified=modified,
            instances_unchanged=unchanged,
            files_modified=len(touched_files),
            next_action=next_action(session),
        )

    @staticmethod
    def _apply(session: WorkflowSession, operation: BatchOperation, item: PatternInstanceItem) -> None:
        match = item.pattern_match
        if operation == BatchOperation.APPLY_FIXES:
            if item.status != ItemStatus.COMPLETED:
                session.instances_completed = (session.instances_completed or 0) + 1
                session.instances_auto_fixed = (session.instances_auto_fixed or 0) + 1
            item.status = ItemStatus.COMPLETED
            item.result = {"applied": True, "replacement": match.suggested_replacement}
        elif operation == BatchOperation.SKIP_INSTANCES:
            item.status = ItemStatus.SKIPPED
            item.skip_reason = BATCH_SKIP_REASON
        elif operation == BatchOperation.FLAG_FOR_REVIEW:
            if not match.requires_manual_review:
                session.instances_manual_review = (session.instances_manual_review or 0) + 1
            match.requires_manual_review = True
            item.status = ItemStatus.PENDING
