"""Path resolution for engine state files.

Directory structure:
    <workspace>/.codesweep/
    ├── config.yaml
    ├── batch.key
    ├── batch_tokens.json
    ├── sessions/
    │   ├── <session-id>.json
    │   └── <session-id>.log.jsonl
    └── reports/
        └── <session-id>-report.md
"""

from pathlib import Path
from typing import Optional

from .config import DEFAULT_STATE_DIR


class WorkspacePaths:
    """Centralized path resolution for one workspace root"""

    def __init__(self, base_dir: Path, state_dir: Optional[str] = None):
        """Initialize path resolver.

        Args:
            base_dir: Workspace root directory
            state_dir: Name of the state directory (default: .codesweep)
        """
        self.base_dir = Path(base_dir).resolve()
        self.state_dir = self.base_dir / (state_dir or DEFAULT_STATE_DIR)

    def sessions_dir(self) -> Path:
        """Get sessions directory.

        Returns:
            <state>/sessions/
        """
        return self.state_dir / "sessions"

    def reports_dir(self) -> Path:
        """Get reports directory.

        Returns:
            <state>/reports/
        """
        return self.state_dir / "reports"

    def session_file(self, session_id: str) -> Path:
        """Get the JSON document for a session."""
        return self.sessions_dir() / f"{session_id}.json"

    def log_file(self, session_id: str) -> Path:
        """Get the event log for a session."""
        return self.sessions_dir() / f"{session_id}.log.jsonl"

    def report_file(self, session_id: str, extension: str = "md") -> Path:
        """Get the report path for a session."""
        return self.reports_dir() / f"{session_id}-report.{extension}"

    def batch_key_file(self) -> Path:
        """Get the key that signs batch confirmation tokens."""
        return self.state_dir / "batch.key"

    def batch_tokens_file(self) -> Path:
        """Get the store of outstanding batch confirmation tokens."""
        return self.state_dir / "batch_tokens.json"

    def resolve_scope(self, path: Optional[str]) -> Path:
        """Resolve a scope path; relative paths are taken from the workspace root."""
        if not path:
            return self.base_dir
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.base_dir / candidate
        return candidate.resolve()

    def ensure_dirs(self) -> None:
        """Create the sessions and reports directories."""
        self.sessions_dir().mkdir(parents=True, exist_ok=True)
        self.reports_dir().mkdir(parents=True, exist_ok=True)
