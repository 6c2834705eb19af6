"""Shared fixtures for codesweep tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


CODEUNIT_SOURCE = """codeunit 50100 "Customer Check"
{
    procedure Check(CustomerNo: Code[20])
    begin
        if CustomerNo = '' then
            Error('Customer number is required');
        Error(CustomerNotFoundErr);
    end;
}
"""

PAGE_SOURCE = """page 50100 "Customer Card"
{
    layout
    {
    }
}
"""


class FixedClock:
    """Deterministic clock for engine and store tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def write_file(root: Path, relative: str, content: str = "") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def registry():
    from codesweep.registry import WorkflowRegistry
    return WorkflowRegistry()


@pytest.fixture
def workspace(tmp_path):
    """A small AL project: one codeunit with two Error() calls and one page."""
    write_file(tmp_path, "src/CustomerCheck.codeunit.al", CODEUNIT_SOURCE)
    write_file(tmp_path, "src/CustomerCard.page.al", PAGE_SOURCE)
    return tmp_path


@pytest.fixture
def engine(workspace, registry, clock):
    from codesweep.config import EngineConfig
    from codesweep.engine import WorkflowEngine
    return WorkflowEngine(registry, config=EngineConfig(), clock=clock, workspace_root=workspace)
