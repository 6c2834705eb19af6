#!/usr/bin/env python3
"""
codesweep CLI

Command-line access to the workflow session engine. Every command prints
JSON (reports print as rendered text) so the output can be fed back to an
agent or a script.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml

from . import __version__
from .engine import WorkflowEngine
from .errors import CodesweepError
from .registry import WorkflowRegistry
from .schema import BatchExecution, BatchOperation, ItemStatus


def _print_json(data) -> None:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    print(json.dumps(data, indent=2))


def _fail(message) -> None:
    print(f"Error: {message}")
    sys.exit(1)


def get_engine(args) -> WorkflowEngine:
    """Build an engine bound to --dir, with any custom definitions loaded."""
    registry = WorkflowRegistry()
    if getattr(args, "workflows_dir", None):
        registry.load_directory(Path(args.workflows_dir), allow_override=args.allow_override)
    return WorkflowEngine(registry, workspace_root=Path(args.dir or "."))


def _load_payload(path):
    """Read a YAML/JSON payload file ('-' for stdin)."""
    if not path:
        return {}
    if path == "-":
        data = yaml.safe_load(sys.stdin)
    else:
        with open(path) as f:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Payload must be a mapping: {path}")
    return data


def cmd_types(args):
    """List available workflow types."""
    registry = get_engine(args).registry
    custom = set(registry.custom_types())
    types = []
    for workflow_type in registry.available_types():
        definition = registry.get_definition(workflow_type)
        types.append({
            "type": workflow_type,
            "name": definition.name,
            "description": definition.description,
            "custom": workflow_type in custom,
            "pattern_scan": definition.has_pattern_scan,
        })
    _print_json(types)


def cmd_start(args):
    """Start a new workflow session."""
    engine = get_engine(args)
    options = {
        "bc_version": args.bc_version,
        "include_patterns": args.include or None,
        "exclude_patterns": args.exclude or None,
        "max_files": args.max_files,
        "priority_patterns": args.priority or None,
        "source_version": args.source_version,
        "target_version": args.target_version,
    }
    initial_processing = {
        "run_autonomous_phases": not args.no_scan,
        "timeout_ms": args.timeout_ms,
    }
    scope = "directory" if args.path else "workspace"
    result = engine.start_workflow(
        args.workflow_type,
        scope=scope,
        path=args.path,
        options={k: v for k, v in options.items() if v is not None},
        initial_processing=initial_processing,
    )
    output = result.model_dump(mode="json", exclude={"session"})
    output["session_id"] = result.session.id
    output["files_total"] = result.session.files_total
    _print_json(output)


def cmd_next(args):
    """Show the next action without changing the session."""
    _print_json(get_engine(args).get_next_action(args.session_id))


def cmd_progress(args):
    """Report the outcome of the last action."""
    payload = _load_payload(args.payload)
    completed_action = {
        "action": args.action,
        "file": args.file,
        "checklist_item_id": args.item,
        "status": args.status,
        "skip_reason": args.skip_reason,
        "error": args.error,
    }
    action = get_engine(args).report_progress(
        args.session_id,
        completed_action,
        findings=payload.get("findings"),
        proposed_changes=payload.get("proposed_changes"),
        expand_checklist=payload.get("expand_checklist"),
    )
    _print_json(action)


def cmd_batch(args):
    """Preview a batch operation, or apply a previewed one with --execute --token."""
    engine = get_engine(args)
    batch_filter = {
        "instance_types": args.type or None,
        "file_patterns": args.file_pattern or None,
        "auto_fixable_only": args.auto_fixable_only,
        "status": args.status,
    }
    if args.execute and args.operation != BatchOperation.GROUP_BY_TYPE.value:
        if not args.token:
            _fail("--execute needs --token: run the same command without --execute first "
                  "and pass its confirmation_token")
        result = engine.run_batch(
            args.session_id,
            args.operation,
            batch_filter,
            dry_run=False,
            confirmation_token=args.token,
        )
    else:
        result = engine.run_batch(args.session_id, args.operation, batch_filter, dry_run=True)
    _print_json(result)
    if isinstance(result, BatchExecution) and not result.accepted:
        sys.exit(1)


def cmd_status(args):
    """Show session progress."""
    _print_json(get_engine(args).get_status(args.session_id, include_all_files=args.all_files))


def cmd_report(args):
    """Generate (and save) a session report."""
    print(get_engine(args).generate_report(args.session_id, args.format))


def cmd_complete(args):
    """Complete a session and print its summary."""
    _print_json(get_engine(args).complete_workflow(
        args.session_id,
        generate_report=not args.no_report,
        report_format=args.format,
    ))


def cmd_skip_file(args):
    """Skip a file with a reason."""
    _print_json(get_engine(args).skip_file(args.session_id, args.path, args.reason))


def cmd_list(args):
    """List sessions."""
    _print_json(get_engine(args).list_sessions(active_only=not args.all))


def cmd_cancel(args):
    """Cancel one session, or every active session with --all."""
    engine = get_engine(args)
    if args.all:
        session_ids = [s["session_id"] for s in engine.list_sessions(active_only=True)]
    elif args.session_id:
        session_ids = [args.session_id]
    else:
        _fail("Provide a session id or --all")
    cancelled = [sid for sid in session_ids if engine.cancel_workflow(sid)]
    _print_json({"cancelled": cancelled})


def cmd_cleanup(args):
    """Delete sessions past the retention window."""
    engine = get_engine(args)
    removed = engine.cleanup_expired_sessions()
    _print_json({"removed": removed, "retention_days": engine.config.retention_days})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codesweep",
        description="Drive an agent through systematic file-by-file code workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  codesweep types
  codesweep start code-review --priority Codeunit
  codesweep next wf-code-review-2025-01-01-abc123
  codesweep progress wf-code-review-2025-01-01-abc123 --action analyze_file --status completed
  codesweep batch wf-error-to-errorinfo-migration-2025-01-01-abc123 apply_fixes --type literal
  codesweep batch wf-error-to-errorinfo-migration-2025-01-01-abc123 apply_fixes --type literal --execute --token <token>
  codesweep complete wf-code-review-2025-01-01-abc123
        """
    )
    parser.add_argument('--dir', '-d', default='.', help='Workspace root (default: current)')
    parser.add_argument('--workflows-dir', help='Directory of custom workflow definition YAML files')
    parser.add_argument('--allow-override', action='store_true',
                        help='Let custom definitions replace built-in types')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    types_parser = subparsers.add_parser('types', help='List workflow types')
    types_parser.set_defaults(func=cmd_types)

    start_parser = subparsers.add_parser('start', help='Start a workflow session')
    start_parser.add_argument('workflow_type', help='Workflow type (see "codesweep types")')
    start_parser.add_argument('--path', help='Limit discovery to this directory')
    start_parser.add_argument('--include', action='append', default=[], help='Include glob (repeatable)')
    start_parser.add_argument('--exclude', action='append', default=[], help='Exclude glob (repeatable)')
    start_parser.add_argument('--priority', action='append', default=[],
                              help='Priority substring, earlier wins (repeatable)')
    start_parser.add_argument('--max-files', type=int, help='Cap the number of files')
    start_parser.add_argument('--bc-version', help='Target platform version (e.g. BC26)')
    start_parser.add_argument('--source-version', help='Upgrade source version')
    start_parser.add_argument('--target-version', help='Upgrade target version')
    start_parser.add_argument('--no-scan', action='store_true', help='Skip the autonomous pattern scan')
    start_parser.add_argument('--timeout-ms', type=int, help='Pattern scan time limit in milliseconds')
    start_parser.set_defaults(func=cmd_start)

    next_parser = subparsers.add_parser('next', help='Show the next action')
    next_parser.add_argument('session_id')
    next_parser.set_defaults(func=cmd_next)

    progress_parser = subparsers.add_parser('progress', help='Report progress on the last action')
    progress_parser.add_argument('session_id')
    progress_parser.add_argument('--action', required=True, help='Action that was performed')
    progress_parser.add_argument('--status', required=True, choices=['completed', 'skipped', 'failed'])
    progress_parser.add_argument('--file', help='File the action applied to (default: current file)')
    progress_parser.add_argument('--item', help='Checklist item id')
    progress_parser.add_argument('--skip-reason', help='Reason when skipped')
    progress_parser.add_argument('--error', help='Error message when failed')
    progress_parser.add_argument('--payload',
                                 help='YAML/JSON file with findings, proposed_changes, expand_checklist (- for stdin)')
    progress_parser.set_defaults(func=cmd_progress)

    batch_parser = subparsers.add_parser('batch', help='Batch operation over pattern instances')
    batch_parser.add_argument('session_id')
    batch_parser.add_argument('operation', choices=[op.value for op in BatchOperation])
    batch_parser.add_argument('--type', action='append', default=[], help='Instance type (repeatable)')
    batch_parser.add_argument('--file-pattern', action='append', default=[],
                              help='Path substring (repeatable)')
    batch_parser.add_argument('--auto-fixable-only', action='store_true')
    batch_parser.add_argument('--status', choices=[s.value for s in ItemStatus])
    batch_parser.add_argument('--execute', action='store_true', help='Apply a previewed operation')
    batch_parser.add_argument('--token', help='confirmation_token printed by the preview')
    batch_parser.set_defaults(func=cmd_batch)

    status_parser = subparsers.add_parser('status', help='Show session status')
    status_parser.add_argument('session_id')
    status_parser.add_argument('--all-files', action='store_true', help='Include per-file status')
    status_parser.set_defaults(func=cmd_status)

    report_parser = subparsers.add_parser('report', help='Generate a report')
    report_parser.add_argument('session_id')
    report_parser.add_argument('--format', default='markdown', choices=['markdown', 'json'])
    report_parser.set_defaults(func=cmd_report)

    complete_parser = subparsers.add_parser('complete', help='Complete a session')
    complete_parser.add_argument('session_id')
    complete_parser.add_argument('--no-report', action='store_true')
    complete_parser.add_argument('--format', default='markdown', choices=['markdown', 'json'])
    complete_parser.set_defaults(func=cmd_complete)

    skip_parser = subparsers.add_parser('skip-file', help='Skip a file with a reason')
    skip_parser.add_argument('session_id')
    skip_parser.add_argument('path')
    skip_parser.add_argument('--reason', required=True)
    skip_parser.set_defaults(func=cmd_skip_file)

    list_parser = subparsers.add_parser('list', help='List sessions')
    list_parser.add_argument('--all', action='store_true', help='Include completed and failed sessions')
    list_parser.set_defaults(func=cmd_list)

    cancel_parser = subparsers.add_parser('cancel', help='Cancel a session')
    cancel_parser.add_argument('session_id', nargs='?')
    cancel_parser.add_argument('--all', action='store_true', help='Cancel every active session')
    cancel_parser.set_defaults(func=cmd_cancel)

    cleanup_parser = subparsers.add_parser('cleanup', help='Delete expired sessions')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except (CodesweepError, ValueError, OSError) as e:
        _fail(e)


if __name__ == '__main__':
    main()
