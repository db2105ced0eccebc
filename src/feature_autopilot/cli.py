from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import LOG_FILE, MANIFEST_DIR_NAME, STATE_DIR_NAME
from .errors import AutopilotError, CircularDependencyError
from .logging_utils import configure_logging
from .manifest import Manifest
from .orchestrator import classify_no_work, exit_code
from .report import render_feature_tree, render_plan, render_status_table


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _load(args: argparse.Namespace) -> Manifest:
    return Manifest.load(_resolve_project_dir(args.project_dir) / MANIFEST_DIR_NAME)


def _status(args: argparse.Namespace) -> int:
    manifest = _load(args)
    if args.table:
        sys.stdout.write(render_status_table(manifest))
        return 0
    if args.tree:
        sys.stdout.write(render_feature_tree(manifest))
        return 0
    payload = {
        'title': manifest.title,
        'source': manifest.source,
        'summary': manifest.summary().to_dict(),
        'features': [feature.to_dict() for feature in manifest.all_features()],
        'usage': manifest.total_usage().to_dict(),
    }
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0


def _validate(args: argparse.Namespace) -> int:
    manifest = _load(args)
    warnings, cycle_error = manifest.validate_dependencies()
    payload = {
        'valid': cycle_error is None,
        'warnings': [warning.message for warning in warnings],
        'cycle': cycle_error.cycle if cycle_error else None,
    }
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0 if cycle_error is None else 1


def _order(args: argparse.Namespace) -> int:
    manifest = _load(args)
    if args.plan:
        try:
            sys.stdout.write(render_plan(manifest))
        except CircularDependencyError as exc:
            sys.stderr.write(f"{exc}\n")
            return 1
        return 0
    try:
        order = manifest.topological_order()
    except CircularDependencyError as exc:
        sys.stdout.write(json.dumps({'order': None, 'cycle': exc.cycle}, indent=2) + '\n')
        return 1
    sys.stdout.write(json.dumps({'order': order}, indent=2) + '\n')
    return 0


def _next(args: argparse.Namespace) -> int:
    manifest = _load(args)
    feature = manifest.next_runnable_feature()
    if feature is None:
        result = classify_no_work(manifest)
        sys.stdout.write(json.dumps({'feature': None, 'no_work': result.to_dict()}, indent=2) + '\n')
        return exit_code(result)
    sys.stdout.write(json.dumps({'feature': feature.to_dict()}, indent=2) + '\n')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feature Autopilot - inspect the feature manifest')
    parser.add_argument('--project-dir', default=None, help='Project directory containing PRD/ (default: current working directory)')
    parser.add_argument('--log-level', default='WARNING', help='Log level for stderr output')
    parser.add_argument('--log-file', action='store_true', help='Also write DEBUG logs to .autopilot/autopilot.log')
    subparsers = parser.add_subparsers(dest='command', required=True)

    status = subparsers.add_parser('status', help='Show feature statuses and summary counts')
    status.add_argument('--table', action='store_true', help='Render a text table instead of JSON')
    status.add_argument('--tree', action='store_true', help='Render the parent/child feature tree')
    status.set_defaults(func=_status)

    validate = subparsers.add_parser('validate', help='Check dependencies for dangling references and cycles')
    validate.set_defaults(func=_validate)

    order = subparsers.add_parser('order', help='Print the dependency order')
    order.add_argument('--plan', action='store_true', help='Group the order into batches')
    order.set_defaults(func=_order)

    nxt = subparsers.add_parser('next', help='Show the next runnable feature')
    nxt.set_defaults(func=_next)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    log_file = _resolve_project_dir(args.project_dir) / STATE_DIR_NAME / LOG_FILE if args.log_file else None
    configure_logging(args.log_level, log_file)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except AutopilotError as exc:
        logger.error("{}", exc)
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
