"""
Command-line interface for the Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from . import ado_utils
from .migrator import AzureDevOpsMigrator
from .models import DEFAULT_TRACKING_FIELD
from .orchestrator import MAX_HIERARCHY_DEPTH
from .utils import setup_logging


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Synchronize Azure DevOps work items, attachments, comments, states and "
        "Area/Iteration trees from one project to another"
    )

    # Positional arguments
    _ = parser.add_argument("source", help="Source project (https://dev.azure.com/org/project or org/project)")
    _ = parser.add_argument("target", help="Target project (https://dev.azure.com/org/project or org/project)")

    _ = parser.add_argument(
        "--tracking-field",
        default=DEFAULT_TRACKING_FIELD,
        help=f"Target field holding the source work item id (default: {DEFAULT_TRACKING_FIELD})",
    )

    _ = parser.add_argument(
        "--state-map",
        "-s",
        action="append",
        help='State translation pattern (format: "Type|SourceState:TargetState", "*" as wildcard). '
        "Can be specified multiple times.",
    )

    _ = parser.add_argument("--wiql", help="Custom WIQL query selecting the source work items")

    _ = parser.add_argument(
        "--max-depth",
        type=int,
        default=MAX_HIERARCHY_DEPTH,
        help=f"Maximum parent chain depth to follow (default: {MAX_HIERARCHY_DEPTH})",
    )

    _ = parser.add_argument(
        "--no-inline-upload",
        action="store_true",
        help="Do not upload attachments that are only referenced inline in descriptions and comments",
    )

    _ = parser.add_argument(
        "--source-pass-token", help="Path for the source PAT in pass utility (default: azure-devops/source/pat)"
    )

    _ = parser.add_argument(
        "--target-pass-token", help="Path for the target PAT in pass utility (default: azure-devops/target/pat)"
    )

    _ = parser.add_argument(
        "--skip-nodes", action="store_true", help="Skip Area and Iteration tree synchronization"
    )
    _ = parser.add_argument("--skip-states", action="store_true", help="Skip workflow state creation and mapping")
    _ = parser.add_argument("--skip-work-items", action="store_true", help="Skip work item synchronization")

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args()


def _print_validation_report(report: dict[str, Any]) -> None:
    """Print the migration report to stdout."""
    print("=" * 60)
    print("MIGRATION REPORT")
    print("=" * 60)
    print(f"Source: {report.get('source', '')}")
    print(f"Target: {report.get('target', '')}")
    print(f"Status: {'PASSED' if report.get('success') else 'FAILED'}")

    errors = report.get("errors") or []
    if errors:
        print(f"\nErrors ({len(errors)}):")
        for error in errors:
            print(f"  - {error}")

    warnings = report.get("warnings") or []
    if warnings:
        print(f"\nWarnings ({len(warnings)}):")
        for warning in warnings:
            print(f"  - {warning}")

    statistics = report.get("statistics") or {}
    if statistics:
        print("\nStatistics:")
        for key, value in statistics.items():
            print(f"  {key}: {value}")


def main() -> None:
    """Main entry point."""
    args = parse_arguments()

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        source_token = ado_utils.get_token("source", args.source_pass_token)
        target_token = ado_utils.get_token("target", args.target_pass_token)

        migrator = AzureDevOpsMigrator(
            args.source,
            args.target,
            source_token=source_token,
            target_token=target_token,
            tracking_field=args.tracking_field,
            state_translations=args.state_map,
            upload_inline_attachments=not args.no_inline_upload,
            wiql=args.wiql,
            max_depth=args.max_depth,
        )

        report = migrator.migrate(
            include_nodes=not args.skip_nodes,
            include_states=not args.skip_states,
            include_work_items=not args.skip_work_items,
        )

        _print_validation_report(report)

        if report["success"]:
            sys.exit(0)
        else:
            sys.exit(1)

    except Exception:
        logger = logging.getLogger(__name__)
        logger.exception("Migration failed")
        sys.exit(1)
