"""
dnsmesh Command Line Interface.

Provides commands for working with dnsmesh:
- run: Start the controller daemon
- selector-hash: Compute the fingerprint agents query with
- spec-hash: Show fingerprints of policies in manifests
- validate: Validate policy manifests
- events: Query the event audit log
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from dnsmesh import __version__
from dnsmesh.audit.database import AuditDatabase
from dnsmesh.config import load_config
from dnsmesh.policy.fingerprint import fingerprint_policy, labels_from_pairs, selector_hash
from dnsmesh.policy.models import PolicyIdentity
from dnsmesh.policy.parser import PolicyParseError, load_manifests, validate_manifests


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="dnsmesh",
        description="DNS policy controller",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the controller daemon")
    run_parser.add_argument(
        "-m", "--manifests",
        metavar="PATH",
        help="Policy manifest file or directory",
    )
    run_parser.add_argument(
        "-p", "--port",
        type=int,
        help="API port",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    run_parser.set_defaults(func=cmd_run)

    # selector-hash command
    selector_parser = subparsers.add_parser(
        "selector-hash",
        help="Compute the selector hash for a set of labels",
    )
    selector_parser.add_argument(
        "labels",
        nargs="+",
        metavar="KEY=VALUE",
        help="Workload labels",
    )
    selector_parser.set_defaults(func=cmd_selector_hash)

    # spec-hash command
    spec_parser = subparsers.add_parser(
        "spec-hash",
        help="Show selector and spec hashes of policies in manifests",
    )
    spec_parser.add_argument(
        "path",
        nargs="?",
        help="Manifest file or directory (default: from config)",
    )
    spec_parser.set_defaults(func=cmd_spec_hash)

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Validate policy manifests")
    validate_parser.add_argument(
        "path",
        nargs="?",
        help="Manifest file or directory (default: from config)",
    )
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat warnings as errors",
    )
    validate_parser.set_defaults(func=cmd_validate)

    # events command
    events_parser = subparsers.add_parser("events", help="Query event log")
    events_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of events to show",
    )
    events_parser.add_argument(
        "-p", "--policy",
        metavar="NAMESPACE/NAME",
        help="Filter by policy",
    )
    events_parser.add_argument(
        "-r", "--reason",
        help="Filter by reason (e.g. DuplicateHash)",
    )
    events_parser.add_argument(
        "-t", "--type",
        choices=["Normal", "Warning"],
        help="Filter by event type",
    )
    events_parser.add_argument(
        "--since",
        help="Show events since (YYYY-MM-DD)",
    )
    events_parser.set_defaults(func=cmd_events)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    # Execute command
    return args.func(args)


def get_db(args: argparse.Namespace) -> AuditDatabase:
    """Get database instance from config."""
    config = load_config(args.config)
    db_path = Path(config.database.path)
    if not db_path.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return AuditDatabase(str(db_path))


def manifest_path(args: argparse.Namespace) -> Path | None:
    """Manifest path from the command line, falling back to config."""
    if getattr(args, "path", None):
        return Path(args.path)
    config = load_config(args.config)
    if config.manifests.path:
        return Path(config.manifests.path)
    return None


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                for key, value in item.items():
                    print(f"  {key}: {value}")
                print()
            else:
                print(f"  {item}")
    else:
        print(data)


def cmd_run(args: argparse.Namespace) -> int:
    """Run the daemon."""
    from dnsmesh.daemon import main as daemon_main

    daemon_args = []
    if args.config:
        daemon_args.extend(["-c", args.config])
    if args.manifests:
        daemon_args.extend(["-m", args.manifests])
    if args.port is not None:
        daemon_args.extend(["-p", str(args.port)])
    if args.verbose:
        daemon_args.append("-v")

    return daemon_main(daemon_args)


def cmd_selector_hash(args: argparse.Namespace) -> int:
    """Compute a selector hash from labels."""
    try:
        labels = labels_from_pairs(args.labels)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    fingerprint = selector_hash(labels)
    if getattr(args, "json", False):
        output({"labels": labels, "selectorHash": fingerprint}, args)
    else:
        print(fingerprint)
    return 0


def cmd_spec_hash(args: argparse.Namespace) -> int:
    """Show fingerprints of manifest policies."""
    path = manifest_path(args)
    if path is None:
        print("No manifest path given", file=sys.stderr)
        return 1

    try:
        policies = load_manifests(path)
    except (FileNotFoundError, PolicyParseError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rows = []
    for policy in policies:
        fingerprints = fingerprint_policy(policy.spec)
        rows.append({"policy": str(policy.identity), **fingerprints.to_dict()})

    if getattr(args, "json", False):
        output(rows, args)
    else:
        print(f"{'Policy':<32} {'Selector hash':<20} {'Spec hash':<20}")
        print("-" * 74)
        for row in rows:
            print(
                f"{row['policy'][:32]:<32} "
                f"{(row['selectorHash'] or '-')[:16]:<20} "
                f"{row['specHash'][:16]:<20}"
            )
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate policy manifests."""
    path = manifest_path(args)
    if path is None:
        print("No manifest path given", file=sys.stderr)
        return 1

    try:
        policies = load_manifests(path)
    except (FileNotFoundError, PolicyParseError) as e:
        print(f"Manifest validation failed: {e}")
        return 1

    messages = validate_manifests(policies)
    errors = [m for m in messages if not m.startswith("Warning:")]
    warnings = [m for m in messages if m.startswith("Warning:")]

    if getattr(args, "json", False):
        output({"valid": not errors, "policies": len(policies), "errors": errors, "warnings": warnings}, args)
    else:
        if errors:
            print(f"Manifests invalid: {len(errors)} errors")
            for e in errors:
                print(f"  - {e}")
        else:
            print(f"Manifests valid: {len(policies)} policies loaded")
        if warnings:
            print("\nWarnings:")
            for w in warnings:
                print(f"  - {w}")

    if errors or (args.strict and warnings):
        return 1
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    """Query event log."""
    filters: dict[str, Any] = {}
    if args.policy:
        identity = PolicyIdentity.parse(args.policy)
        filters["namespace"] = identity.namespace
        filters["name"] = identity.name
    if args.reason:
        filters["reason"] = args.reason
    if args.type:
        filters["event_type"] = args.type
    if args.since:
        try:
            filters["since"] = datetime.strptime(args.since, "%Y-%m-%d")
        except ValueError:
            print(f"Error: invalid --since date '{args.since}', expected YYYY-MM-DD", file=sys.stderr)
            return 1

    db = get_db(args)

    try:
        events = db.list_events(limit=args.limit, **filters)

        if getattr(args, "json", False):
            output([e.to_dict() for e in events], args)
        else:
            print(f"Event Log ({len(events)} events)")
            print("=" * 80)
            if not events:
                print("No events found.")
            else:
                print(f"{'Time':<20} {'Policy':<24} {'Type':<8} {'Reason':<24}")
                print("-" * 80)
                for event in events:
                    time_str = event.timestamp.strftime("%Y-%m-%d %H:%M:%S")
                    policy = f"{event.namespace}/{event.name}"
                    print(
                        f"{time_str:<20} "
                        f"{policy[:24]:<24} "
                        f"{event.event_type:<8} "
                        f"{event.reason[:24]:<24}"
                    )

        return 0

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
