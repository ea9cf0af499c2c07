"""
entity-audit CLI
~~~~~~~~~~~~~~~~

Command-line interface for inspecting entity history and rolling
entities back against a database URL.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Any

from entity_audit.exceptions import EntityAuditError


def _add_database_url(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--database-url",
        type=str,
        required=True,
        help="SQLAlchemy database URL (e.g. sqlite:///app.db)",
    )


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="entity-audit",
        description="entity-audit — entity change history and rollback",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    subparsers = parser.add_subparsers(dest="command")

    # version command
    subparsers.add_parser("version", help="Show version")

    # init-db command
    init_parser = subparsers.add_parser(
        "init-db", help="Create the audit history tables"
    )
    _add_database_url(init_parser)

    # history command
    history_parser = subparsers.add_parser(
        "history", help="List the recorded snapshots of one entity"
    )
    _add_database_url(history_parser)
    history_parser.add_argument("type_name", help="Registered entity type name")
    history_parser.add_argument("entity_id", help="Entity identifier")
    history_parser.add_argument(
        "--json",
        action="store_true",
        help="Print history as JSON",
    )

    # show command
    show_parser = subparsers.add_parser("show", help="Print one snapshot's payload")
    _add_database_url(show_parser)
    show_parser.add_argument("snapshot_id", help="Snapshot id")

    # rollback command
    rollback_parser = subparsers.add_parser(
        "rollback", help="Restore an entity to a recorded snapshot"
    )
    _add_database_url(rollback_parser)
    rollback_parser.add_argument(
        "--config",
        type=str,
        required=True,
        help="Path to entity_audit.yaml listing the entity models",
    )
    rollback_parser.add_argument("type_name", help="Registered entity type name")
    rollback_parser.add_argument("entity_id", help="Entity identifier")
    target_group = rollback_parser.add_mutually_exclusive_group()
    target_group.add_argument(
        "--to",
        type=str,
        default="previous",
        help="Snapshot id to restore (default: previous)",
    )
    target_group.add_argument(
        "--before",
        type=str,
        default=None,
        help="Restore the newest snapshot taken before this ISO-8601 instant",
    )
    rollback_parser.add_argument(
        "--restore-deletion-state",
        action="store_true",
        help="Also restore the soft-delete marker from the snapshot",
    )

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from entity_audit import __version__

        print(f"entity-audit {__version__}")
        return

    commands = {
        "init-db": _run_init_db,
        "history": _run_history,
        "show": _run_show,
        "rollback": _run_rollback,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        handler(args)
    except EntityAuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _make_session_factory(database_url: str) -> Any:
    """Create a sessionmaker bound to a new engine."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    return sessionmaker(bind=create_engine(database_url))


def _make_auditor(database_url: str, config_path: str | None) -> Any:
    """Create an EntityAuditor from config or defaults."""
    from entity_audit.core.auditor import EntityAuditor

    session_factory = _make_session_factory(database_url)
    if config_path:
        return EntityAuditor.from_config(config_path, session_factory)
    return EntityAuditor.default(session_factory)


def _run_init_db(args: argparse.Namespace) -> None:
    """Run the init-db command."""
    from sqlalchemy import create_engine

    from entity_audit.core.auditor import EntityAuditor

    engine = create_engine(args.database_url)
    EntityAuditor.create_tables(engine)
    print(f"Audit tables ready at {engine.url.render_as_string(hide_password=True)}")


def _run_history(args: argparse.Namespace) -> None:
    """Run the history command."""
    auditor = _make_auditor(args.database_url, None)
    entries = auditor.history(args.type_name, args.entity_id)

    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return

    if not entries:
        print(f"No history for {args.type_name}:{args.entity_id}")
        return
    for entry in entries:
        print(
            f"{entry.created_at.isoformat()}  {entry.change.value:<8}  "
            f"{entry.id}  (audit log {entry.audit_log_id})"
        )


def _run_show(args: argparse.Namespace) -> None:
    """Run the show command."""
    auditor = _make_auditor(args.database_url, None)
    snapshot = auditor.get_snapshot(args.snapshot_id)
    print(
        json.dumps(
            {
                "id": str(snapshot.id),
                "entity_type_name": snapshot.entity_type_name,
                "entity_id": snapshot.entity_id,
                "change": snapshot.change,
                "created_at": snapshot.created_at.isoformat(),
                "audit_log_id": str(snapshot.audit_log_id),
                "rollback_of_id": (
                    str(snapshot.rollback_of_id) if snapshot.rollback_of_id else None
                ),
                "payload": snapshot.payload,
            },
            indent=2,
            sort_keys=True,
        )
    )


def _run_rollback(args: argparse.Namespace) -> None:
    """Run the rollback command."""
    auditor = _make_auditor(args.database_url, args.config)

    target: Any = args.to
    if args.before:
        try:
            target = datetime.fromisoformat(args.before)
        except ValueError as exc:
            print(f"Error: Invalid ISO-8601 value for --before: {exc}", file=sys.stderr)
            sys.exit(1)

    result = auditor.rollback(
        args.type_name,
        args.entity_id,
        target,
        restore_deletion_state=args.restore_deletion_state,
    )
    result.unwrap()
    print(
        f"Rolled back {result.entity_type_name}:{result.entity_id} "
        f"to snapshot {result.snapshot_id}"
    )
    if result.audit_log_id is not None:
        print(f"Recorded in audit log {result.audit_log_id}")


if __name__ == "__main__":
    main()
