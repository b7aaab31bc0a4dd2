"""
Labbook CLI - command-line access to the sync engine.

Usage:
    labbook sync pull [--json]
    labbook sync push [--json]
    labbook sync status [--json]
    labbook mappings list TYPE [--json]
    labbook reminders [--json]
    labbook health [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from labbook.config import get_settings
from labbook.errors import LabbookError, NotAuthenticatedError, RemoteNotConfiguredError, SyncFailedError
from labbook.logging_config import setup_labbook_logging
from labbook.storage.remote import HttpDocumentStore
from labbook.types import EntityType, SyncResult, to_iso
from labbook.workspace import Workspace

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


NO_BACKEND_HINT = "set LABBOOK_BACKEND_URL and LABBOOK_AUTH_TOKEN, or add them to credentials.json"


async def _backend_health(ws: Workspace) -> dict:
    if ws.remote is None:
        return {"reachable": False, "status": "No backend configured", "latency_ms": None}
    if isinstance(ws.remote, HttpDocumentStore):
        return await ws.remote.health_check()
    return {"reachable": True, "status": "In-memory store", "latency_ms": 0}


def _print_result(direction: str, result: SyncResult) -> None:
    if direction == "pull":
        print(f"✓ Pulled {result.pulled} records")
    else:
        print(f"✓ Pushed {result.pushed} records")
        if result.deleted:
            print(f"  Deleted {result.deleted} remote documents")
    if result.skipped:
        print(f"  Skipped {result.skipped} (not yet syncable)")
    if result.conflicts:
        print(f"  Resolved {result.conflict_count} conflicts (last writer wins)")


async def cmd_sync(args, ws: Workspace) -> int:
    engine = ws.engine

    if args.sync_action == "status":
        status = await engine.status()
        status["backend"] = await _backend_health(ws)
        status["backend_url"] = getattr(ws.remote, "backend_url", None)
        if args.json:
            _print_json(status)
            return 0

        print("Sync Status")
        print("=" * 50)
        print()
        print(f"👤 User: {status['user_id'] or '(not signed in)'}")
        conn_icon = "🟢" if status["backend"]["reachable"] else "🔴"
        print(f"{conn_icon} Backend: {status['backend']['status']}")
        if status["backend_url"]:
            print(f"   URL: {status['backend_url']}")
        print(f"🕐 Last sync: {status['last_sync_time'] or 'Never'}")
        print()
        print(f"{'Type':<18}{'Local':>8}{'Mapped':>8}")
        for entity_type in EntityType:
            local = status["local"][entity_type.value]
            mapped = status["mapped"][entity_type.value]
            print(f"{entity_type.value:<18}{local:>8}{mapped:>8}")
        return 0

    direction = args.sync_action
    try:
        if direction == "pull":
            result = await engine.sync_from_cloud()
        else:
            result = await engine.sync_to_cloud()
    except NotAuthenticatedError as e:
        if args.json:
            _print_json({"success": False, "error": str(e)})
        else:
            print(f"✗ {e} (set LABBOOK_USER_ID or add user_id to credentials.json)")
        return 1
    except RemoteNotConfiguredError as e:
        if args.json:
            _print_json({"success": False, "error": str(e)})
        else:
            print(f"✗ {e} ({NO_BACKEND_HINT})")
        return 1
    except SyncFailedError as e:
        if args.json:
            _print_json({**e.result.to_dict(), "error": str(e)})
        else:
            print(f"✗ {e}")
            for error in e.result.errors[:10]:
                print(f"  - {error}")
        return 1

    if args.json:
        _print_json(result.to_dict())
    else:
        _print_result(direction, result)
    return 0


async def cmd_mappings(args, ws: Workspace) -> int:
    user_id = ws.session.require_user()
    mappings = await ws.mappings.all_for_type(EntityType(args.type), user_id)
    if args.json:
        _print_json(
            [
                {
                    "local_id": m.local_id,
                    "remote_id": m.remote_id,
                    "created_at": to_iso(m.created_at),
                    "updated_at": to_iso(m.updated_at),
                }
                for m in mappings
            ]
        )
        return 0
    if not mappings:
        print(f"No {args.type} mappings for {user_id}")
        return 0
    print(f"{args.type} mappings for {user_id}:")
    for m in mappings:
        print(f"  {m.local_id:>6} ↔ {m.remote_id}")
    return 0


async def cmd_reminders(args, ws: Workspace) -> int:
    reminders = await ws.engine.get_all_active_reminders()
    if args.json:
        _print_json(
            [
                {
                    "id": r.id,
                    "title": r.title,
                    "entity_type": r.entity_type.value,
                    "entity_id": r.entity_id,
                    "frequency": r.frequency.value,
                    "time": r.reminder_time.strftime("%H:%M"),
                    "days_of_week": [d.value for d in r.days_of_week],
                    "end_date": r.end_date.isoformat() if r.end_date else None,
                }
                for r in reminders
            ]
        )
        return 0
    if not reminders:
        print("No active reminders")
        return 0
    for r in reminders:
        print(f"⏰ {r.reminder_time.strftime('%H:%M')} {r.title} [{r.frequency.value}]")
        print(f"   on {r.entity_type.value.lower()} {r.entity_id}")
    return 0


async def cmd_health(args, ws: Workspace) -> int:
    health = await _backend_health(ws)
    if args.json:
        _print_json(health)
    elif health["reachable"]:
        print(f"✓ {health['status']} ({health['latency_ms']} ms)")
    elif ws.remote is None:
        print(f"✗ {health['status']} ({NO_BACKEND_HINT})")
    else:
        print(f"✗ {health['status']}")
    return 0 if health["reachable"] else 1


COMMANDS = {
    "sync": cmd_sync,
    "mappings": cmd_mappings,
    "reminders": cmd_reminders,
    "health": cmd_health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labbook",
        description="Offline-first research notebook sync",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # sync (local-to-cloud synchronization)
    p_sync = subparsers.add_parser("sync", help="Sync with the remote document store")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    sync_pull = sync_sub.add_parser("pull", help="Import remote records into the local store")
    sync_pull.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_push = sync_sub.add_parser("push", help="Export local records to the remote store")
    sync_push.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_status = sync_sub.add_parser("status", help="Show local/mapped counts, last sync, connection")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # mappings
    p_mappings = subparsers.add_parser("mappings", help="Inspect local ↔ remote id mappings")
    mappings_sub = p_mappings.add_subparsers(dest="mappings_action", required=True)
    mappings_list = mappings_sub.add_parser("list", help="List mappings of one entity type")
    mappings_list.add_argument("type", choices=[t.value for t in EntityType], help="Entity type")
    mappings_list.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # reminders
    p_reminders = subparsers.add_parser("reminders", help="List active reminder settings")
    p_reminders.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # health
    p_health = subparsers.add_parser("health", help="Check backend reachability")
    p_health.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    return parser


async def _run(args, ws: Workspace) -> int:
    try:
        return await COMMANDS[args.command](args, ws)
    finally:
        await ws.aclose()


def main(argv: Optional[List[str]] = None, workspace: Optional[Workspace] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if workspace is None:
            settings = get_settings()
            setup_labbook_logging(settings.user_id, settings.log_level)
            workspace = Workspace.build(settings)
    except (ValueError, OSError, LabbookError) as e:
        logger.error(f"Failed to initialize labbook: {e}")
        sys.exit(1)

    try:
        code = asyncio.run(_run(args, workspace))
    except NotAuthenticatedError as e:
        print(f"✗ {e}")
        code = 1
    except LabbookError as e:
        logger.error(f"Command failed: {e}")
        code = 1
    if code:
        sys.exit(code)
    return code


if __name__ == "__main__":
    main()
