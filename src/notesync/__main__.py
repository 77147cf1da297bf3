"""
Command line entry point: `python -m notesync <command>`.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .exceptions import NoteSyncException
from .main import NoteSyncApp, setup_logging
from .sync.models import Resolution, SyncOptions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notesync", description="Offline-first note sync")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("--log-level", default="WARNING", help="Console log level")
    parser.add_argument("--user", help="Override NOTESYNC_USER_ID")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show sync state, settings and provider")
    sub.add_parser("sync", help="Run one manual sync")
    sub.add_parser("push", help="Overwrite the remote snapshot with local data")
    sub.add_parser("pull", help="Merge the latest remote snapshot into local data")
    sub.add_parser("signin", help="Authorize the configured provider")
    sub.add_parser("signout", help="Revoke and forget stored tokens")
    queue = sub.add_parser("queue", help="Show or process the offline queue")
    queue.add_argument("--process", action="store_true", help="Run queued requests now")
    sub.add_parser("backups", help="List remote snapshots")
    restore = sub.add_parser("restore", help="Replace local data with a remote snapshot")
    restore.add_argument("snapshot_id")
    delete = sub.add_parser("delete", help="Delete a remote snapshot")
    delete.add_argument("snapshot_id")
    sub.add_parser("run", help="Run background sync until interrupted")
    return parser


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_command(app: NoteSyncApp, args: argparse.Namespace) -> Dict[str, Any]:
    engine = app.engine

    if args.command == "status":
        return {
            "provider": app.remote.provider_name,
            "authenticated": app.remote.is_authenticated,
            "user_id": engine.user_id,
            "device_id": engine.metadata.device_id if engine.metadata else None,
            "state": engine.get_state().to_dict(),
            "settings": app.settings.current.to_dict(),
            "network": app.network.to_dict(),
        }

    if args.command == "sync":
        result = await engine.manual_sync()
        return {"result": result.to_dict(), "state": engine.get_state().to_dict()}

    if args.command in ("push", "pull"):
        options = SyncOptions(silent=False, is_manual=True, resolution=Resolution(args.command))
        result = await engine.trigger_sync(options)
        return {"result": result.to_dict(), "state": engine.get_state().to_dict()}

    if args.command == "signin":
        await app.remote.sign_in()
        return {"provider": app.remote.provider_name, "user": await app.remote.get_current_user()}

    if args.command == "signout":
        await app.remote.sign_out()
        return {"provider": app.remote.provider_name, "authenticated": False}

    if args.command == "queue":
        processed = await engine.process_pending_queue() if args.process else 0
        return {"pending": engine.pending_queue_count(), "processed": processed}

    if args.command == "backups":
        snapshots = await engine.list_backups()
        return {"backups": [snapshot.to_dict() for snapshot in snapshots]}

    if args.command == "restore":
        result = await engine.restore_snapshot(args.snapshot_id)
        return {"result": result.to_dict(), "state": engine.get_state().to_dict()}

    if args.command == "delete":
        await engine.delete_backup(args.snapshot_id)
        return {"deleted": args.snapshot_id}

    raise ValueError(f"Unknown command: {args.command}")


async def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())

    app = NoteSyncApp()
    try:
        await app.initialize(env_file=args.env_file)
        if args.user:
            app.engine.set_user_id(args.user)

        if args.command == "run":
            await app.start()
            return 0

        _print(await _run_command(app, args))
        return 0
    except NoteSyncException as e:
        _print({"error": e.to_dict()})
        return 1
    finally:
        if app.running or app.connection is not None:
            await app.stop()


def main() -> None:
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
