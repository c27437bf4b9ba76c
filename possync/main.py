"""
POS offline sync engine command line.

Usage:
    possync status                  # Queue and connectivity summary
    possync sync                    # Drain the queue once if the remote is reachable
    possync resync                  # Refresh product/customer mirrors from the remote
    possync dead-letters            # List items that exhausted their retries
    possync requeue ITEM_ID         # Give a dead-lettered item a fresh retry budget
    possync export [-o FILE]        # Dump the local store as JSON
    possync cleanup [--days N]      # Drop synced history older than N days (default 30)
    possync run                     # Keep syncing in the background until Ctrl+C

Settings come from POSSYNC_* environment variables (see AppConfig.from_env).
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .app.sync_service import SyncService
from .config.app_config import AppConfig
from .errors import SyncEngineError
from .utils.serialization import json_serialize_fallback


def setup_logging(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Setup logging to file in user's home directory."""
    log_dir = log_dir or Path.home() / ".possync" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "possync.log"

    handlers = [logging.FileHandler(log_file), logging.StreamHandler(sys.stdout)]

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    return logging.getLogger("possync")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=json_serialize_fallback, ensure_ascii=False))


def _connect(service: SyncService) -> bool:
    """Probe the remote and record the result on the monitor."""
    if service.remote is None:
        return False
    return service.monitor.probe(service.remote.ping)


def cmd_status(service: SyncService, args) -> int:
    _connect(service)
    summary = service.get_status_summary()
    summary["queue"] = service.queue_status_summary()
    summary["tables"] = service.store.table_counts()
    _print_json(summary)
    return 0


def cmd_sync(service: SyncService, args) -> int:
    if service.drainer is None:
        print("Cloud sync is disabled (POSSYNC_SYNC_ENABLED)")
        return 1
    # Coming online drains the queue through the drainer's subscription
    was_online = service.monitor.is_online
    if not _connect(service):
        print(f"Remote authority at {service.config.cloud_sync.endpoint} is unreachable; "
              f"{service.pending_count()} items still pending")
        return 1
    result = service.drainer.last_result if not was_online else service.sync_now()
    _print_json(result.to_dict() if result else {"status": "busy"})
    return 0 if result is not None and result.failed == 0 else 1


def cmd_resync(service: SyncService, args) -> int:
    _print_json(service.resync_mirrors())
    return 0


def cmd_dead_letters(service: SyncService, args) -> int:
    items = service.dead_letters()
    if not items:
        print("No dead-lettered items")
        return 0
    _print_json([item.to_dict() for item in items])
    return 0


def cmd_requeue(service: SyncService, args) -> int:
    item = service.requeue(args.item_id)
    print(f"Requeued {item.id} ({item.domain_type.value}/{item.action.value})")
    return 0


def cmd_export(service: SyncService, args) -> int:
    data = service.export_data()
    if args.output:
        Path(args.output).write_text(
            json.dumps(data, indent=2, default=json_serialize_fallback, ensure_ascii=False),
            encoding="utf-8",
        )
        print(f"Exported local store to {args.output}")
    else:
        _print_json(data)
    return 0


def cmd_cleanup(service: SyncService, args) -> int:
    _print_json(service.cleanup_old_data(args.days))
    return 0


def cmd_run(service: SyncService, args) -> int:
    stop_event = threading.Event()

    def _signal_handler(sig, frame):
        print('Shutdown signal received. Exiting gracefully...')
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    service.start()
    while not stop_event.is_set():
        stop_event.wait(timeout=1.0)
    return 0


COMMANDS = {
    "status": cmd_status,
    "sync": cmd_sync,
    "resync": cmd_resync,
    "dead-letters": cmd_dead_letters,
    "requeue": cmd_requeue,
    "export": cmd_export,
    "cleanup": cmd_cleanup,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="possync",
        description="Offline-first sync engine for POS terminals",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--db", help="Local store path (overrides POSSYNC_DB_PATH)")
    parser.add_argument("--endpoint", help="Remote API base URL (overrides POSSYNC_ENDPOINT)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show queue and connectivity status")
    subparsers.add_parser("sync", help="Drain the queue once")
    subparsers.add_parser("resync", help="Refresh mirrors from the remote authority")
    subparsers.add_parser("dead-letters", help="List dead-lettered queue items")
    requeue_parser = subparsers.add_parser("requeue", help="Requeue a dead-lettered item")
    requeue_parser.add_argument("item_id", help="Queue item id")
    export_parser = subparsers.add_parser("export", help="Export the local store as JSON")
    export_parser.add_argument("-o", "--output", help="Write to this file instead of stdout")
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old synced orders and stock history")
    cleanup_parser.add_argument("--days", type=int, default=30, help="Days of synced history to keep")
    subparsers.add_parser("run", help="Sync in the background until interrupted")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the possync command.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)
    logger = setup_logging(args.log_dir, args.verbose)

    config = AppConfig.from_env()
    if args.db:
        config.store.path = args.db
    if args.endpoint:
        config.cloud_sync.endpoint = args.endpoint
    if args.command != "run":
        config.cloud_sync.enable_background_sync = False

    service = SyncService(config)
    try:
        service.open()
        return COMMANDS[args.command](service, args)
    except SyncEngineError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())
