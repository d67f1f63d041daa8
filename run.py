"""Unified launcher for the retention backup system.

Usage:
    python run.py create              # dump, apply retention, notify, sync
    python run.py apply               # retention pass only
    python run.py status              # read-only summary
    python run.py watch               # apply retention when new dumps appear
    python run.py dashboard --port 5000
    python run.py serve               # watcher in background + dashboard

All commands accept --config and --log-level.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading

from src.backup.backup_config import DEFAULT_CONFIG_PATH, load_config
from src.retention.catalog import CatalogError

logger = logging.getLogger("retention_backup")


def cmd_create(manager, args) -> int:
    run = manager.create_backup_and_apply_retention()
    if not run.success:
        logger.error("Backup failed: %s", run.error)
        return 1
    logger.info("Database backup created: %s", run.backup_path)
    if run.retention and run.retention.deleted:
        logger.info("Retention policy applied. Deleted %d backup(s).",
                    len(run.retention.deleted))
    for warning in run.warnings:
        logger.warning(warning)
    return 0


def cmd_apply(manager, args) -> int:
    result = manager.apply_retention()
    print(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        return 1
    return 2 if result.failures or result.state_errors else 0


def cmd_status(manager, args) -> int:
    try:
        info = manager.status()
    except CatalogError as exc:
        logger.error("Cannot read backup directory: %s", exc)
        return 1
    print(json.dumps(info, indent=2))
    return 0


def _wait(stop_event):
    while not stop_event.is_set():
        stop_event.wait(timeout=1.0)


def cmd_watch(manager, args, stop_event) -> int:
    from src.monitor.backup_watcher import BackupWatcher

    watcher = BackupWatcher(manager, debounce_seconds=args.debounce)
    watcher.start()
    try:
        _wait(stop_event)
    finally:
        watcher.stop()
    return 0


def cmd_dashboard(manager, args, config, watch: bool = False, stop_event=None) -> int:
    from src.dashboard.app import create_app

    app = create_app(config_path=args.config, backup_manager=manager, config=config)

    watcher = None
    if watch:
        from src.monitor.backup_watcher import BackupWatcher

        def publish(result):
            app.ws_handler.broadcast("retention_applied", result.to_dict())

        watcher = BackupWatcher(manager, debounce_seconds=args.debounce, on_result=publish)
        watcher.start()

    logger.info("Dashboard: http://%s:%d", args.host, args.port)
    try:
        app.run(host=args.host, port=args.port, debug=False)
    finally:
        if watcher:
            watcher.stop()
        if stop_event:
            stop_event.set()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Retention Backup - tiered database backup retention",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("create", help="Create a backup and apply retention")
    sub.add_parser("apply", help="Apply the retention policy")
    sub.add_parser("status", help="Show backup directory status")

    for name, help_text in (
        ("watch", "Apply retention whenever a new backup appears"),
        ("dashboard", "Run the web dashboard"),
        ("serve", "Run the watcher and the dashboard together"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--debounce", type=float, default=None,
                       help="Seconds to wait after a new file before retention")
        if name != "watch":
            p.add_argument("--host", default=None, help="Dashboard host")
            p.add_argument("--port", type=int, default=None, help="Dashboard port")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_config(args.config)
    if getattr(args, "debounce", None) is None:
        args.debounce = config["watcher"]["debounce_seconds"]
    if hasattr(args, "host"):
        args.host = args.host or config["dashboard"]["host"]
        args.port = args.port or config["dashboard"]["port"]

    from src.backup.backup_manager import BackupManager
    manager = BackupManager.from_config(config)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    if args.command == "watch":
        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    try:
        if args.command == "create":
            return cmd_create(manager, args)
        if args.command == "apply":
            return cmd_apply(manager, args)
        if args.command == "status":
            return cmd_status(manager, args)
        if args.command == "watch":
            return cmd_watch(manager, args, stop_event)
        if args.command == "dashboard":
            return cmd_dashboard(manager, args, config)
        return cmd_dashboard(manager, args, config, watch=True, stop_event=stop_event)
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
