import argparse
import logging
import sys
import time
from pathlib import Path

from . import config
from .config import WatchConfig
from .core import CycleFinished, Notification, WatchEngine
from .database.db import DBManager
from .database.ops import CatalogStore
from .exceptions import VideoGalleryError
from .reporting import ReportGenerator, format_summary
from .watching.watchset import WatchSetManager

DEFAULT_DATA_DIR = Path.home() / ".video_gallery"


def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the data directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "watcher.log"

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Video Gallery: watch folders and keep the catalog in sync")

    p.add_argument("--cache-dir", type=Path, default=DEFAULT_DATA_DIR,
                   help="Directory for thumbnails, logs and the default DB (default: ~/.video_gallery)")
    p.add_argument("--db", type=Path, default=None, help="Custom path for SQLite DB (default: cache-dir/videos.db)")
    p.add_argument("--quiet-seconds", type=float, default=config.QUIET_SECONDS,
                   help="Quiet period before a detected change triggers a rescan")
    p.add_argument("--workers", type=int, default=config.ENRICH_WORKERS, help="Parallel metadata/thumbnail workers")
    p.add_argument("--progress", action="store_true", help="Show a progress bar while enriching")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Add folders as watch roots and reconcile once")
    scan.add_argument("roots", type=Path, nargs="+")

    sub.add_parser("watch", help="Watch all roots and reconcile on change until Ctrl+C")

    roots = sub.add_parser("roots", help="Manage persisted watch roots")
    roots_sub = roots.add_subparsers(dest="roots_command", required=True)
    roots_sub.add_parser("list")
    for name in ("add", "remove"):
        r = roots_sub.add_parser(name)
        r.add_argument("path", type=Path)

    report = sub.add_parser("report", help="Write a CSV status report for a folder")
    report.add_argument("root", type=Path)
    report.add_argument("--csv", type=str, default="catalog_report.csv", help="Output path for the report CSV")

    return p.parse_args(argv)


def _print_messages(messages):
    for msg in messages:
        if isinstance(msg, CycleFinished):
            print(format_summary(msg.summary))
        elif isinstance(msg, Notification):
            log = logging.error if msg.level == "error" else logging.warning if msg.level == "warning" else logging.info
            log(msg.message)


def run_scan(engine: WatchEngine, roots):
    for root in roots:
        engine.add_watch_root(root)
    engine.wait_idle()
    _print_messages(engine.tick())


def run_watch(engine: WatchEngine):
    engine.start()
    logging.info("Watching for changes. Press Ctrl+C to stop.")
    while True:
        _print_messages(engine.tick())
        time.sleep(config.TICK_INTERVAL_SECONDS)


def run_roots(store: CatalogStore, args):
    if args.roots_command == "list":
        roots = store.list_watch_roots()
        if not roots:
            print("No watch roots configured.")
        for root in roots:
            state = "" if root.is_dir() else "  (missing)"
            print(f"{root}{state}")
    elif args.roots_command == "add":
        root = WatchSetManager.normalize(args.path)
        store.add_watch_root(root)
        print(f"Added {root}")
    elif args.roots_command == "remove":
        root = WatchSetManager.normalize(args.path)
        if store.remove_watch_root(root):
            print(f"Removed {root}")
        else:
            print(f"Not a watch root: {root}")


def main(argv=None):
    args = parse_args(argv)

    cache_dir = args.cache_dir.expanduser().resolve()
    setup_logging(cache_dir, args.verbose)
    db_path = args.db if args.db else cache_dir / "videos.db"

    try:
        watch_config = WatchConfig(
            quiet_seconds=args.quiet_seconds,
            enrich_workers=args.workers,
            show_progress=args.progress,
        )
    except VideoGalleryError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(2)

    if args.command in ("roots", "report"):
        try:
            with DBManager(db_path) as conn:
                store = CatalogStore(conn)
                if args.command == "roots":
                    run_roots(store, args)
                else:
                    counts = ReportGenerator(store).generate_root_report(str(args.root), args.csv)
                    for status, n in sorted(counts.items()):
                        print(f"{status}: {n}")
        except (VideoGalleryError, FileNotFoundError) as e:
            logging.error(str(e))
            sys.exit(1)
        return

    logging.info("=== Video Gallery Watcher Started ===")
    logging.info(f"Catalog: {db_path}")

    engine = None
    try:
        engine = WatchEngine(db_path, cache_dir, watch_config)
        if args.command == "scan":
            run_scan(engine, args.roots)
        else:
            run_watch(engine)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
    except Exception:
        logging.exception("Fatal error in watcher.")
        sys.exit(1)
    finally:
        if engine is not None:
            engine.close()


if __name__ == "__main__":
    main()
