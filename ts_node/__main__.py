#!/usr/bin/env python3
"""
Entry point for the sensor time-series node.

Starts the retention loop and the HTTP API:
- RetentionLoop: prunes points older than the configured retention
- API: ingest, query and live endpoints (uvicorn)

Usage:
  python -m ts_node                # Serve the API with retention running
  python -m ts_node --prune-now    # Run one retention pass and exit
  python -m ts_node --status       # Show store status and exit
  python -m ts_node --selfcheck    # Run self-checks and exit
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

from .config import NodeConfig, load_config
from .db import PointStore
from .retention import RetentionLoop, RetentionManager, RetentionPolicy


def configure_logging(log_file: bool = True, verbose: bool = False, log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Configure loguru sinks for the node.

    Console level is DEBUG with ``verbose``, else TS_LOG_LEVEL (default INFO).
    The file sink is shared by the API worker threads and the retention
    thread, so records are queued.

    Returns:
        Path of the log file, or None without a file sink
    """
    logger.remove()

    level = "DEBUG" if verbose else os.environ.get("TS_LOG_LEVEL", "INFO").upper()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | <cyan>{name}</cyan> - {message}",
        level=level,
        colorize=True,
    )

    if not log_file:
        return None

    log_dir = log_dir or Path(os.environ.get("DATA_ROOT", ".")) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "ts_node.log"
    logger.add(
        log_path,
        rotation="10 MB",
        retention="7 days",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {thread.name} | {name} - {message}",
        level="DEBUG",
        enqueue=True,
    )
    logger.info(f"Logging to {log_path}")
    return log_path


def _log_startup(config: NodeConfig) -> None:
    logger.info(
        f"Store {config.db_path} | retention {RetentionPolicy.parse(config.retention)} "
        f"(prune every {config.prune_interval_seconds}s, batch {config.prune_batch_size}) | "
        f"query timeout {config.query_timeout_seconds}s"
    )


def _fmt_ms(ts: Optional[int]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def selfcheck(config: NodeConfig) -> bool:
    """
    Run self-checks and report status.

    Returns:
        True if all checks pass
    """
    logger.info("Running self-checks...")
    errors = []

    data_root = Path(os.environ.get("DATA_ROOT", "."))
    if not data_root.exists():
        errors.append(f"DATA_ROOT does not exist: {data_root}")
    else:
        logger.info(f"DATA_ROOT: {data_root}")

    logger.info(f"Retention: {RetentionPolicy.parse(config.retention)}")

    try:
        store = PointStore.from_config(config)
        store.init_db()
        stats = store.get_stats()
        logger.info(f"Store OK: {stats['instruments']} instruments, {stats['points']} points")
        store.close()
    except Exception as e:
        errors.append(f"Store error: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Self-check FAILED")
        return False

    logger.info("Self-check PASSED")
    return True


def show_status(config: NodeConfig) -> None:
    """Print store status."""
    from rich.console import Console
    from rich.table import Table

    store = PointStore.from_config(config)
    store.init_db()
    stats = store.get_stats()

    console = Console()
    console.print(f"[bold]Point store[/bold] {stats['db_path']}")
    console.print(f"Retention: {RetentionPolicy.parse(config.retention)}")
    console.print(f"Points: {stats['points']}  oldest {_fmt_ms(stats['oldest_ms'])}  newest {_fmt_ms(stats['newest_ms'])}")

    table = Table(title="Instruments")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Site")
    table.add_column("Variables")
    table.add_column("Points", justify="right")
    table.add_column("Last point")

    for inst in store.list_instruments():
        table.add_row(
            str(inst.id),
            inst.name,
            inst.site or "-",
            ", ".join(inst.shortnames),
            str(store.count_points(inst.id)),
            _fmt_ms(store.last_timestamp(inst.id)),
        )

    console.print(table)
    store.close()


def prune_now(config: NodeConfig) -> int:
    store = PointStore.from_config(config)
    store.init_db()
    manager = RetentionManager(
        store,
        RetentionPolicy.parse(config.retention),
        batch_size=config.prune_batch_size,
    )
    report = manager.prune()
    store.close()
    logger.info(f"Prune complete: {report.to_dict()}")
    return report.deleted


def run_node(config: NodeConfig, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Serve the API with the retention loop in the background."""
    import uvicorn

    from .api import create_app

    app = create_app(config)
    store = app.state.store

    loop = RetentionLoop(app.state.retention, interval_seconds=config.prune_interval_seconds)
    app.state.retention_loop = loop
    loop.start(threaded=True)

    try:
        uvicorn.run(app, host=host or config.api_host, port=port or config.api_port, log_level="info")
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Stopping retention loop...")
        loop.stop()
        store.close()
        logger.info("Sensor node stopped")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Sensor time-series node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, help="Path to node.yml")
    parser.add_argument("--host", help="API bind address")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument(
        "--prune-now",
        action="store_true",
        help="Run one retention pass and exit",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current status and exit",
    )
    parser.add_argument(
        "--selfcheck",
        action="store_true",
        help="Run self-checks and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)
    one_shot = args.status or args.selfcheck or args.prune_now
    configure_logging(log_file=not one_shot, verbose=args.verbose)

    config = load_config(args.config)
    _log_startup(config)

    if args.status:
        show_status(config)
        return 0

    if args.selfcheck:
        return 0 if selfcheck(config) else 1

    if args.prune_now:
        prune_now(config)
        return 0

    run_node(config, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
