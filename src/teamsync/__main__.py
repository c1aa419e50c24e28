#!/usr/bin/env python3
"""
teamsync console - main entry point for python -m teamsync

Mounts the dashboard collections and logs a summary line every time one of
their views changes, until interrupted.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .dashboard import DashboardSession
from .realtime.hub import get_hub, set_hub
from .sync.projection import display_mode, unread_count
from .sync.synchronizer import CollectionView
from .utils.config import load_config
from .utils.errors import TeamSyncError
from .utils.logging import get_logger, setup_logging


logger = get_logger("teamsync.console")

_READ_TRACKED = ("notifications", "messages")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="teamsync", description="teamsync realtime dashboard console")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--config", type=str, action="append", help="Config file path (repeatable)")
    parser.add_argument("--log-level", type=str, help="Override the configured log level")
    parser.add_argument("--task", type=str, help="Also mount the attachments of this task")
    return parser


def summarize(view: CollectionView) -> dict:
    """Fields of the per-view summary line."""
    summary = {
        "collection": view.collection,
        "count": len(view.data),
        "state": view.state.value,
        "mode": display_mode(view).value,
        "version": view.version,
    }
    if view.collection in _READ_TRACKED:
        summary["unread"] = unread_count(view.data)
    if view.error is not None:
        summary["error"] = view.error.value
    return summary


def _log_view(view: CollectionView) -> None:
    logger.info("view_changed", **summarize(view))


async def run(config_paths: Optional[List[str]], log_level: Optional[str], task_id: Optional[str]) -> None:
    overrides = {"logging": {"level": log_level}} if log_level else None
    config = await load_config([Path(p) for p in config_paths or []], overrides)

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
        max_size=config.logging.max_size,
        backup_count=config.logging.backup_count,
    )

    hub = get_hub(config)
    try:
        async with DashboardSession(config, hub=hub) as session:
            mounted = [
                await session.notifications(),
                await session.messages(),
                await session.tasks(),
            ]
            if task_id:
                mounted.append(await session.attachments(task_id))

            for synchronizer in mounted:
                _log_view(synchronizer.view)
                synchronizer.add_listener(_log_view)

            logger.info("console_ready", mounted=len(mounted))
            await asyncio.Event().wait()
    finally:
        await hub.close()
        set_hub(None)


def main() -> None:
    """Main entry point for python -m teamsync"""
    args = build_parser().parse_args()

    if args.version:
        print(f"teamsync v{__version__}")
        return

    try:
        asyncio.run(run(args.config, args.log_level, args.task))
    except KeyboardInterrupt:
        logger.info("console_stopped_by_user")
    except TeamSyncError as e:
        print(f"teamsync error: {e.message}", file=sys.stderr)
        for suggestion in e.get_suggestions():
            print(f"  - {suggestion}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
