"""mirror.cli

Command line interface entry point for the domain mirror.

Design constraints:
- argparse-based.
- Lazy imports: do not import providers or the chain stack at parse time.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class CliContext:
    repo_root: Path
    config_path: Path | None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mirror",
        description="Mirror on-chain domain registries into a queryable SQLite projection.",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: config/default.yaml under the current directory).",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run every enabled chain loop until interrupted")

    p_once = sub.add_parser("sync-once", help="Run a single cycle on each enabled chain")
    p_once.add_argument("--chain", default=None, help="Only this chain (e.g. ETH or ETH:1)")

    sub.add_parser("rebuild", help="Rebuild the domain projection from the event log")
    sub.add_parser("status", help="Print checkpoints and event counts")

    return parser


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are carried through."""

    _STANDARD = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k not in self._STANDARD and not k.startswith("_"):
                data[k] = v
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def configure_logging(level: str, json_output: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def _load_config(ctx: CliContext):
    from mirror.core.config import Config

    if ctx.config_path is not None:
        return Config.from_yaml(ctx.config_path)
    return Config.from_repo_defaults(ctx.repo_root)


def _open_db(config):
    from mirror.core.database import Database

    return Database(config.db_path)


def _print_result(result) -> None:
    if result is None:
        return
    skipped = sum(result.skipped.values())
    print(
        f"{result.chain}:{result.network_id} fetched={result.fetched} inserted={result.inserted} "
        f"applied={result.applied} skipped={skipped} cursor={result.cursor} "
        f"rolled_back_to={result.rolled_back_to} {result.duration_ms}ms"
    )


def _cmd_run(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio
    import signal

    from mirror.sync.scheduler import MirrorScheduler

    config = _load_config(ctx)
    configure_logging(config.logging.level, config.logging.json_output)
    db = _open_db(config)

    async def _main() -> None:
        scheduler = MirrorScheduler.from_config(config, db)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)
        try:
            await scheduler.run()
        finally:
            await scheduler.aclose()

    try:
        asyncio.run(_main())
    finally:
        db.close()
    return 0


def _cmd_sync_once(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from mirror.sync.scheduler import MirrorScheduler

    config = _load_config(ctx)
    configure_logging(config.logging.level, config.logging.json_output)
    db = _open_db(config)

    async def _main():
        scheduler = MirrorScheduler.from_config(config, db, only=args.chain)
        try:
            return await scheduler.run_once()
        finally:
            await scheduler.aclose()

    try:
        results = asyncio.run(_main())
    finally:
        db.close()
    for r in results:
        _print_result(r)
    return 0 if all(r is not None for r in results) else 1


def _cmd_rebuild(ctx: CliContext, args: argparse.Namespace) -> int:
    from mirror.core.checkpoint import CheckpointStore
    from mirror.core.event_store import EventStore
    from mirror.core.projection_store import rebuild_projection

    config = _load_config(ctx)
    configure_logging(config.logging.level, config.logging.json_output)
    db = _open_db(config)
    try:
        result = rebuild_projection(db, EventStore(db), checkpoints=CheckpointStore(db).all())
    finally:
        db.close()
    print(f"rebuilt: applied={result.applied} ignored={result.ignored} skipped={dict(result.skipped)}")
    return 0


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from mirror.core.checkpoint import CheckpointStore
    from mirror.core.event_store import EventStore
    from mirror.core.exceptions import ConfigError
    from mirror.core.projection_store import ProjectionReader

    try:
        config = _load_config(ctx)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    print("mirror status")
    print(f"- chains: {', '.join(c.key for c in config.enabled_chains()) or 'none'}")
    if not config.db_path.exists():
        print(f"- db: {config.db_path} (missing)")
        return 0

    db = _open_db(config)
    try:
        events = EventStore(db)
        reader = ProjectionReader(db)
        print(f"- db: {config.db_path} (schema v{db.schema_version()})")
        print(f"- events: {events.count()}")
        print(f"- domains: {reader.count_domains()}")
        print(f"- divergent names: {len(reader.divergent_names())}")
        for cp in CheckpointStore(db).all():
            print(
                f"- {cp.chain}:{cp.network_id} block={cp.last_block_number} "
                f"atxuid={cp.last_atxuid} events={events.count(cp.chain, cp.network_id)} "
                f"updated={cp.updated_at}"
            )
    finally:
        db.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from mirror import __version__

        print(f"mirror v{__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=Path.cwd(), config_path=args.config)

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "run": _cmd_run,
        "sync-once": _cmd_sync_once,
        "rebuild": _cmd_rebuild,
        "status": _cmd_status,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
