#!/usr/bin/env python3
"""Spotify to YouTube playlist sync - service and CLI entry point"""

import argparse
import fcntl
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from spotube.clients.spotify import SpotifyClient
from spotube.clients.youtube import YouTubeClient
from spotube.core.activity import ActivityLogger
from spotube.core.analysis import AnalysisScheduler
from spotube.core.blacklist import BlacklistGate
from spotube.core.cache import SearchCache
from spotube.core.config import Settings
from spotube.core.errors import ConfigError, SpotubeError
from spotube.core.executor import ExecutorScheduler
from spotube.core.mappings import MappingService
from spotube.core.models import DESTINATION_SERVICE, SOURCE_SERVICE
from spotube.core.quota import QuotaTracker
from spotube.core.scheduler import PeriodicJob
from spotube.core.status import collect_status, write_status
from spotube.core.store import RecordStore
from spotube.core.tokens import TOKEN_URLS, TokenStore

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(settings.log_file, encoding="utf-8"),
            logging.StreamHandler()
        ]
    )
    # googleapiclient logs every discovery fetch at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def acquire_lock(lock_file: Path) -> int | None:
    try:
        fd = os.open(str(lock_file), os.O_CREAT | os.O_RDWR)
    except OSError as e:
        logger.error(f"Cannot open lock file {lock_file}: {e}")
        return None
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        return None
    os.ftruncate(fd, 0)
    os.write(fd, f"{os.getpid()}\n".encode())
    return fd


def release_lock(fd: int, lock_file: Path) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        lock_file.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to release lock {lock_file}: {e}")


@dataclass
class App:
    settings: Settings
    store: RecordStore
    tokens: TokenStore
    quota: QuotaTracker
    cache: SearchCache
    activity: ActivityLogger
    blacklist: BlacklistGate
    mappings: MappingService
    analysis: AnalysisScheduler
    executor: ExecutorScheduler

    def write_status(self) -> None:
        write_status(self.store, self.activity, self.settings.status_file, self.quota)


def build_app(settings: Settings) -> App:
    store = RecordStore(settings.store_file)
    tokens = TokenStore(store, timeout=settings.api_timeout_seconds)
    tokens.seed("spotify", settings.spotify_refresh_token)
    tokens.seed("google", settings.youtube_refresh_token)

    quota = QuotaTracker(settings.youtube_daily_quota)
    adapters = {
        SOURCE_SERVICE: SpotifyClient(tokens, timeout=settings.api_timeout_seconds),
        DESTINATION_SERVICE: YouTubeClient(tokens, quota, timeout=settings.api_timeout_seconds),
    }
    cache = SearchCache(settings.cache_file)
    activity = ActivityLogger(store)
    blacklist = BlacklistGate(store)

    return App(
        settings=settings,
        store=store,
        tokens=tokens,
        quota=quota,
        cache=cache,
        activity=activity,
        blacklist=blacklist,
        mappings=MappingService(store, adapters, activity, blacklist, settings.min_interval_minutes),
        analysis=AnalysisScheduler(store, adapters, blacklist, activity, cache, settings.match_policy,
                                   retention_days=settings.retention_days),
        executor=ExecutorScheduler(
            store, adapters, blacklist, activity, cache,
            batch_size=settings.executor_batch_size,
            max_attempts=settings.max_attempts,
            concurrency=settings.executor_concurrency,
        ),
    )


def _with_status(app: App, func):
    def tick():
        try:
            return func()
        finally:
            app.write_status()
    return tick


def run_service(app: App) -> int:
    jobs = [
        PeriodicJob("analysis", app.settings.analysis_tick_seconds, _with_status(app, app.analysis.run)),
        PeriodicJob("executor", app.settings.executor_tick_seconds, _with_status(app, app.executor.run)),
    ]

    stopping = threading.Event()

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        stopping.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    app.activity.info("Sync service started", "system")
    for job in jobs:
        job.start()
    stopping.wait()
    for job in jobs:
        job.stop()
    app.cache.save()
    app.activity.info("Sync service stopped", "system")
    return 0


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _interval(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid interval: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spotube",
        description="Mirror Spotify playlists to YouTube playlists",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run both schedulers until stopped (default)")
    sub.add_parser("analyze", help="Run one analysis tick")
    sub.add_parser("execute", help="Run one executor tick")
    sub.add_parser("status", help="Print queue, mapping and quota statistics")

    retry = sub.add_parser("retry", help="Requeue errored sync items that have attempts left")
    retry.add_argument("--mapping", help="Only requeue items of this mapping")

    mappings = sub.add_parser("mappings", help="Manage playlist mappings")
    msub = mappings.add_subparsers(dest="action", required=True)
    msub.add_parser("list", help="List mappings")
    add = msub.add_parser("add", help="Create a mapping")
    add.add_argument("source", help="Spotify playlist ID")
    add.add_argument("destination", help="YouTube playlist ID")
    add.add_argument("--interval", type=_interval, default=60, help="Minutes between analyses")
    add.add_argument("--no-sync-name", dest="sync_name", action="store_false")
    add.add_argument("--no-sync-tracks", dest="sync_tracks", action="store_false")
    update = msub.add_parser("update", help="Change a mapping")
    update.add_argument("id")
    update.add_argument("--source", dest="source_playlist_id")
    update.add_argument("--destination", dest="destination_playlist_id")
    update.add_argument("--interval", dest="interval_minutes", type=_interval)
    update.add_argument("--sync-name", dest="sync_name", type=lambda v: v.lower() in ("1", "true", "yes"))
    update.add_argument("--sync-tracks", dest="sync_tracks", type=lambda v: v.lower() in ("1", "true", "yes"))
    remove = msub.add_parser("remove", help="Delete a mapping with its sync items and blacklist")
    remove.add_argument("id")

    blacklist = sub.add_parser("blacklist", help="Manage blacklisted tracks")
    bsub = blacklist.add_subparsers(dest="action", required=True)
    blist = bsub.add_parser("list", help="List blacklist entries")
    blist.add_argument("--mapping")
    badd = bsub.add_parser("add", help="Exclude a track from a mapping")
    badd.add_argument("mapping")
    badd.add_argument("track_id")
    badd.add_argument("--service", default=DESTINATION_SERVICE, choices=[SOURCE_SERVICE, DESTINATION_SERVICE])
    badd.add_argument("--reason", default="manual")
    bremove = bsub.add_parser("remove", help="Delete a blacklist entry")
    bremove.add_argument("id")

    token = sub.add_parser("token", help="Manage OAuth tokens")
    tsub = token.add_subparsers(dest="action", required=True)
    tset = tsub.add_parser("set", help="Store a refresh token for a provider")
    tset.add_argument("provider", choices=sorted(TOKEN_URLS))
    tset.add_argument("refresh_token")

    return parser


def _mappings_command(app: App, args) -> int:
    if args.action == "list":
        _print([asdict(m) for m in app.mappings.list_mappings()])
    elif args.action == "add":
        mapping = app.mappings.create(args.source, args.destination, sync_name=args.sync_name,
                                      sync_tracks=args.sync_tracks, interval_minutes=args.interval)
        _print(asdict(mapping))
    elif args.action == "update":
        changes = {key: getattr(args, key) for key in (
            "source_playlist_id", "destination_playlist_id", "interval_minutes", "sync_name", "sync_tracks",
        ) if getattr(args, key) is not None}
        _print(asdict(app.mappings.update(args.id, **changes)))
    elif args.action == "remove":
        if not app.mappings.delete(args.id):
            logger.error(f"Mapping {args.id} not found")
            return 1
    return 0


def _blacklist_command(app: App, args) -> int:
    if args.action == "list":
        _print([asdict(e) for e in app.blacklist.entries(args.mapping)])
    elif args.action == "add":
        _print(asdict(app.mappings.exclude_track(args.mapping, args.service, args.track_id, args.reason)))
    elif args.action == "remove":
        if not app.blacklist.remove(args.id):
            logger.error(f"Blacklist entry {args.id} not found")
            return 1
    return 0


def _single_tick(app: App, run) -> int:
    lock_fd = acquire_lock(app.settings.lock_file)
    if lock_fd is None:
        logger.warning("Another sync running, exiting")
        return 0
    try:
        result = run()
        return 0 if result.success else 1
    finally:
        app.write_status()
        release_lock(lock_fd, app.settings.lock_file)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    setup_logging(settings)

    try:
        app = build_app(settings)

        if command == "run":
            lock_fd = acquire_lock(settings.lock_file)
            if lock_fd is None:
                logger.warning("Another sync running, exiting")
                return 0
            try:
                return run_service(app)
            finally:
                release_lock(lock_fd, settings.lock_file)
        if command == "analyze":
            return _single_tick(app, app.analysis.run)
        if command == "execute":
            return _single_tick(app, app.executor.run)
        if command == "status":
            _print(collect_status(app.store, app.activity, app.quota))
            return 0
        if command == "retry":
            count = app.mappings.requeue_errors(settings.max_attempts, args.mapping)
            print(f"Requeued {count} sync items")
            return 0
        if command == "mappings":
            return _mappings_command(app, args)
        if command == "blacklist":
            return _blacklist_command(app, args)
        if command == "token":
            app.tokens.save(args.provider, "", args.refresh_token)
            app.activity.info(f"Stored refresh token for {args.provider}", "system")
            return 0
    except SpotubeError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
