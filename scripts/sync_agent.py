"""Command line entrypoint for the folder sharing sync agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp import ClientSession

from coachshare.cloudsync import HttpRemoteAuthority, LocalReplica, SyncCoordinator
from coachshare.config import SharingConfig, load_config
from coachshare.const import (
    ENTITY_ATHLETE_FOLDERS,
    ENTITY_ATHLETE_INVITATIONS,
    ENTITY_COACH_FOLDERS,
    ENTITY_COACH_INVITATIONS,
    ENTITY_REVOCATIONS,
    ROLE_ATHLETE,
    ROLE_COACH,
    ROLE_SYSTEM,
)
from coachshare.sharing import HttpEmailNotifier, NotificationDispatcher

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the folder sharing sync agent")
    parser.add_argument("--config", type=Path, default=None, help="YAML options file")
    parser.add_argument("--db", type=Path, default=None, help="SQLite path for the local replica")
    parser.add_argument("--base-url", default=None, help="Remote authority base URL")
    parser.add_argument("--subject-id", required=True, help="User id to sync for")
    parser.add_argument("--role", choices=(ROLE_ATHLETE, ROLE_COACH, ROLE_SYSTEM), required=True)
    parser.add_argument("--email", default=None, help="Email of the user (required for coaches)")
    parser.add_argument("--interval", type=int, default=None, help="Poll interval in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def sync_targets(role: str, subject_id: str, email: str | None) -> list[tuple[str, str]]:
    if role == ROLE_ATHLETE:
        return [
            (ENTITY_ATHLETE_FOLDERS, subject_id),
            (ENTITY_ATHLETE_INVITATIONS, subject_id),
            (ENTITY_REVOCATIONS, subject_id),
        ]
    if role == ROLE_COACH:
        targets = [(ENTITY_COACH_FOLDERS, subject_id)]
        if email:
            targets.append((ENTITY_COACH_INVITATIONS, email))
        return targets
    return []


def build_config(args: argparse.Namespace) -> SharingConfig:
    config = load_config(args.config) if args.config else SharingConfig()
    if args.base_url:
        config.remote_base_url = args.base_url.rstrip("/")
    if args.db:
        config.replica_path = args.db
    if args.interval:
        config.sync_interval = args.interval
    return config


async def main_async(args: argparse.Namespace) -> None:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    config = build_config(args)
    if not config.remote_base_url:
        raise SystemExit("a remote base URL is required (--base-url or remote_base_url option)")
    if args.role == ROLE_COACH and not args.email:
        _LOGGER.warning("No --email given; coach invitations will not be synced")

    async with ClientSession() as session:
        remote = HttpRemoteAuthority(
            session,
            config.remote_base_url,
            subject_id=args.subject_id,
            role=args.role,
            email=args.email,
            timeout=config.request_timeout,
        )
        if args.role == ROLE_SYSTEM:
            if not config.notifications_ready:
                raise SystemExit("notify_endpoint and notify_api_key are required for the system role")
            notifier = HttpEmailNotifier(
                session,
                config.notify_endpoint or "",
                config.notify_api_key or "",
                sender=config.notify_sender,
                timeout=config.request_timeout,
            )
            dispatcher = NotificationDispatcher(
                remote,
                notifier,
                stuck_after=config.stuck_after,
                max_concurrency=config.max_concurrency,
            )
            if args.once:
                report = await dispatcher.dispatch_pending()
                _LOGGER.info("Dispatched %d revocation notices", len(report))
                return
            _LOGGER.info("Starting revocation dispatch loop")
            await dispatcher.run_forever(interval_seconds=config.sync_interval)
            return

        replica = LocalReplica(config.replica_path)
        coordinator = SyncCoordinator(remote, replica, config)
        targets = sync_targets(args.role, args.subject_id, args.email)
        if args.once:
            for outcome in await coordinator.sync_many(targets):
                _LOGGER.info("Sync result: %s", outcome)
            return
        _LOGGER.info("Starting sync loop for %d targets", len(targets))
        await coordinator.run_forever(targets, interval_seconds=config.sync_interval)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")


if __name__ == "__main__":
    main()
