from pathlib import Path

import pytest

from coachshare.const import (
    ENTITY_ATHLETE_FOLDERS,
    ENTITY_ATHLETE_INVITATIONS,
    ENTITY_COACH_FOLDERS,
    ENTITY_COACH_INVITATIONS,
    ENTITY_REVOCATIONS,
)
from scripts.sync_agent import build_config, main_async, parse_args, sync_targets


def test_targets_per_role():
    assert sync_targets("athlete", "athlete-1", None) == [
        (ENTITY_ATHLETE_FOLDERS, "athlete-1"),
        (ENTITY_ATHLETE_INVITATIONS, "athlete-1"),
        (ENTITY_REVOCATIONS, "athlete-1"),
    ]
    assert sync_targets("coach", "coach-1", "cole@example.com") == [
        (ENTITY_COACH_FOLDERS, "coach-1"),
        (ENTITY_COACH_INVITATIONS, "cole@example.com"),
    ]
    assert sync_targets("coach", "coach-1", None) == [(ENTITY_COACH_FOLDERS, "coach-1")]
    assert sync_targets("system", "notifier", None) == []


def test_arguments_override_config_file(tmp_path):
    config_path = tmp_path / "agent.yaml"
    config_path.write_text("remote_base_url: https://file.example\nsync_interval: 90\n", encoding="utf-8")
    args = parse_args(
        [
            "--config",
            str(config_path),
            "--base-url",
            "https://cli.example/",
            "--db",
            str(tmp_path / "replica.db"),
            "--subject-id",
            "coach-1",
            "--role",
            "coach",
            "--once",
        ]
    )

    config = build_config(args)

    assert args.once
    assert config.remote_base_url == "https://cli.example"
    assert config.replica_path == Path(tmp_path / "replica.db")
    assert config.sync_interval == 90


def test_role_is_required():
    with pytest.raises(SystemExit):
        parse_args(["--subject-id", "x"])


@pytest.mark.asyncio
async def test_base_url_is_required():
    args = parse_args(["--subject-id", "athlete-1", "--role", "athlete", "--once"])
    with pytest.raises(SystemExit):
        await main_async(args)


@pytest.mark.asyncio
async def test_system_role_needs_mail_settings():
    args = parse_args(["--subject-id", "notifier", "--role", "system", "--base-url", "http://localhost:1", "--once"])
    with pytest.raises(SystemExit):
        await main_async(args)
