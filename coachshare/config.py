"""Runtime configuration for the sharing core and the sync agent."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    CONF_BACKOFF_BASE,
    CONF_BACKOFF_MAX,
    CONF_CONNECTION_CLASS,
    CONF_INVITATION_TTL_DAYS,
    CONF_MAX_CONCURRENCY,
    CONF_NOTIFY_API_KEY,
    CONF_NOTIFY_ENDPOINT,
    CONF_NOTIFY_SENDER,
    CONF_REMOTE_BASE_URL,
    CONF_REPLICA_PATH,
    CONF_REQUEST_TIMEOUT,
    CONF_STUCK_AFTER,
    CONF_SYNC_INTERVAL,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_CONNECTION_CLASS,
    DEFAULT_INVITATION_TTL_DAYS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_NOTIFY_SENDER,
    DEFAULT_REPLICA_PATH,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STUCK_AFTER,
    DEFAULT_SYNC_INTERVAL,
)
from .utils.concurrency import ConnectionClass

_LOGGER = logging.getLogger(__name__)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_REMOTE_BASE_URL, default=""): vol.Any(None, vol.Coerce(str)),
        vol.Optional(CONF_REPLICA_PATH, default=DEFAULT_REPLICA_PATH): vol.Coerce(str),
        vol.Optional(CONF_INVITATION_TTL_DAYS, default=DEFAULT_INVITATION_TTL_DAYS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_BACKOFF_BASE, default=DEFAULT_BACKOFF_BASE): vol.All(vol.Coerce(float), vol.Range(min=0)),
        vol.Optional(CONF_BACKOFF_MAX, default=DEFAULT_BACKOFF_MAX): vol.All(vol.Coerce(float), vol.Range(min=0)),
        vol.Optional(CONF_MAX_CONCURRENCY, default=DEFAULT_MAX_CONCURRENCY): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_CONNECTION_CLASS, default=DEFAULT_CONNECTION_CLASS): vol.All(
            vol.Coerce(str), vol.Lower, vol.In([item.value for item in ConnectionClass])
        ),
        vol.Optional(CONF_NOTIFY_ENDPOINT): vol.Any(None, vol.Coerce(str)),
        vol.Optional(CONF_NOTIFY_API_KEY): vol.Any(None, vol.Coerce(str)),
        vol.Optional(CONF_NOTIFY_SENDER, default=DEFAULT_NOTIFY_SENDER): vol.Coerce(str),
        vol.Optional(CONF_STUCK_AFTER, default=DEFAULT_STUCK_AFTER): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SharingConfig:
    """Settings shared by the manager, the coordinator and the dispatcher."""

    remote_base_url: str = ""
    replica_path: Path = Path(DEFAULT_REPLICA_PATH)
    invitation_ttl_days: int = DEFAULT_INVITATION_TTL_DAYS
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    connection_class: ConnectionClass = ConnectionClass.WIFI
    notify_endpoint: str | None = None
    notify_api_key: str | None = None
    notify_sender: str = DEFAULT_NOTIFY_SENDER
    stuck_after: int = DEFAULT_STUCK_AFTER
    request_timeout: float = float(DEFAULT_REQUEST_TIMEOUT)

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> SharingConfig:
        """Validate ``options`` and build a config; raises ``vol.Invalid`` on bad values."""

        data = OPTIONS_SCHEMA(dict(options or {}))
        backoff_base = float(data[CONF_BACKOFF_BASE])
        backoff_max = float(data[CONF_BACKOFF_MAX])
        if backoff_max < backoff_base:
            _LOGGER.debug("Backoff cap %.1f below base %.1f; raising cap", backoff_max, backoff_base)
            backoff_max = backoff_base
        return cls(
            remote_base_url=(_optional_str(data.get(CONF_REMOTE_BASE_URL)) or "").rstrip("/"),
            replica_path=Path(data[CONF_REPLICA_PATH]),
            invitation_ttl_days=int(data[CONF_INVITATION_TTL_DAYS]),
            sync_interval=int(data[CONF_SYNC_INTERVAL]),
            backoff_base=backoff_base,
            backoff_max=backoff_max,
            max_concurrency=int(data[CONF_MAX_CONCURRENCY]),
            connection_class=ConnectionClass(data[CONF_CONNECTION_CLASS]),
            notify_endpoint=_optional_str(data.get(CONF_NOTIFY_ENDPOINT)),
            notify_api_key=_optional_str(data.get(CONF_NOTIFY_API_KEY)),
            notify_sender=str(data[CONF_NOTIFY_SENDER]).strip() or DEFAULT_NOTIFY_SENDER,
            stuck_after=int(data[CONF_STUCK_AFTER]),
            request_timeout=float(data[CONF_REQUEST_TIMEOUT]),
        )

    @property
    def invitation_ttl(self) -> timedelta:
        return timedelta(days=self.invitation_ttl_days)

    @property
    def notifications_ready(self) -> bool:
        return bool(self.notify_endpoint and self.notify_api_key)


def load_config(path: str | Path) -> SharingConfig:
    """Read a YAML options file; a missing or empty file yields defaults."""

    config_path = Path(path)
    if not config_path.exists():
        _LOGGER.info("Config file %s not found; using defaults", config_path)
        return SharingConfig()
    with open(config_path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, Mapping):
        raise vol.Invalid(f"{config_path} must contain a mapping of options")
    return SharingConfig.from_options(data)
