"""Deliver revocation notices to coaches, marking each event sent once."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..cloudsync.remote import Document, RemoteAuthority, Write, eq
from ..const import COLLECTION_REVOCATIONS, DEFAULT_NOTIFY_SENDER, DEFAULT_REQUEST_TIMEOUT, DEFAULT_STUCK_AFTER
from ..errors import Conflict, NetworkUnavailable, NotificationError, Unauthorized
from ..models import RevocationEvent, format_timestamp, utcnow
from ..utils.concurrency import gather_bounded

if TYPE_CHECKING:
    from .manager import SharedFolderManager

_LOGGER = logging.getLogger(__name__)

SENDER_NAME = "PlayerPath"


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    ALREADY_MARKED = "already_marked"
    FAILED = "failed"
    UNMARKED = "unmarked"
    MISSING = "missing"


class RevocationNotifier(Protocol):
    async def send_revocation_notice(self, event: RevocationEvent) -> None:
        """Deliver one notice; raise ``NotificationError`` on failure."""


def build_revocation_message(event: RevocationEvent, *, sender: str = DEFAULT_NOTIFY_SENDER) -> dict[str, Any]:
    """Mail-send body in the SendGrid v3 layout."""

    athlete = event.athlete_name or "The athlete"
    text = (
        f"{athlete} has removed your access to the shared folder \"{event.folder_name}\".\n\n"
        "You can no longer view, upload to or comment on this folder. "
        "Videos you uploaded earlier remain with the athlete.\n"
    )
    return {
        "personalizations": [{"to": [{"email": event.coach_email}]}],
        "from": {"email": sender, "name": SENDER_NAME},
        "subject": f"{athlete} removed your access to {event.folder_name}",
        "content": [{"type": "text/plain", "value": text}],
        "custom_args": {
            "revocation_id": event.id,
            "folder_id": event.folder_id,
            "revoked_at": format_timestamp(event.revoked_at),
        },
    }


class HttpEmailNotifier:
    """Post revocation notices to a mail-send HTTP endpoint."""

    def __init__(
        self,
        session: ClientSession,
        endpoint: str,
        api_key: str,
        *,
        sender: str = DEFAULT_NOTIFY_SENDER,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.endpoint = endpoint
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send_revocation_notice(self, event: RevocationEvent) -> None:
        if not event.coach_email:
            raise NotificationError(f"revocation {event.id} has no recipient", reason="no_recipient")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with self.session.post(
                self.endpoint,
                json=build_revocation_message(event, sender=self.sender),
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise NotificationError(f"mail send failed: {resp.status} {text}", reason=f"http_{resp.status}")
        except ClientError as err:
            raise NotificationError(str(err), reason="client_error") from err
        except asyncio.TimeoutError as err:
            raise NotificationError("mail send timed out", reason="timeout") from err


class NotificationDispatcher:
    """Send each undelivered revocation notice and flip its ``emailSent`` flag.

    ``remote`` must act as the system principal, the only one allowed to set
    the delivery flag. Failed sends are counted rather than retried here; an
    event that keeps failing is reported by :meth:`stuck_events`.
    """

    def __init__(
        self,
        remote: RemoteAuthority,
        notifier: RevocationNotifier,
        *,
        stuck_after: int = DEFAULT_STUCK_AFTER,
        max_concurrency: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.remote = remote
        self.notifier = notifier
        self.stuck_after = max(int(stuck_after), 1)
        self.max_concurrency = max(int(max_concurrency), 1)
        self._clock = clock
        self._in_flight: set[str] = set()
        self._failures: dict[str, int] = {}
        self._tasks: set[asyncio.Task[DeliveryOutcome]] = set()
        self.sent_count = 0
        self.last_run_at: datetime | None = None

    # ------------------------------------------------------------------
    async def dispatch_pending(self, limit: int = 50) -> dict[str, DeliveryOutcome]:
        documents = await self.remote.query(COLLECTION_REVOCATIONS, eq("emailSent", False))
        candidates = [doc for doc in documents if doc.id not in self._in_flight][: max(int(limit), 0)]
        outcomes = await gather_bounded(candidates, self._deliver, limit=self.max_concurrency)
        self.last_run_at = self._clock()
        report = {doc.id: outcome for doc, outcome in zip(candidates, outcomes, strict=True)}
        if report:
            _LOGGER.debug("Dispatched %d revocation notices: %s", len(report), report)
        return report

    async def dispatch_event(self, event: RevocationEvent) -> DeliveryOutcome:
        document = await self.remote.get(COLLECTION_REVOCATIONS, event.id)
        if document is None:
            _LOGGER.warning("Revocation %s vanished before its notice was sent", event.id)
            return DeliveryOutcome.MISSING
        return await self._deliver(document)

    async def _deliver(self, document: Document) -> DeliveryOutcome:
        if document.data.get("emailSent") or document.id in self._in_flight:
            return DeliveryOutcome.SKIPPED
        self._in_flight.add(document.id)
        try:
            event = RevocationEvent.from_payload(document.data)
            try:
                await self.notifier.send_revocation_notice(event)
            except NotificationError as err:
                self._record_failure(event, err)
                return DeliveryOutcome.FAILED
            self.sent_count += 1
            self._failures.pop(event.id, None)
            try:
                await self.remote.commit([Write.update(document, {"emailSent": True})])
            except (Conflict, Unauthorized) as err:
                _LOGGER.info("Revocation %s already marked as sent: %s", event.id, err)
                return DeliveryOutcome.ALREADY_MARKED
            except NetworkUnavailable as err:
                _LOGGER.warning("Sent notice for %s but could not mark it: %s", event.id, err)
                return DeliveryOutcome.UNMARKED
            _LOGGER.info("Sent revocation notice %s to %s", event.id, event.coach_email)
            return DeliveryOutcome.SENT
        finally:
            self._in_flight.discard(document.id)

    def _record_failure(self, event: RevocationEvent, err: Exception) -> None:
        failures = self._failures.get(event.id, 0) + 1
        self._failures[event.id] = failures
        if failures >= self.stuck_after:
            _LOGGER.error(
                "Revocation notice %s for %s failed %d times and needs attention: %s",
                event.id,
                event.coach_email or "<no email>",
                failures,
                err,
            )
        else:
            _LOGGER.warning("Revocation notice %s failed (%d): %s", event.id, failures, err)

    def stuck_events(self) -> list[str]:
        return sorted(event_id for event_id, count in self._failures.items() if count >= self.stuck_after)

    # ------------------------------------------------------------------
    def attach(self, manager: SharedFolderManager) -> Callable[[], None]:
        """Dispatch every revocation ``manager`` commits in a background task."""

        return manager.register_revocation_listener(self._on_revocation)

    def _on_revocation(self, event: RevocationEvent) -> None:
        task = asyncio.create_task(self.dispatch_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[DeliveryOutcome]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.warning("Background revocation dispatch failed: %s", err)

    async def drain(self) -> None:
        """Wait for background dispatches started by :meth:`attach`."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_forever(self, *, interval_seconds: int = 60, limit: int = 50) -> None:
        while True:
            try:
                await self.dispatch_pending(limit)
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.exception("Unexpected dispatch error: %s", err)
            await asyncio.sleep(interval_seconds)

    def status(self) -> Mapping[str, Any]:
        return {
            "sent": self.sent_count,
            "in_flight": len(self._in_flight),
            "background_tasks": len(self._tasks),
            "stuck": self.stuck_events(),
            "last_run_at": format_timestamp(self.last_run_at) if self.last_run_at else None,
        }
