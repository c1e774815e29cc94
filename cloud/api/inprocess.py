"""Remote authority client that calls an :class:`AuthorityState` directly."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from coachshare.cloudsync.remote import Document, Where, Write
from coachshare.errors import NetworkUnavailable, NotFound

from .auth import Principal
from .main import AuthorityState


class InProcessRemoteAuthority:
    """Same contract as the HTTP client, without the HTTP hop.

    ``online`` simulates connectivity and ``latency`` adds a suspension point
    before each call reaches the state.
    """

    def __init__(self, state: AuthorityState, principal: Principal, *, latency: float = 0.0) -> None:
        self.state = state
        self.principal = principal
        self.latency = latency
        self.online = True
        self.calls: dict[str, int] = {"get": 0, "query": 0, "commit": 0}

    async def _round_trip(self, name: str) -> None:
        self.calls[name] += 1
        await asyncio.sleep(self.latency)
        if not self.online:
            raise NetworkUnavailable(reason="offline")

    async def get(self, collection: str, doc_id: str) -> Document | None:
        await self._round_trip("get")
        try:
            return self.state.get(self.principal, collection, doc_id)
        except NotFound:
            return None

    async def query(self, collection: str, *where: Where) -> list[Document]:
        await self._round_trip("query")
        return self.state.query(self.principal, collection, where)

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]:
        await self._round_trip("commit")
        return self.state.commit(self.principal, list(writes))
