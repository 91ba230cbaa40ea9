from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from finledger.core.errors import UpstreamError
from finledger.providers.base import AccountBalance, SyncPage
from finledger.services.vault import CredentialHandle


@dataclass
class FakeSyncProvider:
    """In-memory provider serving scripted pages keyed by the cursor they answer.

    ``pages[None]`` is returned for a run with no stored cursor. Cursors listed in
    ``fail_on`` raise an upstream error, which lets tests interrupt a run between
    pages. ``delays`` holds a cursor's page back for the given seconds, and
    ``max_in_flight`` records how many page calls ever overlapped.
    """

    pages: dict[str | None, SyncPage] = field(default_factory=dict)
    balances: list[AccountBalance] = field(default_factory=list)
    fail_on: set[str | None] = field(default_factory=set)
    delays: dict[str | None, float] = field(default_factory=dict)
    name: str = "fake"
    calls: list[str | None] = field(default_factory=list)
    credentials_seen: list[CredentialHandle] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def transactions_sync(self, credential: CredentialHandle, *, cursor: str | None) -> SyncPage:
        self.calls.append(cursor)
        self.credentials_seen.append(credential)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if cursor in self.delays:
                await asyncio.sleep(self.delays[cursor])
            if cursor in self.fail_on:
                raise UpstreamError(f"scripted failure at cursor {cursor}", status_code=503)
        finally:
            self.in_flight -= 1
        page = self.pages.get(cursor)
        if page is None:
            # Past the scripted history: nothing new upstream.
            return SyncPage(added=[], modified=[], removed=[], next_cursor=cursor or "", has_more=False)
        return page

    async def account_balances(self, credential: CredentialHandle) -> list[AccountBalance]:
        self.credentials_seen.append(credential)
        return list(self.balances)
