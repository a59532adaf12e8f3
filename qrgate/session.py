from __future__ import annotations

"""
The organizer session on one device.

Owner codes are taken at face value, there is no credential check. Every
organizer action mutates the in-memory store first and then hands the new
state to the gateway, but only if the action actually changed something.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from .cache import LocalCache
from .persistence import PersistenceGateway, SaveResult
from .qrimage import QrImageClient
from .redemption import RedemptionEngine, RedemptionResult
from .store import GuestGroup, GuestGroupStore, Totals

logger = logging.getLogger(__name__)


class NotLoggedIn(Exception):
    pass


class QrHidden(Exception):
    """QR images are withheld until shortly before the event starts."""


class Session:
    def __init__(self, gateway: PersistenceGateway, cache: LocalCache,
                 engine: RedemptionEngine | None = None,
                 qr_client: QrImageClient | None = None):
        self.gateway = gateway
        self.cache = cache
        self.engine = engine or RedemptionEngine(gateway)
        self.qr_client = qr_client
        self.owner_code: str | None = None
        self.created_at: str | None = None
        self.store: GuestGroupStore | None = None
        self.status: str = ""
        self.last_save: SaveResult | None = None
        self._scan_lock = asyncio.Lock()

    @property
    def logged_in(self) -> bool:
        return self.owner_code is not None and self.store is not None

    def _require_store(self) -> GuestGroupStore:
        if not self.logged_in:
            raise NotLoggedIn("No owner code selected")
        return self.store

    # --- Identity ---

    async def login(self, owner_code: str) -> GuestGroupStore:
        owner_code = (owner_code or "").strip()
        if not owner_code:
            raise ValueError("Owner code is required")

        store = await self.gateway.load(owner_code)
        if store is None:
            # Unseen code: a new owner, nothing is written until the first group
            store = GuestGroupStore(owner_code, base_url=self.gateway.settings.base_url)

        self.owner_code = owner_code
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.store = store
        self.status = ""
        self.cache.set_last_owner(owner_code)
        logger.info("Logged in as %s with %d groups", owner_code, len(store.groups))
        return store

    async def resume(self) -> bool:
        last = self.cache.last_owner()
        if not last:
            return False
        await self.login(last)
        return True

    def logout(self):
        if self.owner_code:
            self.cache.delete(self.owner_code)
        self.cache.clear_last_owner()
        self.owner_code = None
        self.created_at = None
        self.store = None
        self.status = ""

    # --- Effect runner ---

    @asynccontextmanager
    async def _commit(self) -> AsyncIterator[GuestGroupStore]:
        store = self._require_store()
        before = store.to_record()
        yield store
        if store.to_record() != before:
            self.last_save = await self.gateway.save(self.owner_code, store)

    # --- Organizer actions ---

    def totals(self) -> Totals:
        return self._require_store().totals()

    async def append_groups(
        self, count: int = 1, quota: int = 1,
        phone: str | None = None, name: str | None = None,
    ) -> list[GuestGroup]:
        if count < 1:
            raise ValueError("count must be at least 1")
        async with self._commit() as store:
            if count == 1:
                return [store.append(quota, phone=phone, name=name)]
            return store.append_many(count, quota, phone=phone, name=name)

    async def rename_group(self, group_id: str, name: str) -> bool:
        async with self._commit() as store:
            return store.rename(group_id, name)

    async def remove_group(self, group_id: str) -> bool:
        async with self._commit() as store:
            return store.remove(group_id)

    async def set_event_time(self, event_time: datetime | None):
        if event_time is not None and event_time.tzinfo is None:
            event_time = event_time.replace(tzinfo=timezone.utc)
        async with self._commit() as store:
            store.event_time = event_time

    async def reset(self) -> bool:
        """Delete everything this owner has stored, remote and local."""
        store = self._require_store()
        ok = await self.gateway.delete_all(self.owner_code)
        store.clear()
        self.status = ""
        return ok

    # --- Gate ---

    async def scan(self, raw: str) -> RedemptionResult:
        async with self._scan_lock:
            result = await self.engine.redeem(raw, self.owner_code, self.store)
        self.status = result.message
        return result

    async def qr_image(self, group_id: str, now: datetime | None = None) -> bytes:
        store = self._require_store()
        group = store.get(group_id)
        if group is None:
            raise KeyError(group_id)
        if not store.qr_visible(now):
            raise QrHidden(f"QR codes are shown 30 minutes before {store.event_time.isoformat()}")
        if self.qr_client is None:
            raise RuntimeError("No QR image client configured")
        return await self.qr_client.fetch_png(group.invite_link)
