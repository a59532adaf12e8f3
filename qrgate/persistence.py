from __future__ import annotations

"""
Keeps an owner's guest groups durable across sessions.

Reads go primary table -> fallback table -> local cache; writes go the same
way and stop at the first tier that accepts them. The remote tables are the
shared source of truth, the local cache only serves this device.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .cache import LocalCache
from .config import Settings, get_settings
from .store import GuestGroupStore
from .supabase import StoreError, SupabaseClient

logger = logging.getLogger(__name__)


class SaveResult(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    LOCAL = "local"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def durable(self) -> bool:
        return self in (SaveResult.PRIMARY, SaveResult.FALLBACK, SaveResult.LOCAL)


class Source(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    LOCAL = "local"


@dataclass
class LoadedState:
    store: GuestGroupStore
    source: Source
    # updated_at of the primary row, used for conditional writes
    version: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PersistenceGateway:
    def __init__(self, client: SupabaseClient, cache: LocalCache,
                 settings: Settings | None = None):
        self.client = client
        self.cache = cache
        self.settings = settings or get_settings()

    # --- Row mapping ---

    def _primary_row(self, owner_code: str, store: GuestGroupStore) -> dict:
        return {**store.to_record(), "owner_code": owner_code, "updated_at": _now()}

    def _fallback_row(self, owner_code: str, store: GuestGroupStore) -> dict:
        return {
            **store.to_record(),
            "owner_code": owner_code,
            "event_name": None,
            "event_id": None,
            "ended_at": _now(),
        }

    def _to_store(self, owner_code: str, row: dict) -> GuestGroupStore:
        return GuestGroupStore.from_record(owner_code, row, base_url=self.settings.base_url)

    # --- Write path ---

    async def save(
        self, owner_code: str, store: GuestGroupStore, allow_local: bool = True
    ) -> SaveResult:
        """
        Persist the store to the first tier that accepts it.

        An empty store is never written, so a session that hasn't finished
        loading can't blank out real data.
        """
        if store.is_empty():
            return SaveResult.SKIPPED

        try:
            await self.client.upsert(
                self.settings.primary_table, self._primary_row(owner_code, store)
            )
            return SaveResult.PRIMARY
        except StoreError as e:
            logger.warning("Primary table upsert failed, trying fallback: %s", e)

        try:
            await self.client.upsert(
                self.settings.fallback_table, self._fallback_row(owner_code, store)
            )
            return SaveResult.FALLBACK
        except StoreError as e:
            logger.warning("Fallback table upsert failed: %s", e)

        if not allow_local:
            logger.error("No remote tier accepted the write for %s", owner_code)
            return SaveResult.FAILED

        if self.cache.save(owner_code, store.to_record()):
            return SaveResult.LOCAL
        logger.error("All tiers failed saving %s", owner_code)
        return SaveResult.FAILED

    async def compare_and_save(
        self, owner_code: str, store: GuestGroupStore, version: str
    ) -> bool:
        """
        Write the primary row only if nobody changed it since `version`.

        Raises StoreError when the table can't be reached.
        """
        row = self._primary_row(owner_code, store)
        return await self.client.update_if(
            self.settings.primary_table, owner_code, "updated_at", version, row
        )

    # --- Read path ---

    async def load_record(
        self, owner_code: str, include_local: bool = True
    ) -> LoadedState | None:
        try:
            row = await self.client.select_one(self.settings.primary_table, owner_code)
            if row:
                return LoadedState(
                    store=self._to_store(owner_code, row),
                    source=Source.PRIMARY,
                    version=row.get("updated_at"),
                )
        except StoreError as e:
            logger.warning("Primary table read failed, trying fallback: %s", e)

        try:
            row = await self.client.select_one(
                self.settings.fallback_table, owner_code, order="ended_at"
            )
            if row:
                return LoadedState(store=self._to_store(owner_code, row), source=Source.FALLBACK)
        except StoreError as e:
            logger.warning("Fallback table read failed: %s", e)

        if include_local:
            record = self.cache.load(owner_code)
            if record:
                return LoadedState(store=self._to_store(owner_code, record), source=Source.LOCAL)

        return None

    async def load(
        self, owner_code: str, include_local: bool = True
    ) -> GuestGroupStore | None:
        """Load an owner's store; None means a new owner with nothing saved yet."""
        loaded = await self.load_record(owner_code, include_local=include_local)
        return loaded.store if loaded else None

    # --- Delete path ---

    async def delete_all(self, owner_code: str) -> bool:
        for table in (self.settings.primary_table, self.settings.fallback_table):
            try:
                await self.client.delete(table, owner_code)
            except StoreError as e:
                # Either table may legitimately not exist
                logger.warning("Delete from %s failed: %s", table, e)
        return self.cache.delete(owner_code)

    # --- Audit trail ---

    async def record_attendance(self, entry: dict) -> bool:
        try:
            await self.client.insert(self.settings.audit_table, entry)
            return True
        except StoreError as e:
            logger.warning("Attendance log write failed: %s", e)
            return False
