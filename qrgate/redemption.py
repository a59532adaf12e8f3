from __future__ import annotations

"""
Applies a scanned invitation as one attendance increment.

A gate may scan invitations minted by any organizer, so the increment has to
land in the account that owns the token, which is not necessarily the one
logged in on the scanning device.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .codes import GuestToken, decode_token, extract_from_scanned_payload
from .persistence import PersistenceGateway, SaveResult, Source
from .store import GuestGroup, GuestGroupStore
from .supabase import StoreError

logger = logging.getLogger(__name__)


class RedemptionStatus(str, Enum):
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    REDEEMED = "redeemed"
    UNAVAILABLE = "unavailable"


@dataclass
class RedemptionResult:
    status: RedemptionStatus
    message: str
    group: GuestGroup | None = None
    foreign: bool = False
    saved: SaveResult | None = None
    # Start time of the owning account's event, for the attendance log
    event_time: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == RedemptionStatus.REDEEMED


def _redeemed_message(group: GuestGroup) -> str:
    return f"Checked in a guest from {group.name}! ({group.attended}/{group.quota})"


def _full_message(group: GuestGroup) -> str:
    return f"{group.name} has reached its limit ({group.quota})."


class RedemptionEngine:
    def __init__(self, gateway: PersistenceGateway, retries: int | None = None):
        self.gateway = gateway
        if retries is None:
            retries = gateway.settings.redeem_retries
        # Always at least one attempt
        self.retries = max(1, retries)

    async def redeem(
        self, raw: str, owner_code: str | None, store: GuestGroupStore | None
    ) -> RedemptionResult:
        token = decode_token(extract_from_scanned_payload(raw))
        if not token.is_valid:
            result = RedemptionResult(RedemptionStatus.INVALID, "Invalid QR code")
        elif store is not None and token.owner == owner_code:
            result = await self._redeem_local(token, store)
        else:
            result = await self._redeem_foreign(token)

        await self._audit(token, result)
        return result

    async def _redeem_local(
        self, token: GuestToken, store: GuestGroupStore
    ) -> RedemptionResult:
        group = store.get(token.group_id)
        if group is None:
            return RedemptionResult(RedemptionStatus.NOT_FOUND, "Guest group not found")

        outcome = store.increment_attendance(group.id)
        if not outcome.ok:
            return RedemptionResult(
                RedemptionStatus.QUOTA_EXCEEDED, _full_message(group), group=group,
                event_time=store.event_time,
            )

        # The in-memory increment stands even if nothing accepts the write
        saved = await self.gateway.save(store.owner_code, store)
        return RedemptionResult(
            RedemptionStatus.REDEEMED, _redeemed_message(group), group=group, saved=saved,
            event_time=store.event_time,
        )

    async def _redeem_foreign(self, token: GuestToken) -> RedemptionResult:
        owner = token.owner
        for attempt in range(1, self.retries + 1):
            # Another device's cache means nothing here, remote tiers only
            loaded = await self.gateway.load_record(owner, include_local=False)
            if loaded is None or loaded.store.get(token.group_id) is None:
                return RedemptionResult(
                    RedemptionStatus.NOT_FOUND, "Guest group not found", foreign=True
                )

            outcome = loaded.store.increment_attendance(token.group_id)
            group = outcome.group
            event_time = loaded.store.event_time
            if not outcome.ok:
                return RedemptionResult(
                    RedemptionStatus.QUOTA_EXCEEDED, _full_message(group),
                    group=group, foreign=True, event_time=event_time,
                )

            if loaded.source == Source.PRIMARY and loaded.version:
                try:
                    if await self.gateway.compare_and_save(owner, loaded.store, loaded.version):
                        return RedemptionResult(
                            RedemptionStatus.REDEEMED, _redeemed_message(group),
                            group=group, foreign=True, saved=SaveResult.PRIMARY,
                            event_time=event_time,
                        )
                    logger.info(
                        "Record for %s changed during scan, retrying (%d/%d)",
                        owner, attempt, self.retries,
                    )
                    continue
                except StoreError as e:
                    logger.warning("Conditional update failed, using plain write: %s", e)

            saved = await self.gateway.save(owner, loaded.store, allow_local=False)
            if not saved.durable:
                return RedemptionResult(
                    RedemptionStatus.UNAVAILABLE,
                    "Could not reach the organizer's records, try again",
                    group=group, foreign=True, saved=saved, event_time=event_time,
                )
            return RedemptionResult(
                RedemptionStatus.REDEEMED, _redeemed_message(group),
                group=group, foreign=True, saved=saved, event_time=event_time,
            )

        return RedemptionResult(
            RedemptionStatus.UNAVAILABLE,
            "The guest list is busy, scan again",
            foreign=True,
        )

    async def _audit(self, token: GuestToken, result: RedemptionResult):
        group = result.group
        entry = {
            "group_id": token.group_id,
            "guest_name": group.name if group else token.name,
            "phone": group.phone if group else token.phone,
            "owner_code": token.owner,
            "scan_time": datetime.now(timezone.utc).isoformat(),
            "event_time": result.event_time.isoformat() if result.event_time else None,
            "guest_count": token.quota,
            "status": result.status.value,
        }
        await self.gateway.record_attendance(entry)
