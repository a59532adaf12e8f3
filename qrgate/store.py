from __future__ import annotations

"""
In-memory guest groups for one organizer account.

Totals are never stored on the store itself; they are summed from the
groups on every read so they can't drift from the per-group counters.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any

from .codes import build_invite_link, encode_token, mint_group_id

# QR images become visible this long before the event starts
QR_VISIBILITY_WINDOW = timedelta(minutes=30)


@dataclass
class GuestGroup:
    id: str
    name: str
    quota: int
    token: str
    invite_link: str
    attended: int = 0
    phone: str | None = None

    @property
    def is_full(self) -> bool:
        return self.attended >= self.quota

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_url: str = "") -> "GuestGroup":
        """
        Build a group from a stored record, dropping UI-only keys like isEditing.

        Records from the old web client carry no invite link; it is rebuilt
        from the token and `base_url`.
        """
        quota = int(data.get("quota", data.get("maxGuests", 0)) or 0)
        attended = int(data.get("attended", 0) or 0)
        token = str(data.get("token", data.get("qrCode")) or "")
        invite_link = str(data.get("invite_link") or "")
        if not invite_link and token:
            invite_link = build_invite_link(base_url, token)
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            quota=quota,
            token=token,
            invite_link=invite_link,
            attended=max(0, min(attended, quota)),
            phone=data.get("phone") or None,
        )


@dataclass
class Totals:
    total_guests: int
    attended_guests: int

    @property
    def remaining(self) -> int:
        return max(self.total_guests - self.attended_guests, 0)

    @property
    def percent(self) -> int:
        if self.total_guests <= 0:
            return 0
        return round(self.attended_guests * 100 / self.total_guests)


@dataclass
class IncrementResult:
    ok: bool
    group: GuestGroup | None = None


@dataclass
class GuestGroupStore:
    owner_code: str
    base_url: str = ""
    groups: list[GuestGroup] = field(default_factory=list)
    event_time: datetime | None = None

    # --- Queries ---

    def get(self, group_id: str) -> GuestGroup | None:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def totals(self) -> Totals:
        return Totals(
            total_guests=sum(g.quota for g in self.groups),
            attended_guests=sum(g.attended for g in self.groups),
        )

    def is_empty(self) -> bool:
        totals = self.totals()
        return (
            not self.groups
            and totals.total_guests == 0
            and totals.attended_guests == 0
            and self.event_time is None
        )

    def qr_visible(self, now: datetime | None = None) -> bool:
        """QR codes are shown from half an hour before the event onward."""
        if self.event_time is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now >= self.event_time - QR_VISIBILITY_WINDOW

    # --- Mutations ---

    def append(
        self, quota: int, phone: str | None = None, name: str | None = None
    ) -> GuestGroup:
        if quota < 1:
            raise ValueError("quota must be at least 1")

        # Sequence follows the current length, so default names can repeat
        # after a deletion
        seq = len(self.groups) + 1
        group_id = mint_group_id(seq)
        while self.get(group_id) is not None:
            group_id = mint_group_id(seq)

        name = (name or "").strip() or f"Group {seq}"
        phone = (phone or "").strip() or None
        token = encode_token(self.owner_code, group_id, quota, phone=phone, name=name)

        group = GuestGroup(
            id=group_id,
            name=name,
            quota=quota,
            token=token,
            invite_link=build_invite_link(self.base_url, token),
            phone=phone,
        )
        self.groups.append(group)
        return group

    def append_many(
        self, count: int, quota: int,
        phone: str | None = None, name: str | None = None,
    ) -> list[GuestGroup]:
        """Append `count` groups sharing one phone; `name` becomes a numbered prefix."""
        prefix = (name or "").strip()
        groups = []
        for _ in range(count):
            label = f"{prefix} {len(self.groups) + 1}" if prefix else None
            groups.append(self.append(quota, phone=phone, name=label))
        return groups

    def rename(self, group_id: str, new_name: str) -> bool:
        group = self.get(group_id)
        new_name = (new_name or "").strip()
        if group is None or not new_name:
            return False
        group.name = new_name
        return True

    def remove(self, group_id: str) -> bool:
        group = self.get(group_id)
        if group is None:
            return False
        self.groups.remove(group)
        return True

    def increment_attendance(self, group_id: str) -> IncrementResult:
        group = self.get(group_id)
        if group is None:
            return IncrementResult(ok=False)
        if group.is_full:
            return IncrementResult(ok=False, group=group)
        group.attended += 1
        return IncrementResult(ok=True, group=group)

    def clear(self):
        self.groups = []
        self.event_time = None

    # --- Serialization ---

    def to_record(self) -> dict[str, Any]:
        totals = self.totals()
        return {
            "owner_code": self.owner_code,
            "event_time": self.event_time.isoformat() if self.event_time else None,
            "total_guests": totals.total_guests,
            "attended_guests": totals.attended_guests,
            "groups": [g.to_dict() for g in self.groups],
        }

    @classmethod
    def from_record(
        cls, owner_code: str, record: dict[str, Any], base_url: str = ""
    ) -> "GuestGroupStore":
        """Rebuild a store from a table row or cache entry; stored totals are ignored."""
        event_time = record.get("event_time")
        if isinstance(event_time, str) and event_time:
            event_time = datetime.fromisoformat(event_time.replace("Z", "+00:00"))
        elif not isinstance(event_time, datetime):
            event_time = None
        if event_time is not None and event_time.tzinfo is None:
            event_time = event_time.replace(tzinfo=timezone.utc)

        # Rows written by the old web client keep their groups under "guests"
        raw_groups = record.get("groups") or record.get("guests") or []
        groups = [GuestGroup.from_dict(g, base_url) for g in raw_groups if g.get("id")]
        return cls(owner_code=owner_code, base_url=base_url, groups=groups, event_time=event_time)
