from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from qrgate.persistence import SaveResult
from qrgate.redemption import RedemptionStatus
from qrgate.session import NotLoggedIn, QrHidden

PRIMARY = "user_qr_codes"
FALLBACK = "event_history"


@pytest.mark.asyncio
async def test_camp2024_end_to_end(session, remote):
    await session.login("camp2024")
    [group] = await session.append_groups(1, 3, phone="0551234567")

    assert (await session.scan(group.token)).ok
    assert (await session.scan(group.token)).ok
    totals = session.totals()
    assert totals.attended_guests == 2
    assert totals.total_guests == 3

    result = await session.scan(group.token)
    assert result.ok
    assert group.attended == 3

    result = await session.scan(group.token)
    assert result.status == RedemptionStatus.QUOTA_EXCEEDED
    assert group.attended == 3
    assert session.status == result.message

    [row] = remote.rows(PRIMARY)
    assert row["owner_code"] == "camp2024"
    assert row["attended_guests"] == 3
    assert row["groups"][0]["phone"] == "0551234567"


@pytest.mark.asyncio
async def test_login_requires_code(session):
    with pytest.raises(ValueError):
        await session.login("   ")
    assert not session.logged_in


@pytest.mark.asyncio
async def test_new_owner_starts_empty_and_writes_nothing(session, remote, cache):
    store = await session.login("  fresh_code ")

    assert session.owner_code == "fresh_code"
    assert store.groups == []
    assert remote.rows(PRIMARY) == []
    assert cache.last_owner() == "fresh_code"


@pytest.mark.asyncio
async def test_login_loads_saved_state(session, gateway, make_store):
    saved = make_store("camp", quotas=(2, 2))
    await gateway.save("camp", saved)

    store = await session.login("camp")

    assert [g.id for g in store.groups] == [g.id for g in saved.groups]


@pytest.mark.asyncio
async def test_resume_uses_last_owner(session, gateway, cache, make_store):
    assert await session.resume() is False

    await gateway.save("camp", make_store("camp"))
    cache.set_last_owner("camp")

    assert await session.resume() is True
    assert session.owner_code == "camp"
    assert len(session.store.groups) == 1


@pytest.mark.asyncio
async def test_actions_require_login(session):
    with pytest.raises(NotLoggedIn):
        await session.append_groups(1, 2)
    with pytest.raises(NotLoggedIn):
        session.totals()


@pytest.mark.asyncio
async def test_append_many_uses_sequential_names(session):
    await session.login("camp")
    groups = await session.append_groups(3, 2)

    assert [g.name for g in groups] == ["Group 1", "Group 2", "Group 3"]
    assert session.last_save == SaveResult.PRIMARY
    assert session.totals().total_guests == 6


@pytest.mark.asyncio
async def test_only_changes_are_persisted(session, gateway):
    await session.login("camp")
    [group] = await session.append_groups(1, 2)

    gateway.save = AsyncMock(return_value=SaveResult.PRIMARY)
    assert not await session.rename_group(group.id, "   ")
    assert not await session.remove_group("missing")
    gateway.save.assert_not_awaited()

    assert await session.rename_group(group.id, "Family")
    gateway.save.assert_awaited_once()


@pytest.mark.asyncio
async def test_removing_last_group_keeps_remote_row(session, remote):
    await session.login("camp")
    [group] = await session.append_groups(1, 2)

    assert await session.remove_group(group.id)

    # An empty store is never written back
    assert session.last_save == SaveResult.SKIPPED
    assert len(remote.rows(PRIMARY)[0]["groups"]) == 1


@pytest.mark.asyncio
async def test_set_event_time_persists_schedule(session, remote):
    await session.login("camp")
    await session.set_event_time(datetime(2024, 7, 1, 18, 0))

    [row] = remote.rows(PRIMARY)
    assert row["event_time"] == "2024-07-01T18:00:00+00:00"
    assert row["groups"] == []


@pytest.mark.asyncio
async def test_reset_deletes_everything(session, remote, cache):
    await session.login("camp")
    await session.append_groups(2, 2)
    await session.set_event_time(datetime(2024, 7, 1, 18, 0, tzinfo=timezone.utc))

    assert await session.reset() is True

    assert session.store.is_empty()
    assert remote.rows(PRIMARY) == []
    assert session.logged_in


@pytest.mark.asyncio
async def test_logout_clears_local_state(session, remote, cache):
    remote.absent.update({PRIMARY, FALLBACK})
    await session.login("camp")
    await session.append_groups(1, 2)
    assert cache.load("camp") is not None

    session.logout()

    assert not session.logged_in
    assert cache.load("camp") is None
    assert cache.last_owner() is None


@pytest.mark.asyncio
async def test_scan_of_other_owner_leaves_session_untouched(session, gateway, remote, make_store):
    owner_a = make_store("owner_a", quotas=(2,))
    await gateway.save("owner_a", owner_a)
    await session.login("owner_b")
    await session.append_groups(1, 4)
    before = session.store.to_record()

    result = await session.scan(owner_a.groups[0].invite_link)

    assert result.ok and result.foreign
    assert session.store.to_record() == before
    row = next(r for r in remote.rows(PRIMARY) if r["owner_code"] == "owner_a")
    assert row["groups"][0]["attended"] == 1


@pytest.mark.asyncio
async def test_qr_image_respects_schedule(session):
    session.qr_client = AsyncMock()
    session.qr_client.fetch_png.return_value = b"png-bytes"
    await session.login("camp")
    [group] = await session.append_groups(1, 2)

    start = datetime(2024, 7, 1, 18, 0, tzinfo=timezone.utc)
    await session.set_event_time(start)

    with pytest.raises(QrHidden):
        await session.qr_image(group.id, now=start - timedelta(hours=1))
    session.qr_client.fetch_png.assert_not_awaited()

    png = await session.qr_image(group.id, now=start - timedelta(minutes=10))
    assert png == b"png-bytes"
    session.qr_client.fetch_png.assert_awaited_once_with(group.invite_link)

    with pytest.raises(KeyError):
        await session.qr_image("missing")


@pytest.mark.asyncio
async def test_login_and_scan_behind_captive_portal(session, remote, cache):
    remote.html.update({PRIMARY, FALLBACK, "attendance_log"})

    store = await session.login("camp")
    assert store.groups == []

    [group] = await session.append_groups(1, 2)
    assert session.last_save == SaveResult.LOCAL

    result = await session.scan(group.token)
    assert result.ok
    assert result.saved == SaveResult.LOCAL
    assert cache.load("camp")["attended_guests"] == 1


@pytest.mark.asyncio
async def test_append_many_keeps_phone_and_name_prefix(session, remote):
    await session.login("camp")
    groups = await session.append_groups(3, 2, phone="0551234567", name="Smith")

    assert [g.name for g in groups] == ["Smith 1", "Smith 2", "Smith 3"]
    assert all(g.phone == "0551234567" for g in groups)
    assert all("PHONE:0551234567" in g.token for g in groups)
    assert [g["phone"] for g in remote.rows(PRIMARY)[0]["groups"]] == ["0551234567"] * 3
