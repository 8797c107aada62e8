import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from relay.core.errors import NotificationNotFoundError
from relay.db.database import get_utc_now
from relay.db.models.notification import Notification
from relay.schemas.notification import NotificationCreate, NotificationFilter
from relay.services.notification_service import NotificationSweeper


def note(title: str, priority: str = "normal", type: str = "new_message") -> NotificationCreate:
    return NotificationCreate(type=type, title=title, message=f"{title} body", priority=priority)


async def test_enqueue_offline_only_persists(services, users, connect):
    _, alice_ws = await connect(users["alice"])

    notification = await services.notifications.enqueue(users["bob"], note("hello"))

    assert notification.id is not None
    assert notification.is_read is False
    assert await services.notifications.unread_count(users["bob"]) == 1
    assert "notification" not in alice_ws.events()


async def test_enqueue_online_also_emits_live(services, users, connect):
    _, bob_ws = await connect(users["bob"])

    notification = await services.notifications.enqueue(users["bob"], note("hello", priority="high"))

    [live] = bob_ws.payloads("notification")
    assert live["id"] == notification.id
    assert live["priority"] == "high"
    assert live["isRead"] is False
    assert bob_ws.payloads("notification_count_update") == [{"unreadCount": 1}]


async def test_unread_is_ordered_by_priority_then_recency(services, users):
    for title, priority in [("low", "low"), ("high", "high"), ("normal", "normal"), ("medium", "medium")]:
        await services.notifications.enqueue(users["bob"], note(title, priority))

    unread = await services.notifications.get_unread(users["bob"])
    assert [n.title for n in unread] == ["high", "medium", "normal", "low"]


async def test_filters(services, users):
    await services.notifications.enqueue(users["bob"], note("a", "high", type="new_message"))
    await services.notifications.enqueue(users["bob"], note("b", "low", type="system"))
    await services.notifications.enqueue(users["carol"], note("c", "high"))

    by_type = await services.notifications.list(users["bob"], NotificationFilter(type="system"))
    assert [n.title for n in by_type] == ["b"]

    by_priority = await services.notifications.list(users["bob"], NotificationFilter(priority="high"))
    assert [n.title for n in by_priority] == ["a"]

    future = get_utc_now() + timedelta(days=1)
    assert await services.notifications.list(users["bob"], NotificationFilter(start_date=future)) == []


async def test_mark_read_is_idempotent(services, users):
    first = await services.notifications.enqueue(users["bob"], note("one"))
    second = await services.notifications.enqueue(users["bob"], note("two"))

    marked = await services.notifications.mark_read(users["bob"], [first.id, second.id])
    assert {n.id for n in marked} == {first.id, second.id}
    assert all(n.read_at is not None for n in marked)

    assert await services.notifications.mark_read(users["bob"], [first.id, second.id]) == []
    assert await services.notifications.count(users["bob"]) == {"total_count": 2, "unread_count": 0}


async def test_mark_read_ignores_other_users(services, users):
    foreign = await services.notifications.enqueue(users["carol"], note("not yours"))

    assert await services.notifications.mark_read(users["bob"], [foreign.id]) == []
    assert await services.notifications.unread_count(users["carol"]) == 1


async def test_mark_all_read_with_filter(services, users):
    await services.notifications.enqueue(users["bob"], note("a", type="system"))
    await services.notifications.enqueue(users["bob"], note("b"))

    marked = await services.notifications.mark_read(users["bob"], None, NotificationFilter(type="system"))
    assert [n.title for n in marked] == ["a"]
    assert await services.notifications.unread_count(users["bob"]) == 1


async def test_mark_read_emits_count_update(services, users, connect):
    _, bob_ws = await connect(users["bob"])
    notification = await services.notifications.enqueue(users["bob"], note("ping"))

    await services.notifications.mark_read(users["bob"], [notification.id])
    assert bob_ws.payloads("notification_count_update")[-1] == {"unreadCount": 0}


async def test_delete(services, users):
    mine = await services.notifications.enqueue(users["bob"], note("mine"))
    foreign = await services.notifications.enqueue(users["carol"], note("foreign"))

    with pytest.raises(NotificationNotFoundError):
        await services.notifications.delete(users["bob"], foreign.id)

    await services.notifications.delete(users["bob"], mine.id)
    with pytest.raises(NotificationNotFoundError):
        await services.notifications.get(users["bob"], mine.id)


async def test_delete_read(services, users):
    read = await services.notifications.enqueue(users["bob"], note("read"))
    await services.notifications.enqueue(users["bob"], note("unread"))
    await services.notifications.mark_read(users["bob"], [read.id])

    assert await services.notifications.delete_read(users["bob"]) == 1
    assert await services.notifications.count(users["bob"]) == {"total_count": 1, "unread_count": 1}


async def _age(session_factory, notification_id: int, days: int):
    async with session_factory() as db:
        await db.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(created_at=get_utc_now() - timedelta(days=days))
        )
        await db.commit()


async def test_sweep_deletes_only_old_read(services, users, session_factory):
    old_read = await services.notifications.enqueue(users["bob"], note("old read"))
    old_unread = await services.notifications.enqueue(users["bob"], note("old unread"))
    new_read = await services.notifications.enqueue(users["bob"], note("new read"))
    await services.notifications.mark_read(users["bob"], [old_read.id, new_read.id])
    await _age(session_factory, old_read.id, 45)
    await _age(session_factory, old_unread.id, 45)

    assert await services.notifications.sweep(retention_days=30) == 1

    remaining = {n.title for n in await services.notifications.list(users["bob"])}
    assert remaining == {"old unread", "new read"}


async def test_sweeper_runs_in_background(services, users, session_factory):
    notification = await services.notifications.enqueue(users["bob"], note("stale"))
    await services.notifications.mark_read(users["bob"], [notification.id])
    await _age(session_factory, notification.id, 90)

    sweeper = NotificationSweeper(services.notifications, interval=0.01, retention_days=30)
    sweeper.start()
    assert sweeper.running
    for _ in range(100):
        if (await services.notifications.count(users["bob"]))["total_count"] == 0:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert not sweeper.running
    assert (await services.notifications.count(users["bob"]))["total_count"] == 0


async def test_sweeper_survives_errors():
    class FlakyService:
        calls = 0

        async def sweep(self, retention_days):
            FlakyService.calls += 1
            if FlakyService.calls == 1:
                raise RuntimeError("db down")
            return 0

    sweeper = NotificationSweeper(FlakyService(), interval=0.01, retention_days=1)
    sweeper.start()
    for _ in range(100):
        if FlakyService.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert FlakyService.calls >= 2
