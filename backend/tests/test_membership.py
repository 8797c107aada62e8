import pytest

from relay.core.errors import (
    ChatNotFoundError,
    DuplicateChatError,
    InvalidPayloadError,
    NotChatAdminError,
    NotMemberError,
)
from relay.repositories.membership_cache import MembershipCache
from relay.services.membership_service import ChatMembershipIndex, ChatRole


async def test_private_chat_roles(services, users, private_chat):
    membership = services.membership

    assert await membership.members(private_chat.id) == {users["alice"], users["bob"]}
    assert await membership.role(private_chat.id, users["alice"]) == ChatRole.ADMIN
    assert await membership.role(private_chat.id, users["bob"]) == ChatRole.MEMBER
    assert await membership.role(private_chat.id, users["carol"]) == ChatRole.NONE
    assert not await membership.is_member(private_chat.id, users["carol"])


async def test_duplicate_private_chat_is_rejected(services, users, private_chat):
    with pytest.raises(DuplicateChatError) as exc:
        await services.membership.create_chat(users["bob"], "private", None, [users["alice"]])
    assert exc.value.chat_id == private_chat.id
    assert exc.value.status_code == 409


@pytest.mark.parametrize(
    "type, name, members",
    [
        ("group", None, ["bob"]),
        ("group", "   ", ["bob"]),
        ("private", None, ["bob", "carol"]),
        ("private", None, []),
        ("channel", "x", ["bob"]),
    ],
)
async def test_create_chat_validation(services, users, type, name, members):
    with pytest.raises(InvalidPayloadError):
        await services.membership.create_chat(users["alice"], type, name, [users[m] for m in members])


async def test_create_chat_with_unknown_user(services, users):
    with pytest.raises(InvalidPayloadError) as exc:
        await services.membership.create_chat(users["alice"], "group", "Team", [users["bob"], 999])
    assert exc.value.details == {"userIds": [999]}


async def test_require_member(services, users, group_chat):
    await services.membership.require_member(group_chat.id, users["carol"])
    with pytest.raises(NotMemberError):
        await services.membership.require_member(group_chat.id, users["dave"])


async def test_get_chat_not_found(services):
    with pytest.raises(ChatNotFoundError):
        await services.membership.get_chat(12345)


async def test_add_members_requires_admin(services, users, group_chat):
    with pytest.raises(NotChatAdminError):
        await services.membership.add_members(group_chat.id, users["bob"], [users["dave"]])


async def test_add_members_skips_existing(services, users, group_chat):
    added = await services.membership.add_members(
        group_chat.id, users["alice"], [users["bob"], users["dave"]]
    )
    assert added == [users["dave"]]
    assert await services.membership.is_member(group_chat.id, users["dave"])


async def test_cannot_add_members_to_private_chat(services, users, private_chat):
    with pytest.raises(InvalidPayloadError):
        await services.membership.add_members(private_chat.id, users["alice"], [users["carol"]])


async def test_remove_member(services, users, group_chat):
    with pytest.raises(NotChatAdminError):
        await services.membership.remove_member(group_chat.id, users["bob"], users["carol"])

    # 본인은 나갈 수 있음
    assert await services.membership.remove_member(group_chat.id, users["bob"], users["bob"]) is True
    assert await services.membership.remove_member(group_chat.id, users["alice"], users["carol"]) is True
    assert await services.membership.members(group_chat.id) == {users["alice"]}
    assert await services.membership.remove_member(group_chat.id, users["alice"], users["carol"]) is False


async def test_list_member_details(services, users, group_chat):
    details = await services.membership.list_member_details(group_chat.id)
    assert [d["user_id"] for d in details][0] == users["alice"]
    assert {d["username"] for d in details} == {"alice", "bob", "carol"}
    assert {d["role"] for d in details} == {"admin", "member"}


async def test_list_chats_for_user_orders_by_activity(services, users, private_chat, group_chat):
    chats = await services.membership.list_chats_for_user(users["bob"])
    assert [c.id for c in chats] == [group_chat.id, private_chat.id]

    await services.delivery.send(private_chat.id, users["alice"], "ping")
    chats = await services.membership.list_chats_for_user(users["bob"])
    assert [c.id for c in chats] == [private_chat.id, group_chat.id]
    assert chats[0].last_message_preview == "ping"


# --- Redis cache ---

async def test_cache_is_populated_and_read(session_factory, users, fake_redis):
    membership = ChatMembershipIndex(session_factory, MembershipCache(fake_redis, ttl=60))
    chat = await membership.create_chat(users["alice"], "group", "Team", [users["bob"]])

    assert await membership.members(chat.id) == {users["alice"], users["bob"]}
    key = f"chat:{chat.id}:members"
    assert fake_redis.hashes[key] == {str(users["alice"]): "admin", str(users["bob"]): "member"}
    assert fake_redis.ttls[key] == 60

    reads = fake_redis.reads
    assert await membership.role(chat.id, users["bob"]) == ChatRole.MEMBER
    assert fake_redis.reads == reads + 1


async def test_write_is_visible_on_next_read(session_factory, users, fake_redis):
    membership = ChatMembershipIndex(session_factory, MembershipCache(fake_redis))
    chat = await membership.create_chat(users["alice"], "group", "Team", [users["bob"]])
    await membership.members(chat.id)  # warm the cache

    await membership.add_members(chat.id, users["alice"], [users["carol"]])
    assert users["carol"] in await membership.members(chat.id)

    await membership.remove_member(chat.id, users["alice"], users["bob"])
    assert users["bob"] not in await membership.members(chat.id)


async def test_redis_failure_falls_back_to_database(session_factory, users, fake_redis):
    membership = ChatMembershipIndex(session_factory, MembershipCache(fake_redis))
    chat = await membership.create_chat(users["alice"], "group", "Team", [users["bob"]])
    await membership.members(chat.id)

    fake_redis.fail = True
    await membership.add_members(chat.id, users["alice"], [users["carol"]])
    assert users["carol"] in await membership.members(chat.id)

    # redis 복구 후 이전 캐시 값이 다시 보이면 안 됨
    fake_redis.fail = False
    assert users["carol"] in await membership.members(chat.id)
