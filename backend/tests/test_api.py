import httpx
import pytest_asyncio

from relay.core.security import create_access_token
from relay.main import create_app


def auth(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_health(client):
    res = await client.get("/")
    assert res.status_code == 200
    assert res.json()["active_connections"] == 0


async def test_requires_token(client):
    res = await client.get("/v1/chats")
    assert res.status_code == 401

    res = await client.get("/v1/chats", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


async def test_create_chat_and_duplicate(client, users):
    body = {"type": "private", "memberIds": [users["bob"]]}
    res = await client.post("/v1/chats", json=body, headers=auth(users["alice"]))
    assert res.status_code == 201
    chat_id = res.json()["id"]
    assert res.json()["createdBy"] == users["alice"]

    res = await client.post("/v1/chats", json={"type": "private", "memberIds": [users["alice"]]}, headers=auth(users["bob"]))
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "DUPLICATE_CHAT"
    assert res.json()["error"]["details"] == {"chatId": chat_id}


async def test_group_requires_name(client, users):
    res = await client.post(
        "/v1/chats", json={"type": "group", "memberIds": [users["bob"]]}, headers=auth(users["alice"])
    )
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_PAYLOAD"


async def test_members_endpoints(client, users, group_chat):
    res = await client.get(f"/v1/chats/{group_chat.id}/members", headers=auth(users["bob"]))
    assert res.status_code == 200
    assert {m["userId"] for m in res.json()} == {users["alice"], users["bob"], users["carol"]}

    res = await client.get(f"/v1/chats/{group_chat.id}/members", headers=auth(users["dave"]))
    assert res.status_code == 403

    res = await client.post(
        f"/v1/chats/{group_chat.id}/members", json={"memberIds": [users["dave"]]}, headers=auth(users["bob"])
    )
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "NOT_CHAT_ADMIN"

    res = await client.post(
        f"/v1/chats/{group_chat.id}/members", json={"memberIds": [users["dave"]]}, headers=auth(users["alice"])
    )
    assert res.json() == {"addedMembers": [users["dave"]]}

    res = await client.delete(f"/v1/chats/{group_chat.id}/members/{users['dave']}", headers=auth(users["dave"]))
    assert res.status_code == 204


async def test_send_history_and_status(client, users, private_chat):
    for text in ("first", "second"):
        res = await client.post(
            f"/v1/chats/{private_chat.id}/messages", json={"content": text}, headers=auth(users["alice"])
        )
        assert res.status_code == 201
        assert res.json()["status"] == "sent"
    last_id = res.json()["id"]

    res = await client.get(f"/v1/chats/{private_chat.id}/messages", headers=auth(users["bob"]))
    assert res.status_code == 200
    assert [m["content"] for m in res.json()["messages"]] == ["first", "second"]

    res = await client.get(f"/v1/chats/{private_chat.id}/messages", headers=auth(users["carol"]))
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "NOT_MEMBER"

    res = await client.get(f"/v1/chats/{private_chat.id}/unread-count", headers=auth(users["bob"]))
    assert res.json() == {"chatId": private_chat.id, "unreadCount": 2}

    res = await client.patch(f"/v1/messages/{last_id}/status", json={"status": "read"}, headers=auth(users["bob"]))
    assert res.status_code == 200
    assert res.json()["status"] == "read"
    assert res.json()["read"] == 1

    res = await client.patch(f"/v1/messages/{last_id}/status", json={"status": "read"}, headers=auth(users["alice"]))
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "NOT_RECIPIENT"

    res = await client.get(f"/v1/chats/{private_chat.id}/unread-count", headers=auth(users["bob"]))
    assert res.json()["unreadCount"] == 1

    res = await client.get(f"/v1/messages/{last_id}/status", headers=auth(users["carol"]))
    assert res.status_code == 403

    res = await client.get("/v1/messages/9999/status", headers=auth(users["alice"]))
    assert res.status_code == 404


async def test_read_up_to_and_chat_list(client, services, users, private_chat):
    ids = []
    for text in ("a", "b", "c"):
        payload = await services.delivery.send(private_chat.id, users["alice"], text)
        ids.append(payload["id"])

    res = await client.get("/v1/chats", headers=auth(users["bob"]))
    [chat] = res.json()
    assert chat["unreadCount"] == 3
    assert chat["lastMessagePreview"] == "c"

    res = await client.post(f"/v1/chats/{private_chat.id}/read", json={"messageId": ids[1]}, headers=auth(users["bob"]))
    assert res.json() == {"messageIds": ids[:2]}

    res = await client.get("/v1/chats", headers=auth(users["bob"]))
    assert res.json()[0]["unreadCount"] == 1


async def test_offline_notifications_over_http(client, services, users, private_chat):
    payload = await services.delivery.send(private_chat.id, users["alice"], "are you there?")

    res = await client.get("/v1/notifications/count", headers=auth(users["bob"]))
    assert res.json() == {"totalCount": 1, "unreadCount": 1}

    res = await client.get("/v1/notifications/unread", headers=auth(users["bob"]))
    [notification] = res.json()
    assert notification["data"]["messageId"] == payload["id"]

    res = await client.patch(
        "/v1/notifications/read-multiple", json={"notificationIds": [notification["id"]]}, headers=auth(users["bob"])
    )
    assert res.json() == {"updatedCount": 1}

    # 알림 확인이 곧 전달 확인
    res = await client.get(f"/v1/messages/{payload['id']}/status", headers=auth(users["alice"]))
    assert res.json()["status"] == "delivered"

    res = await client.get("/v1/notifications", params={"isRead": "true"}, headers=auth(users["bob"]))
    assert res.json()["count"] == 1

    res = await client.delete("/v1/notifications/read", headers=auth(users["bob"]))
    assert res.json() == {"deletedCount": 1}


async def test_notification_single_read_and_delete(client, services, users, private_chat):
    await services.delivery.send(private_chat.id, users["alice"], "one")
    await services.delivery.send(private_chat.id, users["alice"], "two")
    [first, second] = await services.notifications.list(users["bob"])

    res = await client.patch(f"/v1/notifications/{first.id}/read", headers=auth(users["bob"]))
    assert res.status_code == 200
    assert res.json()["isRead"] is True

    res = await client.patch(f"/v1/notifications/{first.id}/read", headers=auth(users["alice"]))
    assert res.status_code == 404

    res = await client.patch("/v1/notifications/read-all", headers=auth(users["bob"]))
    assert res.json() == {"updatedCount": 1}

    res = await client.delete(f"/v1/notifications/{second.id}", headers=auth(users["bob"]))
    assert res.status_code == 204
    res = await client.delete(f"/v1/notifications/{second.id}", headers=auth(users["bob"]))
    assert res.status_code == 404


async def test_online_users(client, users, connect):
    await connect(users["alice"])
    await connect(users["bob"])

    res = await client.get("/v1/users/online", headers=auth(users["carol"]))
    assert res.json() == {"userIds": sorted([users["alice"], users["bob"]]), "count": 2}
