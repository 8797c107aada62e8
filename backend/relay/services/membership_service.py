import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from sqlalchemy import delete, select, update
from sqlalchemy.orm import aliased

from relay.core.errors import (
    ChatNotFoundError,
    DuplicateChatError,
    InvalidPayloadError,
    NotChatAdminError,
    NotMemberError,
)
from relay.db.models.chat import CHAT_TYPES, Chat, ChatMember
from relay.db.models.user import User
from relay.repositories.membership_cache import MembershipCache

logger = logging.getLogger(__name__)


class ChatRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    NONE = "none"


class ChatMembershipIndex:
    """
    chat_id -> members/roles, read from the chat_members table through an
    optional Redis cache.

    Every membership write bumps an in-process generation and invalidates the
    cache before returning, and a read only repopulates the cache when no
    write happened while it was loading, so a caller always sees its own
    writes on the next read.
    """

    def __init__(self, session_factory, cache: Optional[MembershipCache] = None):
        self.session_factory = session_factory
        self.cache = cache
        self._generations: Dict[int, int] = {}
        # chats whose cache invalidation failed; bypass the cache until it succeeds
        self._dirty: Set[int] = set()

    # --- Reads ---

    async def _load_roles(self, chat_id: int) -> Dict[int, str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatMember.user_id, ChatMember.role).where(ChatMember.chat_id == chat_id)
            )
            return {user_id: role for user_id, role in result.all()}

    async def roles(self, chat_id: int) -> Dict[int, str]:
        if self.cache is not None:
            if chat_id in self._dirty and await self.cache.invalidate(chat_id):
                self._dirty.discard(chat_id)
            if chat_id not in self._dirty:
                cached = await self.cache.get(chat_id)
                if cached is not None:
                    return cached

        generation = self._generations.get(chat_id, 0)
        roles = await self._load_roles(chat_id)

        if (
            self.cache is not None
            and chat_id not in self._dirty
            and generation == self._generations.get(chat_id, 0)
        ):
            await self.cache.set(chat_id, roles)
        return roles

    async def members(self, chat_id: int) -> Set[int]:
        return set(await self.roles(chat_id))

    async def role(self, chat_id: int, user_id: int) -> ChatRole:
        role = (await self.roles(chat_id)).get(user_id)
        return ChatRole(role) if role else ChatRole.NONE

    async def is_member(self, chat_id: int, user_id: int) -> bool:
        return user_id in await self.roles(chat_id)

    async def require_member(self, chat_id: int, user_id: int):
        if not await self.is_member(chat_id, user_id):
            raise NotMemberError("Access denied to this chat", details={"chatId": chat_id})

    async def get_chat(self, chat_id: int) -> Chat:
        async with self.session_factory() as db:
            chat = await db.get(Chat, chat_id)
        if chat is None:
            raise ChatNotFoundError(details={"chatId": chat_id})
        return chat

    async def list_member_details(self, chat_id: int) -> List[dict]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User, ChatMember)
                .join(ChatMember, ChatMember.user_id == User.id)
                .where(ChatMember.chat_id == chat_id)
                .order_by(ChatMember.joined_at.asc(), User.id.asc())
            )
            rows = result.all()
        return [
            {
                "user_id": user.id,
                "username": user.username,
                "full_name": user.full_name,
                "role": member.role,
                "joined_at": member.joined_at,
                "is_online": user.is_online,
                "last_seen": user.last_seen,
            }
            for user, member in rows
        ]

    async def list_chats_for_user(self, user_id: int) -> List[Chat]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Chat)
                .join(ChatMember, ChatMember.chat_id == Chat.id)
                .where(ChatMember.user_id == user_id)
                .order_by(Chat.last_activity.desc(), Chat.id.desc())
            )
            return list(result.scalars().all())

    # --- Writes ---

    async def invalidate(self, chat_id: int):
        self._generations[chat_id] = self._generations.get(chat_id, 0) + 1
        if self.cache is not None and not await self.cache.invalidate(chat_id):
            self._dirty.add(chat_id)

    async def _ensure_users_exist(self, db, user_ids: Set[int]):
        if not user_ids:
            return
        result = await db.execute(select(User.id).where(User.id.in_(sorted(user_ids))))
        missing = user_ids - set(result.scalars().all())
        if missing:
            raise InvalidPayloadError("Unknown users", details={"userIds": sorted(missing)})

    async def find_private_chat(self, user_a: int, user_b: int) -> Optional[int]:
        m1, m2 = aliased(ChatMember), aliased(ChatMember)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Chat.id)
                .join(m1, m1.chat_id == Chat.id)
                .join(m2, m2.chat_id == Chat.id)
                .where(Chat.type == "private", m1.user_id == user_a, m2.user_id == user_b)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_chat(self, creator_id: int, type: str, name: Optional[str], member_ids: List[int]) -> Chat:
        others = {uid for uid in member_ids if uid != creator_id}

        if type not in CHAT_TYPES:
            raise InvalidPayloadError("Invalid chat type")
        if type == "group" and not (name and name.strip()):
            raise InvalidPayloadError("Group name is required")
        if type == "private":
            if len(others) != 1:
                raise InvalidPayloadError("Private chat requires exactly one other member")
            existing = await self.find_private_chat(creator_id, next(iter(others)))
            if existing is not None:
                raise DuplicateChatError(existing)

        async with self.session_factory() as db:
            await self._ensure_users_exist(db, others | {creator_id})

            chat = Chat(type=type, name=name.strip() if name else None, created_by=creator_id)
            db.add(chat)
            await db.flush()

            db.add(ChatMember(chat_id=chat.id, user_id=creator_id, role=ChatRole.ADMIN.value))
            for uid in sorted(others):
                db.add(ChatMember(chat_id=chat.id, user_id=uid, role=ChatRole.MEMBER.value))
            await db.commit()
            await db.refresh(chat)

        await self.invalidate(chat.id)
        logger.info(f"[Membership] chat {chat.id} ({type}) created by {creator_id} with {len(others) + 1} members")
        return chat

    async def _require_admin(self, chat: Chat, actor_id: int):
        if chat.created_by == actor_id:
            return
        if await self.role(chat.id, actor_id) != ChatRole.ADMIN:
            raise NotChatAdminError(details={"chatId": chat.id})

    async def add_members(self, chat_id: int, actor_id: int, user_ids: List[int]) -> List[int]:
        chat = await self.get_chat(chat_id)
        await self._require_admin(chat, actor_id)
        if chat.type == "private":
            raise InvalidPayloadError("Cannot add members to a private chat")

        existing = await self._load_roles(chat_id)
        to_add = sorted({uid for uid in user_ids if uid not in existing})
        if not to_add:
            return []

        async with self.session_factory() as db:
            await self._ensure_users_exist(db, set(to_add))
            for uid in to_add:
                db.add(ChatMember(chat_id=chat_id, user_id=uid, role=ChatRole.MEMBER.value))
            await db.commit()

        await self.invalidate(chat_id)
        logger.info(f"[Membership] chat {chat_id}: {actor_id} added {to_add}")
        return to_add

    async def remove_member(self, chat_id: int, actor_id: int, user_id: int) -> bool:
        chat = await self.get_chat(chat_id)
        if actor_id != user_id:
            await self._require_admin(chat, actor_id)

        async with self.session_factory() as db:
            result = await db.execute(
                delete(ChatMember).where(ChatMember.chat_id == chat_id, ChatMember.user_id == user_id)
            )
            await db.commit()

        await self.invalidate(chat_id)
        removed = result.rowcount > 0
        if removed:
            logger.info(f"[Membership] chat {chat_id}: {actor_id} removed {user_id}")
        return removed

    async def touch_activity(self, chat_id: int, preview: Optional[str], at):
        async with self.session_factory() as db:
            await db.execute(
                update(Chat)
                .where(Chat.id == chat_id, Chat.last_activity <= at)
                .values(last_activity=at, last_message_preview=preview)
            )
            await db.commit()
