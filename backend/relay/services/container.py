import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from relay.core.security import TokenVerifier
from relay.repositories.membership_cache import MembershipCache
from relay.services.delivery_service import DeliveryEngine
from relay.services.membership_service import ChatMembershipIndex
from relay.services.message_store import MessageStore
from relay.services.notification_service import NotificationService, NotificationSweeper
from relay.services.presence_service import PresenceService
from relay.services.receipt_service import ReceiptTracker
from relay.sockets.connection_hub import ConnectionHub
from relay.sockets.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one server process shares between the gateway and the HTTP routes."""

    session_factory: object
    token_verifier: TokenVerifier
    registry: PresenceRegistry
    hub: ConnectionHub
    presence: PresenceService
    membership: ChatMembershipIndex
    store: MessageStore
    receipts: ReceiptTracker
    notifications: NotificationService
    delivery: DeliveryEngine
    sweeper: NotificationSweeper


def build_services(session_factory, redis_client=None, token_verifier: Optional[TokenVerifier] = None) -> Services:
    registry = PresenceRegistry()
    hub = ConnectionHub(registry)
    cache = MembershipCache(redis_client) if redis_client is not None else None
    if cache is None:
        logger.info("[Services] membership cache disabled")

    membership = ChatMembershipIndex(session_factory, cache)
    store = MessageStore(session_factory, membership)
    receipts = ReceiptTracker(session_factory, membership)
    notifications = NotificationService(session_factory, registry, hub)

    return Services(
        session_factory=session_factory,
        token_verifier=token_verifier or TokenVerifier(),
        registry=registry,
        hub=hub,
        presence=PresenceService(registry, hub, session_factory),
        membership=membership,
        store=store,
        receipts=receipts,
        notifications=notifications,
        delivery=DeliveryEngine(store, membership, receipts, notifications, registry, hub),
        sweeper=NotificationSweeper(notifications),
    )


def get_services(request: Request) -> Services:
    """FastAPI Dependency: the process-wide service container."""
    return request.app.state.services
