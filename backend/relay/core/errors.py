class RelayError(Exception):
    """Base class for every error the delivery core surfaces to a client."""

    code = "RELAY_ERROR"
    status_code = 400

    def __init__(self, message=None, details=None):
        self.message = message or self.__class__.__doc__ or "Relay error"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class AuthenticationError(RelayError):
    """Missing or invalid bearer token."""

    code = "UNAUTHORIZED"
    status_code = 401


class NotMemberError(RelayError):
    """User is not a member of this chat."""

    code = "NOT_MEMBER"
    status_code = 403


class NotRecipientError(RelayError):
    """User is not a recipient of this message."""

    code = "NOT_RECIPIENT"
    status_code = 403


class NotChatAdminError(RelayError):
    """Admin access required."""

    code = "NOT_CHAT_ADMIN"
    status_code = 403


class ChatNotFoundError(RelayError):
    """Chat not found."""

    code = "CHAT_NOT_FOUND"
    status_code = 404


class MessageNotFoundError(RelayError):
    """Message not found."""

    code = "MESSAGE_NOT_FOUND"
    status_code = 404


class NotificationNotFoundError(RelayError):
    """Notification not found."""

    code = "NOTIFICATION_NOT_FOUND"
    status_code = 404


class InvalidPayloadError(RelayError):
    """Invalid request payload."""

    code = "INVALID_PAYLOAD"
    status_code = 400


class DuplicateChatError(RelayError):
    """Private chat already exists."""

    code = "DUPLICATE_CHAT"
    status_code = 409

    def __init__(self, chat_id: int):
        super().__init__(details={"chatId": chat_id})
        self.chat_id = chat_id


class TransientStoreError(RelayError):
    """Storage is temporarily unavailable, please retry."""

    code = "STORE_UNAVAILABLE"
    status_code = 503
