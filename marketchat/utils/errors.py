from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for every error surfaced to a caller."""

    kind = "chat_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.kind, "message": self.message}


class ValidationError(ChatError):

    kind = "validation_error"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class AuthenticationError(ChatError):

    kind = "authentication_error"
    status_code = 401


class NotFoundError(ChatError):

    kind = "not_found"
    status_code = 404


class NotParticipantError(ChatError):

    kind = "not_participant"
    status_code = 403


class NotOwnerError(ChatError):

    kind = "not_owner"
    status_code = 403


class SelfConversationError(ChatError):

    kind = "self_conversation"
    status_code = 400


class SelfReadError(ChatError):

    kind = "self_read"
    status_code = 400


class UpstreamDependencyError(ChatError):

    kind = "upstream_dependency_error"
    status_code = 502


class RealtimeProtocolError(ChatError):

    kind = "realtime_protocol_error"
    status_code = 400
