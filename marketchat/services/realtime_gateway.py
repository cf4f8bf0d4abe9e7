import json
import logging
from typing import Any, Dict, Iterable, Optional

from marketchat.services.conversation_service import ConversationService, serialize_summary
from marketchat.services.message_service import MessageService, serialize_message
from marketchat.utils.errors import ChatError, RealtimeProtocolError
from marketchat.utils.websocket_manager import Connection, ConnectionManager


logger = logging.getLogger(__name__)


class ChatNotifier:
    """Fans chat state changes out to live sessions.

    Shared by the realtime gateway and the HTTP routers so that a change
    produces the same events whichever surface triggered it.
    """

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager

    async def new_message(self, message: Dict[str, Any], conversation: Dict[str, Any], recipient_id: str, recipient_role: str) -> None:
        room = str(conversation["_id"])
        await self._manager.emit_to_room(room, "message:new", serialize_message(message))
        # the recipient may not have joined the room
        await self._manager.emit_to_user(recipient_id, "conversation:updated", {
            "conversation_id": room,
            "last_message": serialize_summary(conversation.get("last_message")),
            "unread_count": conversation["unread_count"][recipient_role],
        })
        await self._manager.emit_to_user(recipient_id, "unreadCount:changed", {})

    async def messages_read(self, conversation_id: str, messages: Iterable[Dict[str, Any]], reader_id: str) -> None:
        room = str(conversation_id)
        for message in messages:
            receipt = {
                "conversation_id": room,
                "message_id": str(message["_id"]),
                "read_at": message["read_at"].isoformat() if message.get("read_at") else None,
            }
            await self._manager.emit_to_room_and_user(room, message["sender_id"], "message:read", receipt)
        await self._manager.emit_to_user(reader_id, "unreadCount:changed", {})


class RealtimeSession:

    def __init__(self, user: Dict[str, Any], connection: Connection) -> None:
        self.user_id: str = user["id"]
        self.user_name: Optional[str] = user.get("name")
        self.avatar: Optional[str] = user.get("avatar")
        self.connection = connection


class RealtimeGateway:
    """Per-event protocol handler for identified realtime sessions."""

    def __init__(self, manager: ConnectionManager, conversations: ConversationService, messages: MessageService) -> None:
        self._manager = manager
        self._conversations = conversations
        self._messages = messages
        self._notifier = ChatNotifier(manager)
        self._handlers = {
            "conversation:join": self._join,
            "conversation:leave": self._leave,
            "message:send": self._send,
            "message:read": self._read,
            "typing:start": self._typing,
            "typing:stop": self._typing,
            "ping": self._ping,
        }

    async def connect(self, session: RealtimeSession) -> None:
        await self._manager.register(session.user_id, session.connection)

    async def disconnect(self, session: RealtimeSession) -> None:
        await self._manager.unregister(session.user_id, session.connection)

    async def handle(self, session: RealtimeSession, frame: Any) -> None:
        """Dispatch one inbound frame. Failures are reported to the sending
        connection as an `error` event; the session stays open."""
        event = None
        try:
            event, data = self._parse(frame)
            handler = self._handlers.get(event)
            if handler is None:
                raise RealtimeProtocolError(f"Unknown event: {event}")
            await handler(session, event, data)
        except ChatError as exc:
            logger.info("Event %s from %s rejected: %s", event, session.user_id, exc.message)
            await self._manager.emit_to_connection(session.connection, "error", {**exc.to_dict(), "event": event})
        except Exception:
            logger.exception("Event %s from %s failed", event, session.user_id)
            await self._manager.emit_to_connection(session.connection, "error", {
                "success": False,
                "error": "internal_error",
                "message": "The event could not be processed",
                "event": event,
            })

    def _parse(self, frame: Any) -> tuple[str, Dict[str, Any]]:
        if isinstance(frame, (str, bytes)):
            try:
                frame = json.loads(frame)
            except ValueError as exc:
                raise RealtimeProtocolError("Frame is not valid JSON") from exc
        if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
            raise RealtimeProtocolError("Frame must be an object with a string 'type'")
        data = frame.get("data") or {}
        if not isinstance(data, dict):
            raise RealtimeProtocolError("'data' must be an object")
        return frame["type"], data

    @staticmethod
    def _require(data: Dict[str, Any], key: str) -> str:
        value = data.get(key)
        if not value or not isinstance(value, str):
            raise RealtimeProtocolError(f"'{key}' is required")
        return value

    async def _join(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        conversation_id = self._require(data, "conversation_id")
        conversation, _ = await self._conversations.get_for_participant(conversation_id, session.user_id)
        room = str(conversation["_id"])
        self._manager.join(room, session.connection)
        await self._manager.emit_to_room(room, "user:joined", {
            "conversation_id": room,
            "user_id": session.user_id,
            "user_name": session.user_name,
        }, exclude=session.connection)

    async def _leave(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        room = self._require(data, "conversation_id")
        self._manager.leave(room, session.connection)
        await self._manager.emit_to_room(room, "user:left", {
            "conversation_id": room,
            "user_id": session.user_id,
            "user_name": session.user_name,
        })

    async def _send(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        message, conversation = await self._messages.send(session.user_id, data)
        await self._manager.emit_to_connection(session.connection, "message:sent", {
            "success": True,
            "message": serialize_message(message),
        })
        recipient_id, recipient_role = self._messages.recipient_of(conversation, session.user_id)
        await self._notifier.new_message(message, conversation, recipient_id, recipient_role)

    async def _read(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        message_id = self._require(data, "message_id")
        message, conversation, changed = await self._messages.mark_read(message_id, session.user_id)
        if changed:
            await self._notifier.messages_read(conversation["_id"], [message], session.user_id)

    async def _typing(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        room = self._require(data, "conversation_id")
        if not self._manager.in_room(room, session.connection):
            raise RealtimeProtocolError("Join the conversation before sending typing indicators")
        await self._manager.emit_to_room(room, event, {
            "conversation_id": room,
            "user_id": session.user_id,
            "user_name": session.user_name,
        }, exclude=session.connection)

    async def _ping(self, session: RealtimeSession, event: str, data: Dict[str, Any]) -> None:
        await self._manager.emit_to_connection(session.connection, "pong", {})
