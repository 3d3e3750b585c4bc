import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Optional

import websockets
from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone
from websockets.exceptions import ConnectionClosed

from chat.models import ApiKey, ChatMessage, ChatSession, WidgetConfig
from chat.serializers import ChatMessageSerializer, ChatSessionSerializer, IncomingChatMessageSerializer
from chat.services.pipeline import AIResponseError, UserBannedError, ingest, respond, start_session
from . import protocol
from .protocol import Envelope, MessageType, ProtocolError

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60
SWEEP_INTERVAL_SECONDS = 30 * 60


@dataclass
class Connection:
    websocket: object
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    user: object = None
    received: deque = field(default_factory=deque)


# =============================================================================
# Database access, run off the event loop
# =============================================================================


@sync_to_async
def open_session(widget_id, session_id=None, visitor_id=None, user=None) -> dict:
    """Resume `session_id` when it exists, otherwise start a session on the widget."""
    welcome = None
    session = None
    if session_id:
        session = ChatSession.objects.filter(id=session_id).first()
    if session is None:
        widget = None
        if widget_id:
            widget = WidgetConfig.objects.filter(id=widget_id, is_active=True).first()
            if widget is None:
                raise LookupError("Widget not found")
        session, welcome = start_session(widget, user=user, visitor_id=visitor_id, metadata={"transport": "websocket"})
    return {
        "session": ChatSessionSerializer(session).data,
        "messages": ChatMessageSerializer(session.messages.all(), many=True).data,
        "welcomeMessage": ChatMessageSerializer(welcome).data if welcome else None,
    }


@sync_to_async
def store_message(session_id, content, attachments) -> tuple[ChatMessage, dict]:
    session = ChatSession.objects.select_related("widget__context_rule", "user").get(id=session_id)
    message = ingest(session, content, attachments)
    return message, ChatMessageSerializer(message).data


# each reply runs on its own worker thread
@sync_to_async(thread_sensitive=False)
def generate_reply(message: ChatMessage) -> dict:
    close_old_connections()
    try:
        result = respond(message.session, message)
        return {
            "message": ChatMessageSerializer(result.assistant_message).data,
            "model": result.model,
            "cached": result.cached,
            "status": result.status,
        }
    finally:
        close_old_connections()


@sync_to_async
def authenticate(token):
    api_key = ApiKey.objects.select_related("owner").filter(key=token).first()
    if api_key is None or not api_key.is_usable:
        return None, []
    api_key.last_used_at = timezone.now()
    api_key.save(update_fields=["last_used_at"])
    return api_key.owner, api_key.permissions


# =============================================================================
# Server
# =============================================================================


class ChatServer:
    """
    WebSocket front end for chat sessions. Each connection joins the room of the session it
    opened, and every frame for that session is broadcast to the room.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        rate_limit_per_minute: int | None = None,
        heartbeat_seconds: int | None = None,
        session_idle_minutes: int | None = None,
    ):
        self.host = host or settings.CHAT_WS_HOST
        self.port = port or settings.CHAT_WS_PORT
        self.rate_limit_per_minute = rate_limit_per_minute or settings.CHAT_WS_RATE_LIMIT_PER_MINUTE
        self.heartbeat_seconds = heartbeat_seconds or settings.CHAT_WS_HEARTBEAT_SECONDS
        self.session_idle_seconds = (session_idle_minutes or settings.CHAT_WS_SESSION_IDLE_MINUTES) * 60
        self.connections: dict[str, Connection] = {}
        self.rooms: dict[str, set[str]] = {}
        self.session_activity: dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Connections and rooms
    # -------------------------------------------------------------------------

    def register(self, websocket) -> Connection:
        connection = Connection(websocket)
        self.connections[connection.id] = connection
        logger.info(f"WebSocket client {connection.id} connected ({len(self.connections)} open)")
        return connection

    def unregister(self, connection: Connection):
        self.leave(connection)
        self.connections.pop(connection.id, None)
        logger.info(f"WebSocket client {connection.id} disconnected ({len(self.connections)} open)")

    def join(self, connection: Connection, session_id: str):
        self.leave(connection)
        connection.session_id = session_id
        self.rooms.setdefault(session_id, set()).add(connection.id)
        self.session_activity[session_id] = time.monotonic()

    def leave(self, connection: Connection):
        if connection.session_id is None:
            return
        room = self.rooms.get(connection.session_id)
        if room is not None:
            room.discard(connection.id)
            if not room:
                del self.rooms[connection.session_id]
        connection.session_id = None

    def touch_session(self, session_id: str):
        self.session_activity[session_id] = time.monotonic()

    def sweep_idle_sessions(self, now: float | None = None) -> list[str]:
        """Forget sessions with no activity for longer than the idle limit."""
        now = time.monotonic() if now is None else now
        expired = [sid for sid, seen in self.session_activity.items() if now - seen > self.session_idle_seconds]
        for session_id in expired:
            del self.session_activity[session_id]
            for connection_id in self.rooms.pop(session_id, set()):
                connection = self.connections.get(connection_id)
                if connection is not None:
                    connection.session_id = None
        if expired:
            logger.info(f"Evicted {len(expired)} idle chat sessions")
        return expired

    def allow(self, connection: Connection, now: float | None = None) -> bool:
        """Sliding one-minute window over the frames received on the connection."""
        now = time.monotonic() if now is None else now
        while connection.received and now - connection.received[0] >= RATE_WINDOW_SECONDS:
            connection.received.popleft()
        if len(connection.received) >= self.rate_limit_per_minute:
            return False
        connection.received.append(now)
        return True

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send(self, connection: Connection, envelope: Envelope):
        try:
            await connection.websocket.send(envelope.to_json())
        except ConnectionClosed:
            logger.info(f"Dropping frame for closed client {connection.id}")

    async def broadcast(self, session_id: str, envelope: Envelope, exclude: Connection | None = None):
        for connection_id in list(self.rooms.get(session_id, ())):
            connection = self.connections.get(connection_id)
            if connection is None or connection is exclude:
                continue
            await self.send(connection, envelope)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def handler(self, websocket):
        connection = self.register(websocket)
        try:
            await self.send(connection, protocol.system("Connected to WebSocket server"))
            async for raw in websocket:
                await self.dispatch(connection, raw)
        except ConnectionClosed as exc:
            logger.info(f"WebSocket client {connection.id} closed abnormally: {exc}")
        finally:
            self.unregister(connection)

    async def dispatch(self, connection: Connection, raw):
        try:
            envelope = protocol.parse_inbound(raw)
        except ProtocolError as exc:
            await self.send(connection, protocol.error(str(exc)))
            return

        if envelope.type != MessageType.PING and not self.allow(connection):
            logger.warning(f"Rate limit exceeded for client {connection.id}")
            await self.send(connection, protocol.error("Rate limit exceeded"))
            return

        match envelope.type:
            case MessageType.PING:
                await self.send(connection, Envelope(MessageType.PONG, sent_at=envelope.sent_at))
            case MessageType.AUTH:
                await self.handle_auth(connection, envelope)
            case MessageType.INIT_CHAT:
                await self.handle_init_chat(connection, envelope)
            case MessageType.MESSAGE:
                await self.handle_message(connection, envelope)
            case MessageType.TYPING:
                await self.handle_typing(connection, envelope)

    async def handle_auth(self, connection: Connection, envelope: Envelope):
        user, permissions = await authenticate(envelope.payload.get("token"))
        if user is None:
            await self.send(
                connection, Envelope(MessageType.AUTH_RESPONSE, {"success": False, "message": "Invalid API key"})
            )
            return
        connection.user = user
        await self.send(
            connection,
            Envelope(MessageType.AUTH_RESPONSE, {"success": True, "userId": user.pk, "permissions": permissions}),
        )

    async def handle_init_chat(self, connection: Connection, envelope: Envelope):
        payload = envelope.payload
        try:
            opened = await open_session(
                payload.get("widgetId"),
                session_id=payload.get("sessionId"),
                visitor_id=payload.get("visitorId"),
                user=connection.user,
            )
        except LookupError as exc:
            await self.send(connection, protocol.error(str(exc)))
            return
        except Exception:
            logger.exception(f"Failed to open chat session for client {connection.id}")
            await self.send(connection, protocol.error(protocol.INVALID_DATA))
            return
        self.join(connection, str(opened["session"]["id"]))
        await self.send(connection, Envelope(MessageType.SESSION, opened))

    async def handle_message(self, connection: Connection, envelope: Envelope):
        session_id = connection.session_id
        if session_id is None:
            await self.send(connection, protocol.error("Session not found"))
            return
        serializer = IncomingChatMessageSerializer(data=envelope.payload)
        if not serializer.is_valid():
            await self.send(connection, protocol.error(protocol.INVALID_DATA))
            return
        payload = serializer.validated_data
        self.touch_session(session_id)

        try:
            message, message_data = await store_message(
                session_id, payload.content, [asdict(attachment) for attachment in payload.attachments]
            )
        except UserBannedError:
            await self.send(connection, protocol.error("You have been banned from this chat"))
            return
        except ChatSession.DoesNotExist:
            await self.send(connection, protocol.error("Session not found"))
            return
        await self.broadcast(session_id, Envelope(MessageType.MESSAGE, message_data))

        await self.broadcast(session_id, protocol.typing(session_id, True, ChatMessage.Role.ASSISTANT))
        try:
            reply = await generate_reply(message)
        except AIResponseError:
            await self.broadcast(session_id, protocol.error("Failed to generate AI response"))
        except Exception:
            logger.exception(f"Realtime reply failed for session {session_id}")
            await self.broadcast(session_id, protocol.error("Failed to process message"))
        else:
            await self.broadcast(session_id, Envelope(MessageType.MESSAGE, reply))
        finally:
            await self.broadcast(session_id, protocol.typing(session_id, False, ChatMessage.Role.ASSISTANT))

    async def handle_typing(self, connection: Connection, envelope: Envelope):
        if connection.session_id is None:
            await self.send(connection, protocol.error("Session not found"))
            return
        is_typing = bool(envelope.payload.get("isTyping"))
        await self.broadcast(
            connection.session_id,
            protocol.typing(connection.session_id, is_typing, ChatMessage.Role.USER),
            exclude=connection,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def sweep_forever(self):
        while True:
            await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
            self.sweep_idle_sessions()

    async def serve_forever(self):
        sweeper = asyncio.create_task(self.sweep_forever())
        try:
            # the library pings every heartbeat interval and closes peers that stop answering
            async with websockets.serve(
                self.handler,
                self.host,
                self.port,
                ping_interval=self.heartbeat_seconds,
                ping_timeout=self.heartbeat_seconds,
            ) as server:
                logger.info(f"Chat WebSocket server listening on ws://{self.host}:{self.port}")
                await server.serve_forever()
        finally:
            sweeper.cancel()
