import json
from dataclasses import dataclass, field
from typing import Optional

from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone


class MessageType:
    PING = "ping"
    PONG = "pong"
    INIT_CHAT = "init_chat"
    MESSAGE = "message"
    TYPING = "typing"
    AUTH = "auth"
    AUTH_RESPONSE = "auth_response"
    SESSION = "session"
    SYSTEM = "system"
    ERROR = "error"


INBOUND_TYPES = {
    MessageType.PING,
    MessageType.INIT_CHAT,
    MessageType.MESSAGE,
    MessageType.TYPING,
    MessageType.AUTH,
}

INVALID_FORMAT = "Invalid message format"
INVALID_DATA = "Invalid message data"


class ProtocolError(ValueError):
    pass


def now_iso() -> str:
    return timezone.now().isoformat()


@dataclass
class Envelope:
    """A single frame on the chat socket, in either direction."""

    type: str
    payload: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    sent_at: Optional[float] = None
    client_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.type, "payload": self.payload, "timestamp": self.timestamp}
        if self.sent_at is not None:
            data["sentAt"] = self.sent_at
        if self.client_id is not None:
            data["clientId"] = self.client_id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=DjangoJSONEncoder)

    @classmethod
    def from_dict(cls, data: dict) -> "Envelope":
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise ProtocolError(INVALID_FORMAT)
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ProtocolError(INVALID_DATA)
        return cls(
            type=data["type"],
            payload=payload,
            timestamp=data.get("timestamp") or now_iso(),
            sent_at=data.get("sentAt"),
            client_id=data.get("clientId"),
        )

    @classmethod
    def from_json(cls, raw) -> "Envelope":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            raise ProtocolError(INVALID_FORMAT)
        return cls.from_dict(data)


def parse_inbound(raw) -> Envelope:
    envelope = Envelope.from_json(raw)
    if envelope.type not in INBOUND_TYPES:
        raise ProtocolError(f"Unknown message type '{envelope.type}'")
    return envelope


def error(message: str) -> Envelope:
    return Envelope(MessageType.ERROR, {"message": message})


def system(message: str) -> Envelope:
    return Envelope(MessageType.SYSTEM, {"message": message})


def typing(session_id, is_typing: bool, role: str) -> Envelope:
    return Envelope(MessageType.TYPING, {"sessionId": str(session_id), "isTyping": is_typing, "role": role})
