"""Payloads of realtime gateway events (camelCase on the wire)."""
from pydantic import BaseModel, ConfigDict, Field
from typing import ClassVar, Literal, Optional


class EventIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    # field a bare (non-object) payload is bound to
    bare_field: ClassVar[str] = ''

    @classmethod
    def parse(cls, data):
        if not isinstance(data, dict) and cls.bare_field:
            data = {cls.bare_field: data}
        return cls.model_validate(data if data is not None else {})

class AuthenticateIn(EventIn):
    bare_field = 'token'
    token: str = Field(min_length=1)

class RoomIn(EventIn):
    bare_field = 'roomId'
    room_id: int = Field(alias='roomId', gt=0)

class SendMessageIn(EventIn):
    room_id: int = Field(alias='roomId', gt=0)
    content: Optional[str] = None
    type: str = 'text'
    reply_to_id: Optional[int] = Field(default=None, alias='replyToId', gt=0)
    file_url: Optional[str] = Field(default=None, alias='fileUrl', max_length=2048)
    file_name: Optional[str] = Field(default=None, alias='fileName', max_length=255)
    file_size: Optional[int] = Field(default=None, alias='fileSize', ge=0)
    mime_type: Optional[str] = Field(default=None, alias='mimeType', max_length=100)
    thumbnail_url: Optional[str] = Field(default=None, alias='thumbnailUrl', max_length=2048)
    code_language: Optional[str] = Field(default=None, alias='codeLanguage', max_length=50)

class MessageIn(EventIn):
    bare_field = 'messageId'
    message_id: int = Field(alias='messageId', gt=0)

class EditMessageIn(MessageIn):
    content: str

class PinMessageIn(MessageIn):
    pinned: bool = True

class ReactionIn(MessageIn):
    emoji: str = Field(min_length=1, max_length=32)

class MarkReadIn(RoomIn):
    message_id: Optional[int] = Field(default=None, alias='messageId', gt=0)

class StatusIn(EventIn):
    bare_field = 'status'
    status: Literal['online', 'away', 'busy']
