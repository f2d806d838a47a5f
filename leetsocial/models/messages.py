from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint, func
from . import Base, utcnow

MESSAGE_TYPES = ('text', 'image', 'file', 'code', 'system')
DELETED_PLACEHOLDER = '[Message deleted]'


class Message(Base):
    __tablename__ = 'room_messages'
    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, ForeignKey('chat_rooms.id', ondelete='CASCADE'), index=True, nullable=False)
    sender_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(10), default='text', nullable=False)
    file_url = Column(String(500), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    mime_type = Column(String(100), nullable=True)
    thumbnail_url = Column(String(500), nullable=True)
    code_language = Column(String(50), nullable=True)
    reply_to_id = Column(Integer, ForeignKey('room_messages.id', ondelete='SET NULL'), nullable=True)
    is_edited = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    is_pinned = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    edited_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Reaction(Base):
    __tablename__ = 'message_reactions'
    id = Column(Integer, primary_key=True)
    message_id = Column(Integer, ForeignKey('room_messages.id', ondelete='CASCADE'), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'emoji', name='uix_reaction'),
    )


class ReadReceipt(Base):
    __tablename__ = 'read_receipts'
    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, ForeignKey('chat_rooms.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    message_id = Column(Integer, ForeignKey('room_messages.id', ondelete='SET NULL'), nullable=True)
    read_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    __table_args__ = (
        UniqueConstraint('room_id', 'user_id', name='uix_read_receipt'),
    )
