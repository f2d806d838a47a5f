from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint, func
from . import Base, utcnow

DIRECT = 'direct'
GROUP = 'group'


class Room(Base):
    __tablename__ = 'chat_rooms'
    id = Column(Integer, primary_key=True)
    type = Column(String(10), nullable=False)
    name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    avatar_url = Column(String(500), nullable=True)
    created_by = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    # "<low>:<high>" for direct rooms so a pair never gets two
    direct_key = Column(String(64), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)


class RoomMember(Base):
    __tablename__ = 'room_members'
    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, ForeignKey('chat_rooms.id', ondelete='CASCADE'), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    role = Column(String(10), default='member', nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    unread_count = Column(Integer, default=0, nullable=False)
    is_pinned = Column(Boolean, default=False, nullable=False)
    is_muted = Column(Boolean, default=False, nullable=False)
    __table_args__ = (
        UniqueConstraint('room_id', 'user_id', name='uix_room_member'),
    )
