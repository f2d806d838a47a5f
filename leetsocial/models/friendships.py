from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, func
from . import Base, utcnow

PENDING = 'pending'
ACCEPTED = 'accepted'
REJECTED = 'rejected'
BLOCKED = 'blocked'
STATUSES = (PENDING, ACCEPTED, REJECTED, BLOCKED)


class Friendship(Base):
    __tablename__ = 'friendships'
    id = Column(Integer, primary_key=True)
    requester_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    addressee_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    # unordered pair, one edge per pair whoever asked first
    user_low_id = Column(Integer, nullable=False)
    user_high_id = Column(Integer, nullable=False)
    status = Column(String(20), default=PENDING, nullable=False)
    requested_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    __table_args__ = (
        UniqueConstraint('user_low_id', 'user_high_id', name='uix_friendship_pair'),
    )

    def other_user(self, user_id: int) -> int:
        return self.addressee_id if self.requester_id == user_id else self.requester_id
