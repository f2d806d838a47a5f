from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from .users import UserBrief

class FriendRequestIn(BaseModel):
    addressee_id: int = Field(gt=0)

class FriendshipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    requester_id: int
    addressee_id: int
    status: str
    requested_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

class FriendRequestOut(FriendshipOut):
    requester: Optional[UserBrief] = None
    addressee: Optional[UserBrief] = None

class FriendOut(BaseModel):
    friendship_id: int
    since: Optional[datetime] = None
    user: UserBrief

class FriendshipStatusOut(BaseModel):
    status: str
    friendship_id: Optional[int] = None
    is_requester: bool = False
