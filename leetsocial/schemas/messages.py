from pydantic import BaseModel, Field
from typing import List, Optional

class DirectRoomIn(BaseModel):
    user_id: int = Field(gt=0)

class GroupRoomIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    member_ids: List[int] = Field(default_factory=list, max_length=99)
    description: Optional[str] = Field(default=None, max_length=500)

class MemberIn(BaseModel):
    user_id: int = Field(gt=0)

class ReadIn(BaseModel):
    message_id: Optional[int] = Field(default=None, gt=0)
