from sqlmodel import SQLModel, Field
from typing import Optional

class ChatSession(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    volunteer_id: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: float # utc timestamp in millis
    ended_at: Optional[float] = Field(default=None)
