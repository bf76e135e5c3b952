from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------
# User Schemas
# ---------------------------
class UserOut(BaseModel):
    id: int
    worldcoin_id: str
    email: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------
# Session Schemas
# ---------------------------
class SessionEnsure(BaseModel):
    session_id: Optional[int] = Field(None, examples=[42])


class SessionOut(BaseModel):
    id: int
    user_id: int
    started_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------
# Message Schemas
# ---------------------------
class MessageCreate(BaseModel):
    sender: Literal["user", "ai"] = Field(..., examples=["user"])
    content: str = Field(..., examples=["We argue about bedtime."])


class MessageOut(MessageCreate):
    id: int
    session_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------
# Chat Schemas
# ---------------------------
class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "ai", "system"] = Field(..., examples=["user"])
    content: str = Field(..., examples=["We argue a lot about parenting our 5-year-old."])


class ChatData(BaseModel):
    context: Optional[str] = Field("", examples=["Two kids, ages 5 and 8"])


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(..., min_length=1)
    data: Optional[ChatData] = None


class TurnRequest(BaseModel):
    session_id: Optional[int] = None
    context: str = ""
    transcript: List[ChatTurn] = Field(default_factory=list)
    message: str = Field(..., min_length=1, examples=["We argue about bedtime."])
