from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, ForeignKey, Integer, Text

from .db import Base

# SQLite only autoincrements INTEGER primary keys
Identifier = BigInteger().with_variant(Integer, "sqlite")


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = 'users'
    id = Column(Identifier, primary_key=True, autoincrement=True)
    worldcoin_id = Column(Text, unique=True, nullable=False)
    email = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ChatSession(Base):
    __tablename__ = 'sessions'
    id = Column(Identifier, primary_key=True, autoincrement=True)
    user_id = Column(Identifier, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Message(Base):
    __tablename__ = 'messages'
    id = Column(Identifier, primary_key=True, autoincrement=True)
    session_id = Column(Identifier, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    sender = Column(Text, CheckConstraint("sender IN ('user','ai')"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
