import logging
from contextlib import contextmanager
from typing import List, Optional

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parental.database.db import get_db
from parental.database.models import ChatSession, Message, User
from parental.errors import StoreError

logger = logging.getLogger("parental.store")


class ConversationStore:
    """Users, sessions and messages, one round-trip per call.

    Nothing here composes calls into a transaction: each write commits on its
    own and any database failure is rolled back and raised as ``StoreError``.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _round_trip(self, operation: str):
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("%s failed: %s", operation, exc)
            raise StoreError(f"{operation} failed") from exc

    def upsert_user(self, external_id: str, email: Optional[str] = None) -> User:
        with self._round_trip("upsert_user"):
            user = self.db.query(User).filter(User.worldcoin_id == external_id).first()
            if user is None:
                user = User(worldcoin_id=external_id, email=email)
                self.db.add(user)
            elif email is not None:
                user.email = email
            self.db.commit()
            self.db.refresh(user)
            return user

    def create_session(self, user_id: int) -> ChatSession:
        with self._round_trip("create_session"):
            chat_session = ChatSession(user_id=user_id)
            self.db.add(chat_session)
            self.db.commit()
            self.db.refresh(chat_session)
            return chat_session

    def get_session(self, session_id: int) -> Optional[ChatSession]:
        with self._round_trip("get_session"):
            return self.db.get(ChatSession, session_id)

    def ensure_session(self, user_id: int, session_id: Optional[int] = None) -> int:
        """Return ``session_id`` if the user owns it, else the id of a fresh session."""
        if session_id is not None:
            existing = self.get_session(session_id)
            if existing is not None and existing.user_id == user_id:
                return existing.id
            logger.info("Session %s not usable for user %s, starting a new one", session_id, user_id)
        return self.create_session(user_id).id

    def insert_message(self, session_id: int, sender: str, content: str) -> Message:
        with self._round_trip("insert_message"):
            message = Message(session_id=session_id, sender=sender, content=content)
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)
            return message

    def list_sessions(self, user_id: int) -> List[ChatSession]:
        # newest first
        with self._round_trip("list_sessions"):
            return (
                self.db.query(ChatSession)
                .filter(ChatSession.user_id == user_id)
                .order_by(ChatSession.started_at.desc(), ChatSession.id.desc())
                .all()
            )

    def list_messages(self, session_id: int) -> List[Message]:
        # oldest first
        with self._round_trip("list_messages"):
            return (
                self.db.query(Message)
                .filter(Message.session_id == session_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .all()
            )


def get_store(db: Session = Depends(get_db)) -> ConversationStore:
    return ConversationStore(db)
