import time
from abc import ABC, abstractmethod
from typing import Optional
from sqlmodel import Session, select
from relay.models import ChatSession

def get_time_millis():
    return round(time.time() * 1000)

class SessionAlreadyExists(Exception):
    def __init__(self, session_id: str):
        super().__init__(f"chat session {session_id} already exists")
        self.session_id = session_id

class SessionStore(ABC):
    """
    Key-based read/write access to durable session metadata.

    The relay only ever calls end_session; the HTTP layer creates sessions
    up front so a volunteer assignment can be recorded.
    """

    @abstractmethod
    def create_session(self, session_id: str, volunteer_id: Optional[str] = None) -> ChatSession:
        raise NotImplementedError

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[ChatSession]:
        raise NotImplementedError

    @abstractmethod
    def end_session(self, session_id: str) -> None:
        raise NotImplementedError

class SQLSessionStore(SessionStore):
    def __init__(self, pg_engine):
        self.pg_engine = pg_engine

    def create_session(self, session_id: str, volunteer_id: Optional[str] = None) -> ChatSession:
        with Session(self.pg_engine) as session:
            existing = session.exec(select(ChatSession).where(ChatSession.id == session_id)).first()
            if existing is not None: raise SessionAlreadyExists(session_id)

            chat_session = ChatSession(
                id=session_id,
                volunteer_id=volunteer_id,
                created_at=get_time_millis(),
            )
            session.add(chat_session)
            session.commit()
            session.refresh(chat_session)
            return chat_session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with Session(self.pg_engine) as session:
            return session.exec(select(ChatSession).where(ChatSession.id == session_id)).first()

    def end_session(self, session_id: str) -> None:
        now = get_time_millis()
        with Session(self.pg_engine) as session:
            chat_session = session.exec(select(ChatSession).where(ChatSession.id == session_id)).first()
            # sessions joined lazily over the socket have no row yet
            if chat_session is None:
                chat_session = ChatSession(id=session_id, created_at=now)
            if not chat_session.is_active and chat_session.ended_at is not None:
                return
            chat_session.is_active = False
            chat_session.ended_at = now

            session.add(chat_session)
            session.commit()
