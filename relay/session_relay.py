"""
Real-time relay between the two participants of an anonymous support chat.

A session pairs at most one "client" connection with at most one "volunteer"
connection. Every message is appended to the session log and pushed to
whichever of the two connections is live, the sender included. A connection
that joins, or joins again after a network blip, receives the whole log
before any new live message.

A connection handle is anything with an awaitable send_json(dict), e.g. a
starlette WebSocket. The relay never closes a handle itself.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import statsd

from relay.store import SessionStore, get_time_millis

logger = logging.getLogger(__name__)

CLIENT = "client"
VOLUNTEER = "volunteer"
ROLES = (CLIENT, VOLUNTEER)


class MalformedEvent(ValueError):
    pass


@dataclass(frozen=True)
class ChatMessage:
    id: str
    session_id: str
    content: str
    timestamp: int # utc millis, assigned on receipt
    sender: str # client | volunteer

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "sender": self.sender,
        }


@dataclass
class RelaySession:
    id: str
    connections: Dict[str, Any] = field(default_factory=dict)
    log: List[ChatMessage] = field(default_factory=list)
    active: bool = True
    # monotonic seconds since the last live connection left
    empty_since: Optional[float] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def normalize_role(role) -> str:
    return role if role in ROLES else CLIENT


def parse_event(raw) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        event = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent(f"unparseable payload: {exc}") from exc
    if not isinstance(event, dict):
        raise MalformedEvent("event must be a JSON object")
    if not isinstance(event.get("type"), str):
        raise MalformedEvent("event has no type")
    return event


class SessionRelay:
    def __init__(
        self,
        metrics: statsd.StatsClient,
        store: Optional[SessionStore] = None,
        presence_events: bool = True,
        clock=get_time_millis,
    ):
        self.metrics = metrics
        self.store = store
        self.presence_events = presence_events
        self.clock = clock
        self.sessions: Dict[str, RelaySession] = {}
        # websockets are not hashable, so memberships are keyed by id(connection)
        self.memberships: Dict[int, Tuple[Any, str, str]] = {}

    def connection_opened(self, connection) -> None:
        self.metrics.incr("connections.opened")
        logger.debug("connection %s opened", id(connection))

    async def handle_raw(self, connection, raw) -> None:
        try:
            event = parse_event(raw)
        except MalformedEvent as exc:
            self.metrics.incr("errors.malformed_event")
            logger.warning("dropping malformed event: %s", exc)
            return
        await self.handle(connection, event)

    async def handle(self, connection, event: Dict[str, Any]) -> None:
        event_type = event.get("type") if isinstance(event, dict) else None

        if event_type == "join":
            await self.join(connection, event.get("sessionId"), event.get("role"))
        elif event_type == "message":
            await self.post_message(connection, event.get("content"))
        elif event_type == "end":
            await self.end(connection)
        else:
            self.metrics.incr("errors.unknown_event")
            logger.warning("dropping event of unknown type %r", event_type)

    async def join(self, connection, session_id, role=None) -> None:
        if not isinstance(session_id, str) or not session_id:
            logger.debug("join without sessionId dropped")
            return
        role = normalize_role(role)

        current = self.memberships.get(id(connection))
        if current is not None and current[1:] != (session_id, role):
            await self.connection_closed(connection)

        while True:
            session = self.sessions.get(session_id)
            if session is None:
                session = self.sessions[session_id] = RelaySession(id=session_id)
                logger.info("session %s created", session_id)

            async with session.lock:
                # ended while we waited for the lock, start over on a fresh session
                if not session.active:
                    continue

                replaced = session.connections.get(role)
                if replaced is not None and replaced is not connection:
                    logger.info("%s connection replaced in session %s", role, session_id)
                session.connections[role] = connection
                session.empty_since = None
                self.memberships[id(connection)] = (connection, session_id, role)
                self.metrics.incr("join")

                history = {"type": "history", "messages": [m.to_wire() for m in session.log]}
                if await self._send(session, role, connection, history):
                    await self._announce(session, role, "joined")
                return

    async def post_message(self, connection, content) -> Optional[ChatMessage]:
        membership = self.memberships.get(id(connection))
        if membership is None:
            logger.debug("message before join dropped")
            return None
        if not isinstance(content, str):
            self.metrics.incr("errors.malformed_event")
            logger.warning("dropping message without string content")
            return None

        _, session_id, role = membership
        session = self.sessions.get(session_id)
        if session is None:
            return None

        start_time = time.time()
        async with session.lock:
            if not session.active:
                return None

            timestamp = self.clock()
            # receipt order wins over a wall clock that stepped backwards
            if session.log and timestamp < session.log[-1].timestamp:
                timestamp = session.log[-1].timestamp

            message = ChatMessage(
                id=uuid.uuid4().hex,
                session_id=session_id,
                content=content,
                timestamp=timestamp,
                sender=role,
            )
            session.log.append(message)

            payload = {"type": "message", "message": message.to_wire()}
            for peer_role in ROLES:
                peer = session.connections.get(peer_role)
                if peer is not None:
                    await self._send(session, peer_role, peer, payload)

        self.metrics.incr("message")
        self.metrics.timing("message.fanout.timed", time.time() - start_time)
        return message

    async def end(self, connection) -> None:
        membership = self.memberships.get(id(connection))
        if membership is None:
            logger.debug("end before join dropped")
            return
        await self.close_session(membership[1])

    async def close_session(self, session_id: str) -> None:
        """
        Ends a session for good: the durable record is closed and the in-memory
        entry, log included, is dropped. A later join with the same id starts
        an empty session.
        """
        session = self.sessions.get(session_id)
        if session is not None:
            await self._retire(session)
        self.metrics.incr("end")
        await self._persist_end(session_id)

    async def connection_closed(self, connection) -> None:
        detached = self._detach(connection)
        if detached is None:
            return
        session, role = detached
        async with session.lock:
            if session.active and role not in session.connections:
                await self._announce(session, role, "left")

    def open_session(self, session_id: str) -> RelaySession:
        session = self.sessions.get(session_id)
        if session is None:
            session = self.sessions[session_id] = RelaySession(id=session_id, empty_since=time.monotonic())
            logger.info("session %s opened", session_id)
        return session

    async def reap_idle_sessions(self, max_idle_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.monotonic() if now is None else now
        cutoff = now - max_idle_seconds

        reaped = []
        for session in list(self.sessions.values()):
            if await self._retire(session, idle_cutoff=cutoff):
                reaped.append(session.id)
                await self._persist_end(session.id)

        if reaped:
            self.metrics.incr("reap", len(reaped))
            logger.info("reaped %d idle sessions", len(reaped))
        return reaped

    def history(self, session_id: str) -> List[ChatMessage]:
        session = self.sessions.get(session_id)
        return list(session.log) if session is not None else []

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self.sessions),
            "connections": sum(len(s.connections) for s in self.sessions.values()),
        }

    async def _retire(self, session: RelaySession, idle_cutoff: Optional[float] = None) -> bool:
        async with session.lock:
            if not session.active:
                return False
            if idle_cutoff is not None:
                if session.connections or session.empty_since is None or session.empty_since > idle_cutoff:
                    return False

            session.active = False
            if self.sessions.get(session.id) is session:
                del self.sessions[session.id]
            session.connections.clear()
            # replaced connections still point here, drop them too
            for key, (_, session_id, _) in list(self.memberships.items()):
                if session_id == session.id:
                    del self.memberships[key]
        logger.info("session %s ended", session.id)
        return True

    async def _persist_end(self, session_id: str) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.end_session, session_id)
        except Exception:
            self.metrics.incr("errors.end_session")
            logger.exception("failed to close session %s in storage", session_id)

    def _detach(self, connection) -> Optional[Tuple[RelaySession, str]]:
        membership = self.memberships.pop(id(connection), None)
        if membership is None:
            return None
        _, session_id, role = membership
        session = self.sessions.get(session_id)
        if session is None or session.connections.get(role) is not connection:
            return None

        del session.connections[role]
        if not session.connections:
            session.empty_since = time.monotonic()
        logger.info("%s left session %s", role, session_id)
        return session, role

    async def _send(self, session: RelaySession, role: str, connection, payload: Dict[str, Any]) -> bool:
        try:
            await connection.send_json(payload)
            return True
        except Exception as exc:
            # a dead socket counts as a disconnect for that role only
            self.metrics.incr("errors.delivery")
            logger.warning("delivery to %s in session %s failed: %s", role, session.id, exc)
            self._detach(connection)
            return False

    async def _announce(self, session: RelaySession, role: str, change: str) -> None:
        if not self.presence_events:
            return
        for peer_role in ROLES:
            peer = session.connections.get(peer_role)
            if peer_role != role and peer is not None:
                await self._send(session, peer_role, peer, {"type": f"{role}_{change}"})
