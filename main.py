from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from relay.session_relay import SessionRelay
from relay.store import SQLSessionStore, SessionAlreadyExists
from dotenv import load_dotenv
from sqlmodel import create_engine, SQLModel
import statsd
import logging
import os
import uuid

load_dotenv()

PG_DATABASE_URL = os.environ["PG_DATABASE_URL"]
GRAPHITE_HOST = os.environ["GRAPHITE_HOST"]
GRAPHITE_HOST_PORT = int(os.environ["GRAPHITE_HOST_PORT"])
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "http://localhost:5173")
RELAY_IDLE_TIMEOUT_MINUTES = float(os.getenv("RELAY_IDLE_TIMEOUT_MINUTES", "30"))
RELAY_PRESENCE_EVENTS = os.getenv("RELAY_PRESENCE_EVENTS", "true").lower() in ("1", "true", "yes")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()
pg_engine = create_engine(PG_DATABASE_URL)
metrics = statsd.StatsClient(host=GRAPHITE_HOST, port=GRAPHITE_HOST_PORT, prefix="production.relay")
store = SQLSessionStore(pg_engine)
relay = SessionRelay(metrics=metrics, store=store, presence_events=RELAY_PRESENCE_EVENTS)

# create all tables
SQLModel.metadata.create_all(pg_engine)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CORS_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

@app.get("/")
def _hello_world():
    return "Welcome to the support chat relay"

@app.get("/ping")
def _ping():
    return "pong"

@app.get("/api/health")
def _health():
    return { "message": "Backend is connected!" } | relay.stats()

@app.post("/api/chat/start")
async def _start_chat_session(req: Request):
    metrics.incr("start_session")
    try:
        body = await req.json()
    except ValueError:
        body = {}

    volunteer_id = body.get("volunteerId") if isinstance(body, dict) else None
    session_id = uuid.uuid4().hex

    try:
        store.create_session(session_id, volunteer_id=volunteer_id)
    except SessionAlreadyExists:
        metrics.incr("errors.start_session")
        return JSONResponse(status_code=400, content={ "error": "Failed to start chat session" })
    except Exception:
        metrics.incr("errors.start_session")
        logger.exception("failed to record chat session %s", session_id)
        return JSONResponse(status_code=400, content={ "error": "Failed to start chat session" })

    relay.open_session(session_id)
    return { "sessionId": session_id }

@app.post("/end-session")
async def _end_chat_session(req: Request):
    try:
        body = await req.json()
    except ValueError:
        body = {}

    session_id = body.get("session_id") if isinstance(body, dict) else None
    if isinstance(session_id, str) and session_id:
        await relay.close_session(session_id)
    return { "success": True }

@app.get("/end-stale-sessions")
async def _end_stale_session():
    # end all sessions nobody has been connected to for the idle timeout
    ended = await relay.reap_idle_sessions(RELAY_IDLE_TIMEOUT_MINUTES * 60)
    return { "success": True, "ended": ended }

@app.websocket("/ws")
async def _relay_socket(websocket: WebSocket):
    await websocket.accept()
    relay.connection_opened(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # text and binary frames both carry one JSON event
            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            await relay.handle_raw(websocket, data)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.connection_closed(websocket)
