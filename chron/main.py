from contextlib import asynccontextmanager
from fastapi import FastAPI
import requests
from dotenv import load_dotenv
import asyncio
import logging
import os

load_dotenv()

logger = logging.getLogger(__name__)

RELAY_SERVICE_URL = os.environ["RELAY_SERVICE_URL"]

def close_stale_sessions():
    response = requests.get(f"{RELAY_SERVICE_URL}/end-stale-sessions", timeout=10)
    if not response.ok:
        logger.warning("stale session sweep failed with status %s", response.status_code)
        return []
    ended = response.json().get("ended", [])
    logger.info("relay ended %d stale sessions", len(ended))
    return ended

@asynccontextmanager
async def lifespan(app: FastAPI):
    # one sweep per start, the scheduler restarts this app on its cadence
    await asyncio.to_thread(close_stale_sessions)
    yield

app = FastAPI(lifespan=lifespan)
