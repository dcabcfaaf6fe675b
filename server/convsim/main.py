import logging
import os

import socketio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from convsim.config import settings
from convsim.api import conversations
from convsim.services.vignette_loader import load_vignettes
from convsim.ws.handler import sio

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

# Suppress noisy third-party loggers
logging.getLogger("google_genai").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("anthropic").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail fast on a broken vignette rather than mid-session
    vignettes = load_vignettes()
    logger.info(f"{len(vignettes)} vignettes available")

    # Ensure storage directory exists
    os.makedirs(settings.storage_dir, exist_ok=True)
    yield


app = FastAPI(
    title="ConvSim API",
    description="Difficult-conversation simulator backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount REST routes
app.include_router(conversations.router, prefix="/api/conversations", tags=["conversations"])
app.include_router(conversations.vignettes_router, prefix="/api", tags=["vignettes"])


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": "0.1.0", "provider": settings.llm_provider}


# Mount Socket.IO as ASGI sub-app
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
