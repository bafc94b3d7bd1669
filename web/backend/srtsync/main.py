"""
SRT Sync - Multi-channel Ingest Server

Web control interface for multi-channel SRT ingest with timecode sync
monitoring.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from . import __version__
from .api.channels import router as channels_router
from .api.deps import get_server
from .api.server import router as server_router
from .api.sync import router as sync_router
from .websocket.events import ConnectionManager, router as ws_router
from .services.config_store import ConfigStore
from .services.core import SyncServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("SRTSYNC_CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if o.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting SRT Sync Service...")
    server = SyncServer(store=ConfigStore())
    ws_manager = ConnectionManager(server)

    app.state.server = server
    app.state.ws_manager = ws_manager
    ws_manager.start()
    server.start()

    yield

    logger.info("Shutting down SRT Sync Service...")
    await ws_manager.stop()
    await server.shutdown()
    app.state.server = None


app = FastAPI(
    title="SRT Sync",
    description="Multi-channel SRT ingest with timecode sync monitoring",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(channels_router, prefix="/api/channels", tags=["Channels"])
app.include_router(server_router, prefix="/api/server", tags=["Server"])
app.include_router(sync_router, prefix="/api/sync", tags=["Sync"])
app.include_router(ws_router, prefix="/ws", tags=["WebSocket"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "srtsync"}


@app.get("/api/status")
async def get_status(server: SyncServer = Depends(get_server)):
    """Get overall server status."""
    stats = server.stats.latest
    return {
        "version": __version__,
        "channels": len(server.registry),
        "receiving": stats.receiving_channels,
        "waiting": stats.waiting_channels,
        "sync_enabled": server.sync.config.enabled,
    }
