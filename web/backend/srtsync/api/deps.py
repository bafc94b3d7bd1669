"""
API Dependencies

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import HTTPException, Request

from ..services.core import SyncServer
from ..services.errors import (
    ChannelNotFoundError, ChannelStateError, ConfigApplyError, SpawnError, SrtSyncError
)

_STATUS_CODES = {
    ChannelNotFoundError: 404,
    ChannelStateError: 409,
    SpawnError: 500,
    ConfigApplyError: 400,
}


def get_server(request: Request) -> SyncServer:
    """Dependency to get the server instance."""
    server = getattr(request.app.state, "server", None)
    if server is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return server


def http_error(error: SrtSyncError) -> HTTPException:
    """Translate a core error into the matching HTTP error."""
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
