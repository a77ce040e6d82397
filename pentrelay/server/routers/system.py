from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from pentrelay import __version__
from pentrelay.server.routers.auth import verify_token
from pentrelay.server.state import get_state

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health")
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "version": __version__, "timestamp": asyncio.get_running_loop().time()}


@router.get("/stats", dependencies=[Depends(verify_token)])
async def gateway_stats() -> Dict[str, Any]:
    """
    Counts of live sessions, open channels and running autonomous sessions,
    plus a per-session breakdown. Credentials are never included.
    """
    state = get_state()
    now = time.time()
    sessions: List[Dict[str, Any]] = []
    for session in state.gateway.sessions():
        sessions.append({
            "id": session.id,
            "peer": session.peer,
            "age_seconds": round(now - session.connected_at, 1),
            "missed_heartbeats": session.missed_heartbeats,
            "frames_in": session.frames_in,
            "frames_out": session.frames_out,
            "channels": [str(c.fingerprint) for c in session.registry.channels()] if session.registry else [],
            "agent": session.bridge.snapshot() if session.bridge is not None else None,
        })
    return {
        **state.gateway.stats(),
        "liveness_running": state.monitor.running,
        "details": sessions,
    }
