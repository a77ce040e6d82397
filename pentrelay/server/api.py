"""Module api: FastAPI application for the relay gateway."""
#
# PURPOSE:
# Hosts the browser-facing websocket (at "/" and "/ws") and a couple of HTTP
# routes for health checks and operational stats. All session behaviour lives
# in the Gateway; this module only wires routers, CORS and lifecycle hooks.
#

from __future__ import annotations

import logging
import re
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pentrelay import __version__
from pentrelay.base.config import get_config, is_network_exposed, setup_logging
from pentrelay.errors import RelayError
from pentrelay.server.routers import realtime, system
from pentrelay.server.state import get_state

logger = logging.getLogger(__name__)


def _origin_regex(patterns) -> Optional[str]:
    """Translate "scheme://host:*" patterns into a regex CORSMiddleware understands."""
    parts = []
    for pattern in patterns:
        if pattern.endswith(":*"):
            parts.append(re.escape(pattern[:-2]) + r"(:\d+)?")
    return "^(" + "|".join(parts) + ")$" if parts else None


# --- App Setup ---

app = FastAPI(
    title="Pentest Relay Gateway",
    description="Websocket relay between a browser dashboard, remote hosts and an AI agent",
    version=__version__,
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    """Render RelayError as its structured JSON body."""
    logger.error(f"[API] {exc.code.value}: {exc.message}", extra={"details": exc.details})
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


def setup_cors() -> None:
    config = get_config()
    patterns = config.security.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[p for p in patterns if not p.endswith(":*")],
        allow_origin_regex=_origin_regex(patterns),
        allow_credentials="*" not in patterns,
        allow_methods=["*"],
        allow_headers=["*"],
    )


setup_cors()


@app.on_event("startup")
async def startup_event():
    config = get_config()
    setup_logging(config)
    logger.info(f"Pentest relay gateway starting on {config.api_host}:{config.api_port}")
    if is_network_exposed(config.api_host):
        logger.warning("[API] Gateway is bound to a non-loopback address; token auth is enforced")
    await get_state().startup()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Pentest relay gateway shutting down...")
    await get_state().shutdown()


app.include_router(system.router)
app.include_router(realtime.router)


def serve(port: Optional[int] = None, host: Optional[str] = None):
    config = get_config()
    uvicorn.run(app, host=host or config.api_host, port=port or config.api_port, log_level="info")


if __name__ == "__main__":
    serve()
