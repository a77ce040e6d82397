"""
Router initialization module.

Exports the websocket and HTTP routers of the relay gateway.
"""
from pentrelay.server.routers import auth, realtime, system

__all__ = [
    "auth",
    "realtime",
    "system",
]
