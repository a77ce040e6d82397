# ============================================================================
# pentrelay/server/__init__.py
# Server Package - websocket gateway
# ============================================================================
#
# ARCHITECTURE:
# Browser dashboard ← websocket → FastAPI (api.py) → Gateway → sessions
#
# KEY MODULES:
# - **frames.py**: Frame kinds, inbound payload models, outbound builders
# - **transport.py**: TransportSession (mailbox + writer task per websocket)
# - **gateway.py**: Session table, dispatch table, teardown
# - **liveness.py**: Heartbeat monitor that evicts silent sessions
# - **api.py**: FastAPI app, CORS, lifecycle hooks
#
# Submodules are imported explicitly; nothing is re-exported here.
#
# ============================================================================
