"""Module __init__: foundational components shared by the rest of the gateway."""
#
# WHAT'S IN THIS MODULE:
# - config.py: Gateway configuration (ports, SSH timeouts, heartbeat, AI endpoint)
# - command_policy.py: Advisory allow/deny check for agent-proposed commands
#
