"""Module __init__: remote command execution engine (SSH channels and their registry)."""
