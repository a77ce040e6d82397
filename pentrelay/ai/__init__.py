"""Module __init__: autonomous agent bridge and its reasoning-service client."""
