"""Session relay gateway for browser-driven penetration testing sessions."""

__version__ = "1.0.0"
