"""Nodeproxy - route connections to dynamically addressed backend nodes."""

__version__ = "0.1.0"
