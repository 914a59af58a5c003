"""Relay plane: dialing, hijacking and the proxy server."""

from nodeproxy.server.dial import BackendDialer, Dialer, create_backend_ssl_context
from nodeproxy.server.handler import TCPProxy
from nodeproxy.server.hijack import can_hijack, hijack
from nodeproxy.server.relay import ProxyServer

__all__ = [
    "BackendDialer",
    "Dialer",
    "ProxyServer",
    "TCPProxy",
    "can_hijack",
    "create_backend_ssl_context",
    "hijack",
]
