"""Nodeproxy Routing Module.

Turns routing variables (from the URL path and Host header) into a backend
address and decides how that backend is dialed.

Usage:
    from nodeproxy.routing import HostRouter, get_target_info

    route_vars = HostRouter().match("ip10-0-0-5-8080.example.com")
    host, port = get_target_info(route_vars, "ip10-0-0-5-8080.example.com", registry, "80")
    # ("10.0.0.5", "8080")
"""

from nodeproxy.routing.hosts import HostRouter, merge_route_vars
from nodeproxy.routing.target import (
    Director,
    OutboundRequest,
    Transport,
    get_target_info,
    make_director,
    normalize_node,
    split_host_port,
)

__all__ = [
    "Director",
    "HostRouter",
    "OutboundRequest",
    "Transport",
    "get_target_info",
    "make_director",
    "merge_route_vars",
    "normalize_node",
    "split_host_port",
]
