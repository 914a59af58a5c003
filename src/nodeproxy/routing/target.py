"""Target resolution and the director step.

Routing variables (node, port, alias, session) are turned into a backend
(host, port) pair. The director applies that pair to a copy of the inbound
request and picks the outbound transport from the rewritten scheme.

Example:
    director = make_director(registry, port_number="80")
    outreq = OutboundRequest.from_request(request, route_vars)
    director(outreq)
    host, port = outreq.target_address  # e.g. ("10.0.0.5", 8080)
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from aiohttp import hdrs, web

from nodeproxy.registry import InstanceRegistry

ROUTE_KEYS = ("node", "port", "alias", "session")
DEFAULT_PORT = "80"
TLS_PORT = 443

# Request-body framing headers replaced when the body is re-sent with a known length.
_FRAMING_HEADERS = {b"content-length", b"transfer-encoding"}


class Transport(Enum):
    """How the backend connection is dialed."""

    PLAIN = "plain"
    TLS = "tls"


SECURE_SCHEMES = frozenset({"https", "wss"})


def normalize_node(node: str) -> str:
    """Turn a dash-encoded IPv4 node id into dotted form.

    Values that do not parse as an IPv4 address are hostnames and are
    returned unchanged.
    """
    candidate = node.replace("-", ".")
    try:
        ipaddress.IPv4Address(candidate)
    except ValueError:
        return node
    return candidate


def split_host_port(host: str) -> tuple[str, str]:
    """Split a Host header value into (host, port). Port is "" when absent."""
    if host.startswith("["):
        end = host.find("]")
        if end != -1:
            rest = host[end + 1 :]
            return host[: end + 1], rest[1:] if rest.startswith(":") else ""
    name, sep, port = host.partition(":")
    if not sep or ":" in port:
        return host, ""
    return name, port


def get_target_info(
    route_vars: Mapping[str, str],
    host_header: str,
    registry: InstanceRegistry,
    port_number: str,
) -> tuple[str, str]:
    """Resolve routing variables to a backend (host, port).

    Never fails: alias misses and non-IP nodes fall back permissively.
    """
    node = route_vars.get("node", "")
    port = route_vars.get("port", "")
    alias = route_vars.get("alias", "")
    session_prefix = route_vars.get("session", "")

    # An explicit Host port other than our own wins over the route port.
    _, host_port = split_host_port(host_header)
    if host_port and host_port != port_number:
        port = host_port
    elif not port:
        port = DEFAULT_PORT

    if alias:
        instance = registry.find_by_alias(session_prefix, alias)
        if instance is not None:
            return instance.ip, port

    return normalize_node(node), port


@dataclass
class OutboundRequest:
    """Snapshot of an inbound request as it will be written to the backend."""

    method: str
    target: str
    version: tuple[int, int]
    headers: list[tuple[bytes, bytes]]
    body: bytes = b""
    scheme: str = "http"
    host: str = ""
    url_host: str = ""
    route_vars: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(
        cls,
        request: web.Request,
        route_vars: Mapping[str, str],
        body: bytes = b"",
    ) -> OutboundRequest:
        headers = list(request.raw_headers)
        if body:
            headers = [(k, v) for k, v in headers if k.lower() not in _FRAMING_HEADERS]
            headers.append((b"Content-Length", str(len(body)).encode("ascii")))

        upgrade = request.headers.get(hdrs.UPGRADE, "")
        if upgrade.lower() == "websocket":
            scheme = "wss" if request.secure else "ws"
        else:
            scheme = request.scheme

        return cls(
            method=request.method,
            target=request.raw_path,
            version=(request.version.major, request.version.minor),
            headers=headers,
            body=body,
            scheme=scheme,
            host=request.headers.get(hdrs.HOST, ""),
            route_vars=dict(route_vars),
        )

    @property
    def transport(self) -> Transport:
        return Transport.TLS if self.scheme in SECURE_SCHEMES else Transport.PLAIN

    @property
    def target_address(self) -> tuple[str, int]:
        """The (host, port) the backend is dialed at, taken from url_host."""
        host, _, port = self.url_host.rpartition(":")
        return host.strip("[]"), int(port)

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.url_host}{self.target}"

    def serialize(self) -> bytes:
        """Encode the request line, headers and body in HTTP/1.x wire form."""
        major, minor = self.version
        parts = [f"{self.method} {self.target} HTTP/{major}.{minor}\r\n".encode("latin-1")]
        for name, value in self.headers:
            parts.append(name + b": " + value + b"\r\n")
        parts.append(b"\r\n")
        parts.append(self.body)
        return b"".join(parts)


Director = Callable[[OutboundRequest], None]


def make_director(registry: InstanceRegistry, port_number: str) -> Director:
    """Build the director that points an outbound request at its backend.

    The only mutations are the scheme upgrade for port 443 and url_host.
    """

    def director(req: OutboundRequest) -> None:
        node, port = get_target_info(req.route_vars, req.host, registry, port_number)

        if port.isdigit() and int(port) == TLS_PORT:
            if "http" in req.scheme:
                req.scheme = "https"
            else:
                req.scheme = "wss"
        req.url_host = f"{node}:{port}"

    return director
