"""Host header routing.

Extracts routing variables from the Host header using two named-group
patterns: one for node hosts (``ip10-0-0-5-8080.example.com``) and one
for alias hosts (``web-a1b2c3d4-8080.example.com``).
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from nodeproxy.core.config import DEFAULT_ALIAS_HOST_PATTERN, DEFAULT_NODE_HOST_PATTERN
from nodeproxy.routing.target import ROUTE_KEYS, split_host_port


class HostRouter:
    """Match Host headers against the node and alias patterns."""

    def __init__(
        self,
        node_pattern: str = DEFAULT_NODE_HOST_PATTERN,
        alias_pattern: str = DEFAULT_ALIAS_HOST_PATTERN,
    ) -> None:
        self._patterns = [
            re.compile(node_pattern, re.IGNORECASE),
            re.compile(alias_pattern, re.IGNORECASE),
        ]

    def match(self, host: str) -> dict[str, str] | None:
        """Return routing variables for `host`, or None if no pattern matches."""
        name, _ = split_host_port(host)
        for pattern in self._patterns:
            m = pattern.match(name)
            if m:
                found = {k: v for k, v in m.groupdict().items() if v}
                return {key: found.get(key, "") for key in ROUTE_KEYS}
        return None


def merge_route_vars(
    match_info: Mapping[str, str],
    host_vars: Mapping[str, str] | None,
) -> dict[str, str]:
    """Combine path variables with Host variables. Host values win."""
    merged = {key: match_info.get(key, "") for key in ROUTE_KEYS}
    if host_vars:
        merged.update({k: v for k, v in host_vars.items() if v})
    return merged

