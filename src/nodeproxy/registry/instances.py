"""Instance registry used as the liveness oracle for routed nodes.

The proxy only depends on the InstanceRegistry protocol. MemoryInstanceRegistry
is the bundled implementation, populated from an InstanceStore file or the
control plane.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


@dataclass
class Instance:
    """A registered backend reachable at a specific IP."""

    ip: str
    session_id: str = ""
    alias: str = ""
    hostname: str = ""
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ip": self.ip,
            "session_id": self.session_id,
            "alias": self.alias,
            "hostname": self.hostname,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Instance:
        """Create from dictionary (JSON deserialization)."""
        ip = data.get("ip")
        if not ip or not isinstance(ip, str):
            raise ValueError("Instance requires a non-empty 'ip'")
        return cls(
            ip=ip,
            session_id=data.get("session_id") or "",
            alias=data.get("alias") or "",
            hostname=data.get("hostname") or "",
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else _utc_now(),
        )


class InstanceRegistry(Protocol):
    """Lookups the proxy needs from whatever tracks live instances."""

    def find_by_alias(self, session_prefix: str, alias: str) -> Instance | None: ...

    def find_by_ip(self, ip: str) -> Instance | None: ...


class MemoryInstanceRegistry:
    """In-process registry keyed by instance IP."""

    def __init__(self, instances: list[Instance] | None = None) -> None:
        self._by_ip: dict[str, Instance] = {}
        for instance in instances or []:
            self.add(instance)

    def add(self, instance: Instance) -> None:
        """Register an instance, replacing any previous one with the same IP."""
        self._by_ip[instance.ip] = instance

    def remove(self, ip: str) -> bool:
        """Remove an instance. Returns True if found."""
        return self._by_ip.pop(ip, None) is not None

    def clear(self) -> None:
        self._by_ip.clear()

    def find_by_ip(self, ip: str) -> Instance | None:
        if not ip:
            return None
        return self._by_ip.get(ip)

    def find_by_alias(self, session_prefix: str, alias: str) -> Instance | None:
        """Find the instance carrying `alias` in a session starting with `session_prefix`."""
        if not alias:
            return None
        for instance in self._by_ip.values():
            if instance.alias == alias and instance.session_id.startswith(session_prefix):
                return instance
        return None

    def list_all(self) -> list[Instance]:
        return list(self._by_ip.values())

    def __len__(self) -> int:
        return len(self._by_ip)
