"""Storage for registered instances.

This module provides JSON file-based storage for the instance registry,
suitable for self-hosted deployments.

Storage file format (instances.json):
    {
        "instances": {
            "10.0.0.5": {
                "ip": "10.0.0.5",
                "session_id": "a1b2c3d4e5f6",
                "alias": "web",
                "hostname": "node1",
                "created_at": "2024-01-15T10:00:00+00:00"
            }
        }
    }
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog

from nodeproxy.registry.instances import Instance, MemoryInstanceRegistry

logger = structlog.get_logger()


class InstanceStore:
    """JSON file-based storage for instance registrations.

    Serialized via an asyncio lock. The registry itself stays in memory;
    the store only loads it on startup and saves it after changes.
    """

    def __init__(self, storage_path: str | Path = "instances.json") -> None:
        self.storage_path = Path(storage_path)
        self._lock = asyncio.Lock()

    async def load(self) -> list[Instance]:
        """Load instances from the storage file.

        Missing or unreadable files load as an empty list.
        """
        async with self._lock:
            if not self.storage_path.exists():
                return []

            try:
                content = await asyncio.to_thread(self.storage_path.read_text)
                data = json.loads(content)
                return [
                    Instance.from_dict(item)
                    for item in data.get("instances", {}).values()
                ]
            except (json.JSONDecodeError, KeyError, ValueError, AttributeError) as e:
                logger.warning(
                    "Ignoring unreadable instance store",
                    path=str(self.storage_path),
                    error=str(e),
                )
                return []

    async def save(self, instances: list[Instance]) -> None:
        """Replace the storage file contents with `instances`."""
        async with self._lock:
            data = {"instances": {inst.ip: inst.to_dict() for inst in instances}}
            content = json.dumps(data, indent=2)
            await asyncio.to_thread(self.storage_path.write_text, content)

    async def load_into(self, registry: MemoryInstanceRegistry) -> int:
        """Populate `registry` from storage. Returns the number of instances loaded."""
        instances = await self.load()
        for instance in instances:
            registry.add(instance)
        return len(instances)

    async def save_from(self, registry: MemoryInstanceRegistry) -> None:
        await self.save(registry.list_all())
