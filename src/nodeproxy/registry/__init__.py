"""Instance registry and its JSON storage."""

from nodeproxy.registry.instances import Instance, InstanceRegistry, MemoryInstanceRegistry
from nodeproxy.registry.storage import InstanceStore

__all__ = [
    "Instance",
    "InstanceRegistry",
    "InstanceStore",
    "MemoryInstanceRegistry",
]
