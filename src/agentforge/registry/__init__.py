"""Durable registry shared by plugin runtimes."""

from agentforge.registry.locks import ReadWriteLock
from agentforge.registry.schema import Collection, RegistryRecord
from agentforge.registry.store import Registry

__all__ = ["Collection", "ReadWriteLock", "Registry", "RegistryRecord"]
