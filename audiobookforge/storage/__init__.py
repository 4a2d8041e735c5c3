"""Persistence for projects, chapters and synthesis jobs."""

from audiobookforge.storage.base import NotFoundError, Storage
from audiobookforge.storage.json_store import JsonFileStorage
from audiobookforge.storage.memory import MemoryStorage

__all__ = ["JsonFileStorage", "MemoryStorage", "NotFoundError", "Storage"]
