"""Queue persistence and result downloads."""

from .slots import JsonFileSlot, MemorySlot, SnapshotSlot, SQLiteSlot, create_slot

__all__ = ["SnapshotSlot", "MemorySlot", "SQLiteSlot", "JsonFileSlot", "create_slot"]
