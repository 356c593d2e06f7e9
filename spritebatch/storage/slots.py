"""Key-value slots that hold the persisted queue snapshot."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from spritebatch.config import Settings

logger = structlog.get_logger()


class SnapshotSlot(ABC):
    """Durable key-value slot for serialized snapshots."""

    async def initialize(self) -> None:
        """Prepare the backing storage. No-op by default."""

    @abstractmethod
    async def read(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key was never written."""
        ...

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...


class MemorySlot(SnapshotSlot):
    """In-memory slot. Nothing survives the process."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def write(self, key: str, value: str) -> None:
        self._values[key] = value


class SQLiteSlot(SnapshotSlot):
    """Slot backed by a single key-value table in SQLite."""

    def __init__(self, db_path: str) -> None:
        """Initialize SQLite slot.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialized = False
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("sqlite_slot_initialized", db_path=self.db_path, source="storage")

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            await db.commit()

        self._initialized = True

        logger.info("kv_store_initialized", db_path=self.db_path, source="storage")

    async def read(self, key: str) -> Optional[str]:
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()

        return row[0] if row else None

    async def write(self, key: str, value: str) -> None:
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, datetime.now().isoformat()),
            )
            await db.commit()


class JsonFileSlot(SnapshotSlot):
    """Slot storing each key as a JSON file in a directory."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read_file(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write_file(self, path: Path, value: str) -> None:
        # Atomic replace
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(value, encoding="utf-8")
        tmp_path.replace(path)

    async def read(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read_file, self._path(key))

    async def write(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write_file, self._path(key), value)


def create_slot(config: Settings) -> SnapshotSlot:
    """Build the slot selected by `queue_storage`.

    Args:
        config: Settings instance

    Returns:
        SnapshotSlot for the configured backend

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = config.queue_storage.lower()
    if backend == "sqlite":
        return SQLiteSlot(config.sqlite_path)
    if backend == "file":
        return JsonFileSlot(config.data_dir)
    if backend == "memory":
        return MemorySlot()
    raise ValueError(f"Unknown queue storage backend: {config.queue_storage}")
