import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

DB_FILENAME = "qr_system.db"


class AsyncDatabaseInitializer:
    """
    Manage the async SQLite database that backs the primary storage tier.

    - The database file is located at: <database_dir>/qr_system.db
    - A RuntimeError is raised if `database_dir` is invalid (not a directory
      and cannot be created).
    - On the first call to `ensure_database()` for a given instance the
      `qr_codes` and `qr_scan_logs` tables and their indexes are created if
      missing. Existing rows are kept: this tier is durable across restarts.
    - Subsequent calls to `ensure_database()` on the same instance are no-ops,
      so it is safe for `connection()` to call it.
    """

    def __init__(self, database_dir: Path | str) -> None:
        db_dir = Path(database_dir).expanduser()

        if db_dir.exists() and not db_dir.is_dir():
            raise RuntimeError(
                f"DATABASE_DIR={str(database_dir)!r} points to a file, not a directory "
                f"({db_dir}). Please set DATABASE_DIR to a directory path."
            )

        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            raise RuntimeError(
                f"Failed to create or access database directory at {db_dir}"
            ) from exc

        self.db_dir = db_dir
        self.db_path = self.db_dir / DB_FILENAME

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def ensure_database(self) -> None:
        """
        Ensure the SQLite schema exists at `self.db_path`.

        Subsequent calls on the same instance are no-ops.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            max_attempts = 3
            for attempt in range(1, max_attempts + 1):
                try:
                    async with aiosqlite.connect(self.db_path) as db:
                        await db.execute("PRAGMA journal_mode=WAL;")
                        await db.execute(
                            """
                            CREATE TABLE IF NOT EXISTS qr_codes (
                                id TEXT PRIMARY KEY,
                                data TEXT NOT NULL,
                                qr_image_url TEXT,
                                created_at REAL NOT NULL,
                                expires_at REAL,
                                access_count INTEGER NOT NULL DEFAULT 0,
                                user_id TEXT,
                                metadata TEXT DEFAULT '{}',
                                is_active INTEGER NOT NULL DEFAULT 1
                            )
                            """
                        )
                        for column in ("expires_at", "user_id", "created_at", "is_active"):
                            await db.execute(
                                f"CREATE INDEX IF NOT EXISTS idx_qr_codes_{column} ON qr_codes({column})"
                            )

                        # Scan events keep a plain qr_id column with no foreign key so
                        # that purging a record never has to touch its scan history.
                        await db.execute(
                            """
                            CREATE TABLE IF NOT EXISTS qr_scan_logs (
                                id INTEGER PRIMARY KEY AUTOINCREMENT,
                                qr_id TEXT NOT NULL,
                                scanned_at REAL NOT NULL,
                                scanner_ip TEXT,
                                scanner_user_agent TEXT,
                                scanner_location TEXT,
                                metadata TEXT DEFAULT '{}'
                            )
                            """
                        )
                        for column in ("qr_id", "scanned_at", "scanner_ip"):
                            await db.execute(
                                f"CREATE INDEX IF NOT EXISTS idx_scan_logs_{column} ON qr_scan_logs({column})"
                            )

                        await db.commit()
                    break
                except FileNotFoundError:
                    # On some platforms a transient missing file error may occur; retry a few times.
                    if attempt >= max_attempts:
                        raise
                    await asyncio.sleep(0.1 * attempt)

            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Async context manager yielding an `aiosqlite.Connection`.

        The schema is created on first use via `ensure_database()`.
        """
        await self.ensure_database()
        conn = await aiosqlite.connect(self.db_path)
        try:
            yield conn
        finally:
            await conn.close()
