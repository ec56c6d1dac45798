import aiosqlite
import os
import asyncio
import contextlib
import pathlib
import logging

logger = logging.getLogger(__name__)

class Database:
    def __init__(self, db_name: str | None = None):
        # one connection, every access goes through the lock below
        self.conn = None
        self.db_name = db_name or os.getenv('DB_NAME', 'scheduling.db')
        self._lock = asyncio.Lock()

    async def connect(self):
        """Opens the SQLite file, enables foreign keys and applies pending migrations."""
        self.conn = await aiosqlite.connect(self.db_name)
        # rows behave like dicts
        self.conn.row_factory = aiosqlite.Row
        # SQLite ships with foreign keys disabled
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self.conn.commit()
        await self._run_migrations()
        logger.info("Database connected and initialised", extra={'db_name': self.db_name})

    async def close(self):
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
            logger.info("Database connection closed", extra={'db_name': self.db_name})

    async def _execute(self, query, args=None, fetch=None):
        """Runs a single statement. Writes are committed immediately, or rolled back if interrupted."""
        async with self._lock:
            async with self.conn.cursor() as cursor:
                try:
                    await cursor.execute(query, args or ())
                    if fetch == 'one':
                        return await cursor.fetchone()
                    if fetch == 'all':
                        return await cursor.fetchall()
                    await asyncio.shield(self.conn.commit())
                    return cursor.rowcount
                except BaseException:
                    await asyncio.shield(self.conn.rollback())
                    raise

    @contextlib.asynccontextmanager
    async def transaction(self):
        """
        Serialised unit of work on the shared connection.
        Commits when the block exits normally, rolls back on any exception.
        The commit is shielded so a cancelled caller cannot interrupt it halfway.
        """
        async with self._lock:
            try:
                yield self.conn
            except BaseException:
                await asyncio.shield(self.conn.rollback())
                raise
            else:
                await asyncio.shield(self.conn.commit())

    async def _run_migrations(self):
        """
        Version-based migrations.
        Compares the .sql files under `src/migrations/versions` with the
        database's `user_version` and applies the newer ones in order.
        """
        logger.info("Checking database migrations...")

        migrations_path = pathlib.Path(__file__).parent.parent / "migrations" / "versions"
        if not migrations_path.is_dir():
            logger.warning(f"Migrations directory missing, skipping: {migrations_path}")
            return

        async with self.conn.cursor() as cursor:
            await cursor.execute("PRAGMA user_version")
            current_version = (await cursor.fetchone())[0]
        logger.info(f"Current database version: {current_version}")

        try:
            migration_files = sorted(
                migrations_path.glob("*.sql"),
                key=lambda p: int(p.stem.split('_')[0])
            )
        except (ValueError, IndexError):
            logger.error("Migration file names must look like 'NNN_description.sql'.")
            raise

        latest_version = current_version
        for migration_file in migration_files:
            try:
                file_version = int(migration_file.stem.split('_')[0])

                if file_version > current_version:
                    logger.info(f"Applying migration v{file_version} - {migration_file.name}")
                    with open(migration_file, 'r', encoding='utf-8') as f:
                        sql_script = f.read()

                    await self.conn.executescript(sql_script)

                    await self.conn.execute(f"PRAGMA user_version = {file_version}")
                    await self.conn.commit()

                    logger.info(f"Migration applied, database version is now {file_version}")
                    latest_version = file_version
            except Exception:
                logger.error(f"Migration failed: {migration_file.name}", exc_info=True)
                await self.conn.rollback()
                # refuse to run on a half-migrated schema
                raise

        if latest_version == current_version:
            logger.info("Database schema is up to date.")
        else:
            logger.info(f"Migrations finished, database version: {latest_version}")
