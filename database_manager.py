import os
import sqlite3
import threading
import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from job_listing import LISTING_COLUMNS, StoredListing

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement
LOOKUP_CHUNK_SIZE = 500


class ListingStoreError(Exception):
    """Base class for listing store failures"""


class ListingWriteError(ListingStoreError):
    """A single listing could not be written; the rest of the batch is unaffected"""


class StoreUnavailableError(ListingStoreError):
    """The store itself failed; the whole batch has to be abandoned"""


class ListingStore:
    """Persistence contract used by the reconciliation engine.

    Records are keyed by an internal record id; job_id (the external
    identifier) is unique among non-trashed records.
    """

    def bulk_lookup_by_external_ids(self, ids: Iterable[str]) -> Dict[str, int]:
        raise NotImplementedError

    def upsert(self, external_id: str, fields: Dict[str, Any], existing_record_id: Optional[int] = None) -> int:
        raise NotImplementedError

    def bulk_fetch_all_active_external_ids(self) -> List[Tuple[int, str]]:
        raise NotImplementedError

    def hard_delete(self, record_id: int) -> bool:
        raise NotImplementedError

    def begin_transaction(self) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    @contextmanager
    def savepoint(self):
        yield

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on any exception (commit failures included)"""
        self.begin_transaction()
        try:
            yield self
            self.commit()
        except BaseException:
            try:
                self.rollback()
            except Exception as e:
                logger.error(f"Rollback failed: {e}")
            raise


class DatabaseManager(ListingStore):
    def __init__(self, database_url: Optional[str] = None, db_path: Optional[str] = None):
        if database_url is None:
            database_url = os.environ.get('DATABASE_URL', '')
        self.database_url = database_url
        self.use_postgres = bool(self.database_url)
        self.db_path = db_path or os.environ.get('DRIVEHR_DB_PATH', 'drivehr_jobs.db')
        self._local = threading.local()

        if self.use_postgres:
            logger.info("Using PostgreSQL database")
        else:
            logger.info(f"Using SQLite database: {self.db_path}")

        self.init_database()

    # Connections

    def _connect(self):
        if self.use_postgres:
            return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        # Transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def get_connection(self):
        """Get database connection (PostgreSQL or SQLite)"""
        try:
            conn = self._connect()
        except (sqlite3.Error, psycopg2.Error) as e:
            raise StoreUnavailableError(f"Database connection failed: {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    def _transaction_connection(self):
        return getattr(self._local, 'conn', None)

    def _sql(self, query: str) -> str:
        return query.replace('?', '%s') if self.use_postgres else query

    @staticmethod
    def _translate_error(error: Exception) -> ListingStoreError:
        if isinstance(error, (sqlite3.IntegrityError, sqlite3.DataError,
                              psycopg2.IntegrityError, psycopg2.DataError)):
            return ListingWriteError(str(error))
        return StoreUnavailableError(str(error))

    def _execute(self, conn, query, params, fetch_one, fetch_all, returning_id):
        cursor = conn.cursor()
        try:
            cursor.execute(self._sql(query), params or ())
            if fetch_one:
                row = cursor.fetchone()
                return dict(row) if row is not None else None
            if fetch_all:
                return [dict(row) for row in cursor.fetchall()]
            if returning_id:
                if self.use_postgres:
                    return cursor.fetchone()['id']
                return cursor.lastrowid
            return cursor.rowcount
        finally:
            cursor.close()

    def execute_query(self, query, params=None, fetch_one=False, fetch_all=False, returning_id=False):
        """Run a query inside the current transaction, or in its own connection"""
        conn = self._transaction_connection()
        try:
            if conn is not None:
                return self._execute(conn, query, params, fetch_one, fetch_all, returning_id)
            with self.get_connection() as conn:
                result = self._execute(conn, query, params, fetch_one, fetch_all, returning_id)
                conn.commit()
                return result
        except (sqlite3.Error, psycopg2.Error) as e:
            raise self._translate_error(e) from e

    # Transactions

    def begin_transaction(self) -> None:
        if self._transaction_connection() is not None:
            raise ListingStoreError("A transaction is already active on this thread")
        try:
            conn = self._connect()
        except (sqlite3.Error, psycopg2.Error) as e:
            raise StoreUnavailableError(f"Database connection failed: {e}") from e
        try:
            if not self.use_postgres:
                conn.execute('BEGIN IMMEDIATE')
        except sqlite3.Error as e:
            conn.close()
            raise StoreUnavailableError(f"Could not start transaction: {e}") from e
        self._local.conn = conn

    def commit(self) -> None:
        conn = self._transaction_connection()
        if conn is None:
            raise ListingStoreError("No active transaction to commit")
        try:
            if self.use_postgres:
                conn.commit()
            else:
                conn.execute('COMMIT')
        except (sqlite3.Error, psycopg2.Error) as e:
            # Left open so the caller can roll back
            raise StoreUnavailableError(f"Commit failed: {e}") from e
        self._release()

    def rollback(self) -> None:
        conn = self._transaction_connection()
        if conn is None:
            return
        try:
            if self.use_postgres:
                conn.rollback()
            elif conn.in_transaction:
                conn.execute('ROLLBACK')
        except (sqlite3.Error, psycopg2.Error) as e:
            logger.error(f"Rollback error: {e}")
        finally:
            self._release()

    def _release(self) -> None:
        conn = self._transaction_connection()
        self._local.conn = None
        if conn is not None:
            conn.close()

    @contextmanager
    def savepoint(self):
        if self._transaction_connection() is None:
            yield
            return
        self.execute_query('SAVEPOINT listing_item')
        try:
            yield
        except BaseException:
            self.execute_query('ROLLBACK TO SAVEPOINT listing_item')
            self.execute_query('RELEASE SAVEPOINT listing_item')
            raise
        self.execute_query('RELEASE SAVEPOINT listing_item')

    # Schema

    def init_database(self):
        """Initialize database tables (works for both PostgreSQL and SQLite)"""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                if self.use_postgres:
                    self._create_postgres_tables(cursor)
                else:
                    self._create_sqlite_tables(cursor)
                conn.commit()
            except (sqlite3.Error, psycopg2.Error) as e:
                raise StoreUnavailableError(f"Database initialization failed: {e}") from e
            finally:
                cursor.close()
        logger.info("Database tables initialized")

    def _create_postgres_tables(self, cursor):
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS job_listings (
                id SERIAL PRIMARY KEY,
                job_id VARCHAR(191) NOT NULL,
                title TEXT NOT NULL,
                description TEXT DEFAULT '',
                summary TEXT DEFAULT '',
                department TEXT DEFAULT '',
                location TEXT DEFAULT '',
                job_type TEXT DEFAULT '',
                employment_type TEXT DEFAULT '',
                salary_range TEXT DEFAULT '',
                apply_url TEXT DEFAULT '',
                posted_date TEXT DEFAULT '',
                expiry_date TEXT DEFAULT '',
                posted_at TIMESTAMP,
                source VARCHAR(50) DEFAULT 'drivehr',
                source_url TEXT DEFAULT '',
                raw_data TEXT DEFAULT '{}',
                last_updated TIMESTAMP,
                sync_version VARCHAR(20),
                status VARCHAR(20) DEFAULT 'publish',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS webhook_rate_limits (
                rate_key VARCHAR(100) PRIMARY KEY,
                hits INTEGER NOT NULL,
                expires_at DOUBLE PRECISION NOT NULL
            )
        ''')
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_job_listings_active_job_id "
            "ON job_listings(job_id) WHERE status != 'trash'"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_listings_status ON job_listings(status)")

    def _create_sqlite_tables(self, cursor):
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS job_listings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT DEFAULT '',
                summary TEXT DEFAULT '',
                department TEXT DEFAULT '',
                location TEXT DEFAULT '',
                job_type TEXT DEFAULT '',
                employment_type TEXT DEFAULT '',
                salary_range TEXT DEFAULT '',
                apply_url TEXT DEFAULT '',
                posted_date TEXT DEFAULT '',
                expiry_date TEXT DEFAULT '',
                posted_at TIMESTAMP,
                source TEXT DEFAULT 'drivehr',
                source_url TEXT DEFAULT '',
                raw_data TEXT DEFAULT '{}',
                last_updated TIMESTAMP,
                sync_version TEXT,
                status TEXT DEFAULT 'publish',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS webhook_rate_limits (
                rate_key TEXT PRIMARY KEY,
                hits INTEGER NOT NULL,
                expires_at REAL NOT NULL
            )
        ''')
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_job_listings_active_job_id "
            "ON job_listings(job_id) WHERE status != 'trash'"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_listings_status ON job_listings(status)")

    # ListingStore

    def bulk_lookup_by_external_ids(self, ids: Iterable[str]) -> Dict[str, int]:
        """Map job_id -> record id for every non-trashed listing among ids"""
        unique_ids = list(dict.fromkeys(job_id for job_id in ids if job_id))
        found = {}
        for start in range(0, len(unique_ids), LOOKUP_CHUNK_SIZE):
            chunk = unique_ids[start:start + LOOKUP_CHUNK_SIZE]
            placeholders = ','.join('?' for _ in chunk)
            rows = self.execute_query(
                f"SELECT id, job_id FROM job_listings WHERE status != 'trash' AND job_id IN ({placeholders})",
                tuple(chunk),
                fetch_all=True
            )
            for row in rows:
                found[row['job_id']] = int(row['id'])
        return found

    def upsert(self, external_id: str, fields: Dict[str, Any], existing_record_id: Optional[int] = None) -> int:
        values = dict(fields, job_id=external_id)
        columns = [column for column in LISTING_COLUMNS if column in values]
        params = tuple(values[column] for column in columns)

        if existing_record_id is not None:
            assignments = ', '.join(f"{column} = ?" for column in columns)
            updated = self.execute_query(
                f"UPDATE job_listings SET {assignments} WHERE id = ? AND status != 'trash'",
                params + (existing_record_id,)
            )
            if not updated:
                raise ListingWriteError(f"Listing record {existing_record_id} no longer exists")
            return existing_record_id

        placeholders = ', '.join('?' for _ in columns)
        query = f"INSERT INTO job_listings ({', '.join(columns)}) VALUES ({placeholders})"
        if self.use_postgres:
            query += " RETURNING id"
        return int(self.execute_query(query, params, returning_id=True))

    def bulk_fetch_all_active_external_ids(self) -> List[Tuple[int, str]]:
        rows = self.execute_query(
            "SELECT id, job_id FROM job_listings WHERE status != 'trash' ORDER BY id",
            fetch_all=True
        )
        return [(int(row['id']), row['job_id']) for row in rows]

    def hard_delete(self, record_id: int) -> bool:
        deleted = self.execute_query('DELETE FROM job_listings WHERE id = ?', (record_id,))
        return bool(deleted)

    # Read side

    def get_listing(self, job_id: str) -> Optional[StoredListing]:
        row = self.execute_query(
            "SELECT * FROM job_listings WHERE job_id = ? AND status != 'trash'",
            (job_id,),
            fetch_one=True
        )
        return StoredListing.from_row(self._stringify(row)) if row else None

    def list_listings(self, limit: int = 50, offset: int = 0) -> List[StoredListing]:
        rows = self.execute_query(
            "SELECT * FROM job_listings WHERE status != 'trash' ORDER BY posted_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
            fetch_all=True
        )
        return [StoredListing.from_row(self._stringify(row)) for row in rows]

    def count_listings(self) -> int:
        row = self.execute_query(
            "SELECT COUNT(*) AS total FROM job_listings WHERE status != 'trash'",
            fetch_one=True
        )
        return int(row['total']) if row else 0

    def set_status(self, record_id: int, status: str) -> bool:
        if status not in ('publish', 'trash'):
            raise ValueError(f"Invalid listing status: {status}")
        return bool(self.execute_query('UPDATE job_listings SET status = ? WHERE id = ?', (status, record_id)))

    @staticmethod
    def _stringify(row: Dict[str, Any]) -> Dict[str, Any]:
        # PostgreSQL hands back datetime objects for TIMESTAMP columns
        return {key: (value.strftime('%Y-%m-%d %H:%M:%S') if hasattr(value, 'strftime') else value)
                for key, value in row.items()}

    # Rate limit counters

    @contextmanager
    def counter_lock(self, key: str):
        with self.transaction():
            if self.use_postgres:
                self.execute_query('SELECT pg_advisory_xact_lock(hashtext(?))', (key,), fetch_one=True)
            yield

    def counter_get(self, key: str, now: float) -> Optional[int]:
        row = self.execute_query(
            'SELECT hits, expires_at FROM webhook_rate_limits WHERE rate_key = ?',
            (key,),
            fetch_one=True
        )
        if row is None:
            return None
        if float(row['expires_at']) <= now:
            self.execute_query('DELETE FROM webhook_rate_limits WHERE rate_key = ?', (key,))
            return None
        return int(row['hits'])

    def counter_set(self, key: str, value: int, expires_at: float) -> None:
        self.execute_query('''
            INSERT INTO webhook_rate_limits (rate_key, hits, expires_at)
            VALUES (?, ?, ?)
            ON CONFLICT (rate_key) DO UPDATE SET
                hits = EXCLUDED.hits,
                expires_at = EXCLUDED.expires_at
        ''', (key, value, expires_at))

    def counter_purge(self, now: float) -> int:
        return self.execute_query('DELETE FROM webhook_rate_limits WHERE expires_at <= ?', (now,))

    def counter_count(self) -> int:
        row = self.execute_query('SELECT COUNT(*) AS total FROM webhook_rate_limits', fetch_one=True)
        return int(row['total']) if row else 0

    def counter_incr(self, key: str) -> int:
        self.execute_query('UPDATE webhook_rate_limits SET hits = hits + 1 WHERE rate_key = ?', (key,))
        row = self.execute_query('SELECT hits FROM webhook_rate_limits WHERE rate_key = ?', (key,), fetch_one=True)
        return int(row['hits']) if row else 0
