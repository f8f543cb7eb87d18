"""
SQLite storage for the storefront.

The core only relies on three write primitives:
- execute(): a single parameterized statement, committed on its own, returning
  the affected-row count (conditional updates check this count)
- execute_returning(): the same, for statements with a RETURNING clause, so
  the caller sees the row its own update produced
- batch(): several statements applied all-or-nothing

There is deliberately no API for holding a transaction open across reads and
writes in application code.
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

from .errors import StorageFailureError

logger = logging.getLogger("storefront.database")

Params = Sequence[object]
Statement = tuple[str, Params]

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS users (
        email TEXT PRIMARY KEY,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'customer',
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS wallets (
        user_email TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        total INTEGER NOT NULL,
        payment_method TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL REFERENCES orders(id),
        game_name TEXT NOT NULL,
        package_label TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        price_at_purchase INTEGER NOT NULL,
        uid TEXT,
        pin TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS games (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        image_url TEXT,
        category TEXT,
        regionable INTEGER NOT NULL DEFAULT 0,
        uid_required INTEGER NOT NULL DEFAULT 0
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS regions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        game_id TEXT NOT NULL,
        region_key TEXT NOT NULL,
        name TEXT NOT NULL,
        flag TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS packages (
        id TEXT PRIMARY KEY,
        game_id TEXT NOT NULL,
        region_key TEXT,
        label TEXT NOT NULL,
        price INTEGER NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_orders_user_email ON orders(user_email)',
    'CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)',
    'CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items(order_id)',
    'CREATE INDEX IF NOT EXISTS idx_regions_game_id ON regions(game_id)',
    'CREATE INDEX IF NOT EXISTS idx_packages_game_id ON packages(game_id)',
)


class Database:
    def __init__(self, path: Union[str, Path], timeout: float = 10.0):
        self.path = Path(path)
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # autocommit mode; batches open their own transaction
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            logger.exception(f"Cannot open database: {self.path}")
            raise StorageFailureError() from e
        try:
            yield conn
        except (sqlite3.Error, OverflowError) as e:
            # OverflowError: a Python int too large to bind as an SQLite INTEGER
            logger.exception(f"Storage operation failed: {e}")
            raise StorageFailureError() from e
        finally:
            conn.close()

    def init_schema(self) -> None:
        self.batch([(sql, ()) for sql in SCHEMA])
        logger.info(f"Database ready: {self.path}")

    def execute(self, sql: str, params: Params = ()) -> int:
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def execute_returning(self, sql: str, params: Params = ()) -> Optional[dict]:
        """Run one UPDATE/INSERT ... RETURNING statement and return its first row, if any."""
        with self.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
            return dict(rows[0]) if rows else None

    def batch(self, statements: Iterable[Statement]) -> list[int]:
        """Apply all statements or none of them. Returns per-statement row counts."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                counts = [conn.execute(sql, params).rowcount for sql, params in statements]
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return counts

    def fetch_one(self, sql: str, params: Params = ()) -> Optional[dict]:
        with self.connection() as conn:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def fetch_all(self, sql: str, params: Params = ()) -> list[dict]:
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
